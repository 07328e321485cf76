"""Top-level pool loop.

One jittered timer decides whether to launch a new acquisition session;
a second timer runs eviction and attempt-history maintenance.  Sessions run
detached; the scheduler only tracks their ids to enforce the concurrency
cap.  The proxy rotator is created on ``start()`` and dropped on ``stop()``.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any, Callable, Iterable, Optional
from uuid import uuid4

from cookie_pool.core.config import settings
from cookie_pool.core.database import DatabaseManager
from cookie_pool.core.errors import NoProxyAvailable
from cookie_pool.core.scheduling import PeriodicTask
from cookie_pool.models.pool.schemas import (
    CleanupReport,
    PoolConfig,
    PoolStatus,
    SessionCounters,
)
from cookie_pool.models.target.document import TargetDocument
from cookie_pool.repositories.artifact.repository import ArtifactStore
from cookie_pool.repositories.attempt.repository import AttemptTracker
from cookie_pool.repositories.base import utcnow
from cookie_pool.repositories.target.repository import TargetRepository
from cookie_pool.services.acquisition.session import AcquisitionResult, AcquisitionSession
from cookie_pool.services.proxy.rotator import ProxyRotator
from cookie_pool.workers.browser import BrowserSession, build_browser_session

logger = logging.getLogger(__name__)

EXPIRING_WINDOW = timedelta(hours=1)

SessionFactory = Callable[..., AcquisitionSession]


class PoolScheduler:
    """Keeps the artifact pool full and fresh."""

    def __init__(
        self,
        *,
        store: ArtifactStore,
        tracker: AttemptTracker,
        targets: TargetRepository,
        browser: BrowserSession,
        proxies: Optional[Iterable[str]] = None,
        config: Optional[PoolConfig] = None,
        session_factory: SessionFactory = AcquisitionSession,
    ) -> None:
        self._store = store
        self._tracker = tracker
        self._targets = targets
        self._browser = browser
        self._proxies = list(settings.proxies if proxies is None else proxies)
        self._session_factory = session_factory
        self.config = config or PoolConfig()

        self.active_sessions: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}
        self._rotator: Optional[ProxyRotator] = None
        self._running = False
        self.started_at = None
        self.idle_reason: Optional[str] = None
        self.counters = SessionCounters()

        self._visit_timer = PeriodicTask(
            "pool-visit",
            self.tick,
            self.config.visit_interval,
            jitter=self.config.visit_jitter,
            floor=self.config.visit_floor,
        )
        self._cleanup_timer = PeriodicTask(
            "pool-cleanup", self.run_cleanup, self.config.cleanup_interval
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def rotator(self) -> Optional[ProxyRotator]:
        return self._rotator

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            logger.info("Pool scheduler is already running.")
            return
        self._rotator = ProxyRotator(self._proxies)
        self._running = True
        self.started_at = utcnow()
        self.idle_reason = None
        self._visit_timer.start()
        self._cleanup_timer.start()
        logger.info(
            "Pool scheduler started (band %d-%d, max %d concurrent, %d proxies).",
            self.config.min_size,
            self.config.max_size,
            self.config.max_concurrent,
            len(self._proxies),
        )

    async def stop(self, wait: bool = True) -> None:
        """Cancel both timers; in-flight sessions are never aborted.

        With *wait* the call returns once every running session has settled.
        """
        if not self._running:
            logger.info("Pool scheduler is not running.")
            # A prior stop(wait=False) may have left sessions in flight.
            if wait:
                await self.drain()
            return
        self._running = False
        await self._visit_timer.stop()
        await self._cleanup_timer.stop()
        if wait:
            await self.drain()
        self._rotator = None
        logger.info("Pool scheduler stopped.")

    async def drain(self) -> None:
        tasks = list(self._tasks.values())
        if tasks:
            logger.info("Waiting for %d in-flight sessions.", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)

    def update_config(self, changes: dict[str, Any]) -> PoolConfig:
        """Validate and apply new pool settings to the live timers.

        Raises:
            pydantic.ValidationError: the merged configuration is invalid.
        """
        merged = {**self.config.model_dump(), **{k: v for k, v in changes.items() if v is not None}}
        self.config = PoolConfig.model_validate(merged)
        self._visit_timer.interval = self.config.visit_interval
        self._visit_timer.jitter = self.config.visit_jitter
        self._visit_timer.floor = self.config.visit_floor
        self._cleanup_timer.interval = self.config.cleanup_interval
        logger.info("Pool configuration updated: %s", changes)
        return self.config

    # ------------------------------------------------------------------
    # Visit loop
    # ------------------------------------------------------------------

    async def tick(self) -> bool:
        """One scheduling decision.  Returns ``True`` if a session was spawned."""
        if not self._running:
            return False
        if self._rotator is None or not self._rotator.proxies:
            self._idle("No proxies configured")
            return False

        pool_size = await self._store.count(active_only=True)
        expiring = await self._store.expiring_within(EXPIRING_WINDOW)
        logger.debug(
            "Pool size %d, %d expiring soon, %d/%d sessions active.",
            pool_size,
            len(expiring),
            len(self.active_sessions),
            self.config.max_concurrent,
        )

        if len(self.active_sessions) >= self.config.max_concurrent:
            logger.debug("All session slots busy; waiting for completion.")
            return False

        reason = await self._spawn_reason(pool_size, len(expiring))
        if reason is None:
            return False
        return await self._spawn(reason)

    async def _spawn_reason(self, pool_size: int, expiring: int) -> Optional[str]:
        if pool_size < self.config.min_size:
            return "Pool needs replenishment"
        if expiring:
            return f"{expiring} artifacts expiring soon"
        if self.config.continuous_refresh:
            if pool_size >= self.config.max_size:
                return "Pool at maximum, refreshing to keep it fresh"
            return "Maintaining pool freshness"
        if await self._tracker.is_refresh_due():
            return "Scheduled refresh is due"
        return None

    async def _spawn(self, reason: str) -> bool:
        if len(self.active_sessions) >= self.config.max_concurrent:
            return False
        session_id = uuid4().hex
        # Reserve the slot before the next suspension point.
        self.active_sessions.add(session_id)
        spawned = False
        try:
            target = await self._targets.get_random_target()
            if target is None:
                self._idle("No targets configured")
                return False

            self.idle_reason = None
            session = self._session_factory(
                store=self._store,
                tracker=self._tracker,
                rotator=self._rotator,
                browser=self._browser,
                targets=self._targets,
                session_id=session_id,
            )
            self._tasks[session_id] = asyncio.create_task(
                self._run_session(session, target), name=f"acquisition-{session_id[:8]}"
            )
            spawned = True
            logger.info(
                "%s; started session %s (%d/%d).",
                reason,
                session_id[:8],
                len(self.active_sessions),
                self.config.max_concurrent,
            )
            return True
        finally:
            if not spawned:
                self.active_sessions.discard(session_id)

    async def _run_session(self, session: AcquisitionSession, target: TargetDocument) -> None:
        session_id = session.session_id
        try:
            result = await session.run(target)
            self._record(result)
        except NoProxyAvailable as exc:
            self._idle(str(exc))
        except Exception:
            self.counters.total_sessions += 1
            self.counters.failed_sessions += 1
            logger.exception("Session %s crashed", session_id[:8])
        finally:
            self.active_sessions.discard(session_id)
            self._tasks.pop(session_id, None)
            logger.info(
                "Session %s completed (%d/%d).",
                session_id[:8],
                len(self.active_sessions),
                self.config.max_concurrent,
            )

    def _record(self, result: AcquisitionResult) -> None:
        self.counters.total_sessions += 1
        if result.success:
            self.counters.successful_sessions += 1
            self.counters.artifacts_generated += result.artifact_count
        else:
            self.counters.failed_sessions += 1

    def _idle(self, reason: str) -> None:
        if self.idle_reason != reason:
            logger.error("Pool idle: %s", reason)
        self.idle_reason = reason

    # ------------------------------------------------------------------
    # Maintenance and reporting
    # ------------------------------------------------------------------

    async def run_cleanup(self) -> CleanupReport:
        eviction = await self._store.evict_expired_and_failed()
        stuck = await self._tracker.reset_stuck()
        pruned = await self._tracker.prune()
        report = CleanupReport(eviction=eviction, stuck_reset=stuck, attempts_pruned=pruned)
        logger.info(
            "Cleanup: %d artifacts evicted, %d stuck attempts reset, %d attempts pruned.",
            eviction.total,
            stuck,
            pruned,
        )
        return report

    async def status(self) -> PoolStatus:
        uptime = 0
        if self._running and self.started_at is not None:
            uptime = int((utcnow() - self.started_at).total_seconds())
        return PoolStatus(
            running=self._running,
            started_at=self.started_at,
            uptime_seconds=uptime,
            active_sessions=len(self.active_sessions),
            idle_reason=self.idle_reason,
            pool_size=await self._store.count(active_only=True),
            config=self.config,
            counters=self.counters,
        )


def build_scheduler(database: DatabaseManager) -> PoolScheduler:
    """Wire a scheduler to the live database and configured browser backend."""
    return PoolScheduler(
        store=ArtifactStore.from_db(database),
        tracker=AttemptTracker.from_db(database),
        targets=TargetRepository.from_db(database),
        browser=build_browser_session(),
    )
