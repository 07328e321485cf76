from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Optional
from uuid import uuid4

from cookie_pool.core.config import settings
from cookie_pool.core.errors import (
    AcquisitionError,
    AcquisitionTimeout,
    AttemptNotFound,
    CapabilityError,
    ValidationFailed,
)
from cookie_pool.core.retry import RetryPolicy
from cookie_pool.models.artifact.document import ArtifactSource, PayloadEntry
from cookie_pool.models.attempt.document import AttemptDocument
from cookie_pool.models.target.document import TargetDocument, TargetOutcome
from cookie_pool.repositories.artifact.repository import ArtifactStore
from cookie_pool.repositories.attempt.repository import AttemptTracker
from cookie_pool.repositories.target.repository import TargetRepository
from cookie_pool.services.acquisition.validation import is_proxy_failure, validate_payload
from cookie_pool.services.proxy.rotator import ProxyRotator
from cookie_pool.workers.browser import BrowserSession

logger = logging.getLogger(__name__)

POOL_TAGS = ("auto-generated", "pool-managed")

# Timed-out collections still running; the loop only holds weak references.
_abandoned: set[asyncio.Task] = set()


def default_session_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.acquisition_max_attempts,
        base_delay=settings.acquisition_retry_base_delay,
        max_delay=settings.acquisition_retry_max_delay,
    )


@dataclass
class AcquisitionResult:
    session_id: str
    target_id: Optional[str]
    success: bool
    attempts: int
    artifact_id: Optional[str] = None
    artifact_count: int = 0
    error: Optional[str] = None
    error_kind: Optional[str] = None


@dataclass
class _Lease:
    """Browser handle shared between a collect task and its timeout path."""

    handle: Optional[str] = None
    closed: bool = False


class AcquisitionSession:
    """Drives one end-to-end acquisition, retrying with fresh proxies.

    Every attempt is recorded through the ``AttemptTracker``.  Session-local
    failures (timeout, validation, capability) never escape ``run()``; only
    ``NoProxyAvailable`` does, because it means the pool is misconfigured.
    """

    def __init__(
        self,
        *,
        store: ArtifactStore,
        tracker: AttemptTracker,
        rotator: ProxyRotator,
        browser: BrowserSession,
        targets: Optional[TargetRepository] = None,
        policy: Optional[RetryPolicy] = None,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
        validation_retries: Optional[int] = None,
        validation_delay: Optional[float] = None,
    ) -> None:
        self.session_id = session_id or uuid4().hex
        self._store = store
        self._tracker = tracker
        self._rotator = rotator
        self._browser = browser
        self._targets = targets
        self._policy = policy or default_session_policy()
        self._timeout = settings.acquisition_timeout if timeout is None else timeout
        self._validation_retries = max(
            1, settings.validation_retries if validation_retries is None else validation_retries
        )
        self._validation_delay = (
            settings.validation_retry_delay if validation_delay is None else validation_delay
        )

    @property
    def tag(self) -> str:
        return self.session_id[:8]

    async def run(
        self, target: TargetDocument, proxy: Optional[str] = None
    ) -> AcquisitionResult:
        """Acquire one artifact from *target* (or an alternate on retries)."""
        started = time.monotonic()
        current = target
        last_error: Optional[AcquisitionError] = None
        attempt_number = 0

        while attempt_number < self._policy.max_attempts:
            attempt_number += 1
            retry_count = attempt_number - 1
            if attempt_number == 1:
                proxy = proxy or self._rotator.pick()
            else:
                proxy = self._rotator.pick_fresh(proxy)

            logger.info(
                "Session %s: visiting %s via %s (attempt %d/%d)",
                self.tag,
                current.target_id,
                proxy,
                attempt_number,
                self._policy.max_attempts,
            )
            attempt = await self._tracker.start(
                current.target_id,
                proxy,
                {"session_id": self.session_id, "url": current.url, "attempt": attempt_number},
            )

            try:
                payload = await self._collect_with_timeout(current, proxy)
            except AcquisitionError as exc:
                last_error = exc
                await self._record_failure(attempt, exc, proxy, retry_count)
                if not self._policy.can_retry(attempt_number):
                    break
                await asyncio.sleep(self._policy.backoff(attempt_number))
                current = await self._alternate_target(current)
                continue

            return await self._record_success(
                attempt, current, proxy, payload, retry_count, attempt_number, started
            )

        message = str(last_error) if last_error else "No attempts made"
        logger.warning(
            "Session %s: giving up on %s after %d attempts: %s",
            self.tag,
            target.target_id,
            attempt_number,
            message,
        )
        await self._report(
            target,
            TargetOutcome(success=False, latency_ms=_elapsed_ms(started), error=message),
        )
        return AcquisitionResult(
            session_id=self.session_id,
            target_id=target.target_id,
            success=False,
            attempts=attempt_number,
            error=message,
            error_kind=last_error.kind if last_error else None,
        )

    # ------------------------------------------------------------------
    # Outcome recording
    # ------------------------------------------------------------------

    async def _record_success(
        self,
        attempt: AttemptDocument,
        target: TargetDocument,
        proxy: Optional[str],
        payload: list[PayloadEntry],
        retry_count: int,
        attempts: int,
        started: float,
    ) -> AcquisitionResult:
        try:
            artifact = await self._store.put(
                payload,
                ArtifactSource(
                    target_id=target.target_id,
                    target_url=target.url,
                    proxy=proxy,
                    session_id=self.session_id,
                    attempt_id=attempt.attempt_id,
                ),
                domain=target.domain,
                tags=[*target.tags, *POOL_TAGS],
            )
        except RuntimeError as exc:
            await self._settle(self._tracker.mark_failed(attempt.attempt_id, str(exc), retry_count))
            return AcquisitionResult(
                session_id=self.session_id,
                target_id=target.target_id,
                success=False,
                attempts=attempts,
                error=str(exc),
                error_kind="storage",
            )

        await self._settle(
            self._tracker.mark_success(attempt.attempt_id, len(payload), retry_count)
        )
        if artifact is None:
            logger.warning(
                "Session %s: %d cookies collected but not stored (duplicate id)",
                self.tag,
                len(payload),
            )
        else:
            logger.info(
                "Session %s: stored artifact %s with %d cookies from %s",
                self.tag,
                artifact.artifact_id,
                len(payload),
                target.target_id,
            )
        await self._report(
            target,
            TargetOutcome(
                success=True, artifact_count=len(payload), latency_ms=_elapsed_ms(started)
            ),
        )
        return AcquisitionResult(
            session_id=self.session_id,
            target_id=target.target_id,
            success=True,
            attempts=attempts,
            artifact_id=artifact.artifact_id if artifact else None,
            artifact_count=len(payload),
        )

    async def _record_failure(
        self,
        attempt: AttemptDocument,
        error: AcquisitionError,
        proxy: Optional[str],
        retry_count: int,
    ) -> None:
        logger.warning(
            "Session %s: attempt %d failed (%s): %s",
            self.tag,
            retry_count + 1,
            error.kind,
            error,
        )
        if is_proxy_failure(error):
            self._rotator.mark_failed(proxy)
        await self._settle(self._tracker.mark_failed(attempt.attempt_id, str(error), retry_count))

    async def _settle(self, completion) -> None:
        # Losing the race against the stuck-attempt reset is expected now and then.
        try:
            await completion
        except AttemptNotFound as exc:
            logger.error("Session %s: %s", self.tag, exc)

    async def _report(self, target: TargetDocument, outcome: TargetOutcome) -> None:
        if self._targets is None:
            return
        try:
            await self._targets.report_outcome(target.target_id, outcome)
        except Exception:
            logger.exception(
                "Session %s: could not record outcome for target %s",
                self.tag,
                target.target_id,
            )

    async def _alternate_target(self, current: TargetDocument) -> TargetDocument:
        """Another target on the same domain, if retries may switch targets."""
        if self._targets is None or not settings.rotate_targets_on_retry:
            return current
        candidate = await self._targets.get_random_target()
        if (
            candidate is not None
            and candidate.target_id != current.target_id
            and candidate.domain == current.domain
        ):
            logger.info(
                "Session %s: switching to alternate target %s",
                self.tag,
                candidate.target_id,
            )
            return candidate
        return current

    # ------------------------------------------------------------------
    # Browser capability
    # ------------------------------------------------------------------

    async def _collect_with_timeout(
        self, target: TargetDocument, proxy: Optional[str]
    ) -> list[PayloadEntry]:
        """Race the capability against the overall timeout.

        On timeout the in-flight call is abandoned, not cancelled; its
        browsing context is closed here before the slot is released.
        """
        lease = _Lease()
        task = asyncio.create_task(self._collect(target, proxy, lease))
        done, _ = await asyncio.wait({task}, timeout=self._timeout)
        if task in done:
            return task.result()

        _abandoned.add(task)
        task.add_done_callback(_discard_abandoned)
        await self._release(lease)
        raise AcquisitionTimeout(f"Acquisition timed out after {self._timeout:.0f}s")

    async def _collect(
        self, target: TargetDocument, proxy: Optional[str], lease: _Lease
    ) -> list[PayloadEntry]:
        try:
            lease.handle = await self._browser.open(proxy)
            failure: Optional[ValidationFailed] = None
            for check in range(1, self._validation_retries + 1):
                outcome = await self._browser.visit(lease.handle, target.url)
                if not outcome.ok:
                    raise CapabilityError(
                        outcome.error or "Browser visit failed",
                        network=outcome.network_error,
                    )
                try:
                    validate_payload(outcome.payload, target.domain)
                    return outcome.payload
                except ValidationFailed as exc:
                    failure = exc
                    logger.info(
                        "Session %s: payload rejected (check %d/%d): %s",
                        self.tag,
                        check,
                        self._validation_retries,
                        exc,
                    )
                    if check < self._validation_retries:
                        await asyncio.sleep(self._validation_delay)
            raise failure
        except AcquisitionError:
            raise
        except Exception as exc:
            raise CapabilityError(f"{type(exc).__name__}: {exc}") from exc
        finally:
            await self._release(lease)

    async def _release(self, lease: _Lease) -> None:
        if lease.handle is None or lease.closed:
            return
        lease.closed = True
        try:
            await self._browser.close(lease.handle)
        except Exception as exc:
            logger.debug("Session %s: ignoring close error: %s", self.tag, exc)


def _discard_abandoned(task: asyncio.Task) -> None:
    _abandoned.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned acquisition finished with %s", exc)


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
