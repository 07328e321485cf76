from __future__ import annotations

import logging
import math
from datetime import timedelta
from typing import Any, Optional
from uuid import uuid4

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from cookie_pool.core.collections import CollectionNames
from cookie_pool.core.config import settings
from cookie_pool.core.errors import AttemptNotFound
from cookie_pool.core.retry import RetryPolicy
from cookie_pool.models.attempt.document import (
    TERMINAL_STATUSES,
    AttemptDocument,
    AttemptStatus,
)
from cookie_pool.models.attempt.schemas import (
    AttemptHealth,
    AttemptHistory,
    AttemptStats,
    Pagination,
)
from cookie_pool.repositories.base import BaseRepository, utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500
STUCK_ERROR_MESSAGE = "Attempt exceeded its time budget and was reset automatically"


def default_backoff_policy() -> RetryPolicy:
    return RetryPolicy(
        base_delay=settings.backoff_base,
        max_delay=settings.backoff_max,
        exponent_cap=4,
    )


class AttemptTracker(BaseRepository):
    """State-machine records for acquisition attempts.

    ``in_progress -> success | failed`` happens through conditional updates
    filtered on ``status == in_progress``, so a late completion report and
    the stuck-attempt reset can race without double-transitioning.
    """

    COLLECTION_NAME = CollectionNames.ATTEMPTS

    def __init__(self, collection, policy: Optional[RetryPolicy] = None) -> None:
        super().__init__(collection)
        self._policy = policy or default_backoff_policy()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def ensure_indexes(self) -> None:
        await self._col.create_index("attempt_id", unique=True)
        await self._col.create_index([("status", ASCENDING), ("started_at", ASCENDING)])
        await self._col.create_index([("target_ref", ASCENDING), ("completed_at", DESCENDING)])

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def start(
        self,
        target_ref: Optional[str],
        proxy_ref: Optional[str],
        metadata: Optional[dict[str, Any]] = None,
    ) -> AttemptDocument:
        document = AttemptDocument(
            attempt_id=str(uuid4()),
            target_ref=target_ref,
            proxy_ref=proxy_ref or "no_proxy",
            status=AttemptStatus.IN_PROGRESS,
            started_at=utcnow(),
            metadata=metadata or {},
        )
        try:
            await self._col.insert_one(document.model_dump())
        except PyMongoError as exc:
            logger.exception("MongoDB insert failed for attempt %s", document.attempt_id)
            raise RuntimeError("Database write error") from exc
        logger.debug(
            "Started attempt %s for target %s via %s.",
            document.attempt_id,
            target_ref,
            document.proxy_ref,
        )
        return document

    async def mark_success(
        self, attempt_id: str, artifact_count: int, retry_count: int = 0
    ) -> AttemptDocument:
        """Transition ``in_progress -> success``.

        Raises:
            AttemptNotFound: the attempt is unknown or already terminal.
        """
        current = await self._require_in_progress(attempt_id)
        now = utcnow()
        changes = {
            "status": AttemptStatus.SUCCESS.value,
            "completed_at": now,
            "duration_ms": _duration_ms(current, now),
            "artifact_count": max(0, int(artifact_count)),
            "retry_count": max(0, int(retry_count)),
            "consecutive_failures": 0,
            "next_eligible_at": now + timedelta(seconds=settings.refresh_interval),
        }
        updated = await self._complete(attempt_id, changes)
        logger.info(
            "Attempt %s succeeded with %d entries.", attempt_id, changes["artifact_count"]
        )
        return updated

    async def mark_failed(
        self, attempt_id: str, error_message: str, retry_count: int = 0
    ) -> AttemptDocument:
        """Transition ``in_progress -> failed`` and schedule the backoff.

        ``consecutive_failures`` continues the streak of the previous
        terminal attempt on the same target (reset by any success).

        Raises:
            AttemptNotFound: the attempt is unknown or already terminal.
        """
        current = await self._require_in_progress(attempt_id)
        failures = await self._streak_before(current) + 1

        now = utcnow()
        changes = {
            "status": AttemptStatus.FAILED.value,
            "completed_at": now,
            "duration_ms": _duration_ms(current, now),
            "error_message": (error_message or "unknown error")[:MAX_ERROR_LENGTH],
            "retry_count": max(0, int(retry_count)),
            "consecutive_failures": failures,
            "next_eligible_at": now + timedelta(seconds=self._policy.backoff(failures)),
        }
        updated = await self._complete(attempt_id, changes)
        logger.info(
            "Attempt %s failed (%d consecutive), next eligible %s: %s",
            attempt_id,
            failures,
            changes["next_eligible_at"].isoformat(),
            changes["error_message"],
        )
        return updated

    async def reset_stuck(self, max_age: Optional[float] = None) -> int:
        """Force attempts stuck ``in_progress`` past *max_age* seconds to ``failed``.

        Each reset counts as a failure: it extends the target's streak and
        backoff exactly like :meth:`mark_failed`. Oldest attempts go first so
        several stuck attempts on one target chain their streaks.
        """
        now = utcnow()
        cutoff = now - timedelta(seconds=max_age or settings.stuck_after)
        cursor = self._col.find(
            {"status": AttemptStatus.IN_PROGRESS.value, "started_at": {"$lt": cutoff}}
        ).sort("started_at", ASCENDING)

        reset = 0
        for current in await cursor.to_list(length=None):
            failures = await self._streak_before(current) + 1
            updated = await self._col.find_one_and_update(
                {
                    "attempt_id": current["attempt_id"],
                    "status": AttemptStatus.IN_PROGRESS.value,
                },
                {
                    "$set": {
                        "status": AttemptStatus.FAILED.value,
                        "completed_at": now,
                        "duration_ms": _duration_ms(current, now),
                        "error_message": STUCK_ERROR_MESSAGE,
                        "consecutive_failures": failures,
                        "next_eligible_at": now
                        + timedelta(seconds=self._policy.backoff(failures)),
                    }
                },
            )
            # None means a late completion report won the race.
            if updated is not None:
                reset += 1
        if reset:
            logger.warning("Reset %d stuck attempts.", reset)
        return reset

    async def prune(self, max_age: Optional[float] = None) -> int:
        """Delete terminal attempts started more than *max_age* seconds ago."""
        cutoff = utcnow() - timedelta(
            seconds=max_age or settings.attempt_history_max_age
        )
        result = await self._col.delete_many(
            {"started_at": {"$lt": cutoff}, "status": {"$in": list(TERMINAL_STATUSES)}}
        )
        if result.deleted_count:
            logger.info("Pruned %d old attempt records.", result.deleted_count)
        return result.deleted_count

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, attempt_id: str) -> AttemptDocument | None:
        result = await self._col.find_one({"attempt_id": attempt_id})
        if result is None:
            return None
        return AttemptDocument(**self._strip_id(result))

    async def is_refresh_due(self) -> bool:
        latest = await self._col.find_one(
            {"status": AttemptStatus.SUCCESS.value},
            sort=[("completed_at", DESCENDING)],
        )
        if latest is None:
            return True
        return latest["next_eligible_at"] <= utcnow()

    async def stuck_attempts(self, max_age: Optional[float] = None) -> list[AttemptDocument]:
        cutoff = utcnow() - timedelta(seconds=max_age or settings.stuck_after)
        cursor = self._col.find(
            {"status": AttemptStatus.IN_PROGRESS.value, "started_at": {"$lt": cutoff}}
        ).sort("started_at", ASCENDING)
        return [
            AttemptDocument(**self._strip_id(row)) for row in await cursor.to_list(length=None)
        ]

    async def history(
        self,
        page: int = 1,
        limit: int = 20,
        status: Optional[AttemptStatus] = None,
        target_ref: Optional[str] = None,
    ) -> AttemptHistory:
        query: dict[str, Any] = {}
        if status:
            query["status"] = AttemptStatus(status).value
        if target_ref:
            query["target_ref"] = target_ref

        total = await self._col.count_documents(query)
        cursor = (
            self._col.find(query)
            .sort("started_at", DESCENDING)
            .skip((page - 1) * limit)
            .limit(limit)
        )
        attempts = [
            AttemptDocument(**self._strip_id(row)) for row in await cursor.to_list(length=limit)
        ]
        pages = math.ceil(total / limit) if limit else 0
        return AttemptHistory(
            attempts=attempts,
            pagination=Pagination(
                total=total,
                page=page,
                limit=limit,
                pages=pages,
                has_next=page < pages,
                has_prev=page > 1,
            ),
        )

    async def stats(self, limit: int = 100) -> AttemptStats:
        cursor = self._col.find().sort("started_at", DESCENDING).limit(limit)
        recent = [AttemptDocument(**self._strip_id(row)) for row in await cursor.to_list(length=limit)]

        success = [a for a in recent if a.status == AttemptStatus.SUCCESS]
        failed = [a for a in recent if a.status == AttemptStatus.FAILED]
        in_progress = [a for a in recent if a.status == AttemptStatus.IN_PROGRESS]
        durations = [a.duration_ms for a in recent if a.duration_ms]
        artifacts = sum(a.artifact_count or 0 for a in success)

        cutoff = utcnow() - timedelta(seconds=settings.stuck_after)
        stuck = [a for a in in_progress if a.started_at < cutoff]

        upcoming = await self._col.find_one(
            {"status": AttemptStatus.SUCCESS.value},
            sort=[("next_eligible_at", ASCENDING)],
        )
        return AttemptStats(
            total=len(recent),
            success_count=len(success),
            failed_count=len(failed),
            in_progress_count=len(in_progress),
            success_rate=round(len(success) / len(recent) * 100, 1) if recent else None,
            average_artifacts=round(artifacts / len(success), 1) if success else 0.0,
            average_duration_ms=sum(durations) / len(durations) if durations else None,
            next_eligible_at=upcoming["next_eligible_at"] if upcoming else None,
            stuck_count=len(stuck),
            health="healthy" if len(success) > len(failed) else "degraded",
        )

    async def health(self) -> AttemptHealth:
        now = utcnow()
        successes = {"status": AttemptStatus.SUCCESS.value}
        last_hour = await self._col.count_documents(
            {**successes, "completed_at": {"$gte": now - timedelta(hours=1)}}
        )
        last_day = await self._col.count_documents(
            {**successes, "completed_at": {"$gte": now - timedelta(hours=24)}}
        )
        stuck = await self._col.count_documents(
            {
                "status": AttemptStatus.IN_PROGRESS.value,
                "started_at": {"$lt": now - timedelta(seconds=settings.stuck_after)},
            }
        )
        upcoming = await self._col.find_one(successes, sort=[("next_eligible_at", ASCENDING)])

        if stuck:
            status = "critical"
        elif last_hour:
            status = "healthy"
        else:
            status = "degraded"
        return AttemptHealth(
            status=status,
            last_hour_success_count=last_hour,
            last_day_success_count=last_day,
            stuck_count=stuck,
            next_eligible_at=upcoming["next_eligible_at"] if upcoming else None,
            checked_at=now,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _require_in_progress(self, attempt_id: str) -> dict[str, Any]:
        current = await self._col.find_one(
            {"attempt_id": attempt_id, "status": AttemptStatus.IN_PROGRESS.value}
        )
        if current is None:
            raise AttemptNotFound(
                f"Attempt {attempt_id} not found or already completed"
            )
        return current

    async def _streak_before(self, current: dict[str, Any]) -> int:
        """Failure streak of the latest terminal attempt on the same target."""
        previous = await self._col.find_one(
            {
                "target_ref": current.get("target_ref"),
                "status": {"$in": list(TERMINAL_STATUSES)},
                "attempt_id": {"$ne": current["attempt_id"]},
            },
            sort=[("completed_at", DESCENDING), ("started_at", DESCENDING)],
        )
        if previous is None or previous.get("status") != AttemptStatus.FAILED.value:
            return 0
        return previous.get("consecutive_failures") or 0

    async def _complete(self, attempt_id: str, changes: dict[str, Any]) -> AttemptDocument:
        updated = await self._col.find_one_and_update(
            {"attempt_id": attempt_id, "status": AttemptStatus.IN_PROGRESS.value},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if updated is None:
            raise AttemptNotFound(
                f"Attempt {attempt_id} not found or already completed"
            )
        return AttemptDocument(**self._strip_id(updated))


def _duration_ms(current: dict[str, Any], now) -> int:
    started = current.get("started_at")
    if started is None:
        return 0
    return max(0, int((now - started).total_seconds() * 1000))
