from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable, Optional
from uuid import uuid4

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from cookie_pool.core.collections import CollectionNames
from cookie_pool.core.config import settings
from cookie_pool.core.errors import ArtifactNotFound
from cookie_pool.models.artifact.document import (
    ArtifactDocument,
    ArtifactSource,
    ArtifactStatus,
    PayloadEntry,
    Quality,
    Validity,
)
from cookie_pool.models.artifact.schemas import (
    ArtifactFilter,
    ArtifactSortField,
    ArtifactStats,
    EvictionResult,
    QualitySummary,
)
from cookie_pool.repositories.base import BaseRepository, utcnow

logger = logging.getLogger(__name__)

SUCCESS_REWARD = 1
FAILURE_PENALTY = 5
MAX_SCORE = 100

# Bounded so that a feedback storm on one artifact cannot spin forever.
_FEEDBACK_CAS_ATTEMPTS = 5


def compute_expiry(
    payload: Iterable[PayloadEntry],
    now: datetime,
    *,
    policy: Optional[str] = None,
    default_ttl: Optional[float] = None,
    refresh_interval: Optional[float] = None,
) -> datetime:
    """Return the artifact-level expiry for *payload*.

    ``earliest`` (default): the soonest entry expiry still in the future,
    or ``now + default_ttl`` when no entry carries one.

    ``extend``: every entry is first lifted to at least
    ``now + refresh_interval`` (session cookies included), then the soonest
    of those is used.
    """
    policy = policy or settings.artifact_expiry_policy
    ttl = settings.artifact_default_ttl if default_ttl is None else default_ttl
    fallback = now + timedelta(seconds=ttl)

    if policy == "extend":
        interval = (
            settings.refresh_interval if refresh_interval is None else refresh_interval
        )
        minimum = now + timedelta(seconds=interval)
        lifted = [
            max(_entry_expiry(entry) or minimum, minimum) for entry in payload
        ]
        return min(lifted) if lifted else fallback

    future = [
        expiry
        for expiry in (_entry_expiry(entry) for entry in payload)
        if expiry is not None and expiry > now
    ]
    return min(future) if future else fallback


def _entry_expiry(entry: PayloadEntry) -> Optional[datetime]:
    if entry.expires is None or entry.expires <= 0:
        return None
    return datetime.fromtimestamp(entry.expires, tz=timezone.utc)


class ArtifactStore(BaseRepository):
    """Quality-scored, time-bounded cache of acquired artifacts.

    Every read path filters on ``expires_at > now`` so a cached ``active``
    status is never trusted past its expiry.  Mutations go through
    conditional updates; nothing outside this class writes artifact fields.
    """

    COLLECTION_NAME = CollectionNames.ARTIFACTS

    async def ensure_indexes(self) -> None:
        await self._col.create_index("artifact_id", unique=True)
        await self._col.create_index(
            [
                ("status", ASCENDING),
                ("validity.is_valid", ASCENDING),
                ("quality.score", DESCENDING),
            ]
        )
        await self._col.create_index("validity.expires_at")
        await self._col.create_index("tags")

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def put(
        self,
        payload: Iterable[PayloadEntry | dict[str, Any]],
        source: ArtifactSource,
        *,
        domain: Optional[str] = None,
        tags: Iterable[str] = (),
    ) -> ArtifactDocument | None:
        """Store a freshly acquired payload as an ``active`` artifact.

        Returns ``None`` (and logs) when the generated id collides with an
        existing artifact.

        Raises:
            RuntimeError: on any other database failure.
        """
        now = utcnow()
        entries = [
            entry if isinstance(entry, PayloadEntry) else PayloadEntry.model_validate(entry)
            for entry in payload
        ]
        document = ArtifactDocument(
            artifact_id=str(uuid4()),
            payload=entries,
            source=source,
            domain=domain,
            validity=Validity(
                is_valid=True,
                expires_at=compute_expiry(entries, now),
                usage_count=0,
            ),
            quality=Quality(score=MAX_SCORE, last_success_at=now),
            status=ArtifactStatus.ACTIVE,
            tags=list(dict.fromkeys(tags)),
            created_at=now,
            updated_at=now,
        )
        try:
            await self._col.insert_one(document.model_dump())
        except DuplicateKeyError:
            logger.warning(
                "Artifact id %s already exists; skipping this payload.",
                document.artifact_id,
            )
            return None
        except PyMongoError as exc:
            logger.exception("MongoDB insert failed for artifact %s", document.artifact_id)
            raise RuntimeError("Database write error") from exc

        logger.info(
            "Stored artifact %s (%d entries, expires %s).",
            document.artifact_id,
            len(entries),
            document.validity.expires_at.isoformat(),
        )
        return document

    async def record_feedback(self, artifact_id: str, success: bool) -> ArtifactDocument:
        """Apply consumer feedback to an artifact's quality score.

        Success adds one point (capped at 100).  Failure removes five
        (floored at 0); dropping below the quality floor retires the
        artifact for good (``status=failed``, ``is_valid=False``).

        The write is conditioned on the score read just before it, so
        concurrent feedback never loses an update.

        Raises:
            ArtifactNotFound: no artifact with *artifact_id*.
        """
        for _ in range(_FEEDBACK_CAS_ATTEMPTS):
            current = await self._col.find_one({"artifact_id": artifact_id})
            if current is None:
                raise ArtifactNotFound(artifact_id)

            score = current["quality"]["score"]
            now = utcnow()
            changes: dict[str, Any] = {"updated_at": now}
            if success:
                changes["quality.score"] = min(MAX_SCORE, score + SUCCESS_REWARD)
                changes["quality.last_success_at"] = now
            else:
                new_score = max(0, score - FAILURE_PENALTY)
                changes["quality.score"] = new_score
                if new_score < settings.artifact_quality_floor:
                    changes["status"] = ArtifactStatus.FAILED.value
                    changes["validity.is_valid"] = False

            updated = await self._col.find_one_and_update(
                {"artifact_id": artifact_id, "quality.score": score},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
            if updated is not None:
                if changes.get("status") == ArtifactStatus.FAILED.value:
                    logger.warning(
                        "Artifact %s retired after feedback (score=%d).",
                        artifact_id,
                        changes["quality.score"],
                    )
                return ArtifactDocument(**self._strip_id(updated))

        raise RuntimeError(f"Feedback for artifact {artifact_id} kept racing; giving up")

    async def evict_expired_and_failed(self) -> EvictionResult:
        """Delete expired artifacts and invalid ones past the grace window.

        Invalid artifacts are kept for ``artifact_invalid_grace`` after
        their last modification so feedback can still be inspected.
        """
        now = utcnow()
        expired = await self._col.delete_many({"validity.expires_at": {"$lt": now}})
        cutoff = now - timedelta(seconds=settings.artifact_invalid_grace)
        invalid = await self._col.delete_many(
            {
                "$or": [
                    {"validity.is_valid": False},
                    {"status": ArtifactStatus.FAILED.value},
                ],
                "updated_at": {"$lt": cutoff},
            }
        )
        result = EvictionResult(expired=expired.deleted_count, invalid=invalid.deleted_count)
        if result.total:
            logger.info(
                "Evicted %d artifacts (%d expired, %d invalid).",
                result.total,
                result.expired,
                result.invalid,
            )
        return result

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def select_best(
        self, criteria: ArtifactFilter | None = None
    ) -> ArtifactDocument | None:
        """Serve the best matching artifact and count the use atomically.

        Ordered by quality score (desc) then usage count (asc).  The usage
        bump happens in the same ``find_one_and_update`` as the match.
        """
        now = utcnow()
        query = self._filter_query(criteria or ArtifactFilter(), now)
        selected = await self._col.find_one_and_update(
            query,
            {
                "$inc": {"validity.usage_count": 1},
                "$set": {"validity.last_used_at": now, "updated_at": now},
            },
            sort=[("quality.score", DESCENDING), ("validity.usage_count", ASCENDING)],
            return_document=ReturnDocument.AFTER,
        )
        if selected is None:
            return None
        return ArtifactDocument(**self._strip_id(selected))

    async def list_artifacts(
        self,
        criteria: ArtifactFilter | None = None,
        sort_by: ArtifactSortField = ArtifactSortField.QUALITY,
        descending: bool = True,
        limit: int = 10,
    ) -> list[ArtifactDocument]:
        """Servable artifacts matching *criteria*, without counting a use."""
        query = self._filter_query(criteria or ArtifactFilter(), utcnow())
        cursor = (
            self._col.find(query)
            .sort(ArtifactSortField(sort_by).path, DESCENDING if descending else ASCENDING)
            .limit(limit)
        )
        return [
            ArtifactDocument(**self._strip_id(row))
            for row in await cursor.to_list(length=limit)
        ]

    async def get(self, artifact_id: str) -> ArtifactDocument | None:
        result = await self._col.find_one({"artifact_id": artifact_id})
        if result is None:
            return None
        return ArtifactDocument(**self._strip_id(result))

    async def count(self, active_only: bool = True) -> int:
        query = self._servable_query(utcnow()) if active_only else {}
        return await self._col.count_documents(query)

    async def expiring_within(
        self, window: timedelta, limit: int = 100
    ) -> list[ArtifactDocument]:
        """Servable artifacts whose expiry falls inside *window* from now."""
        now = utcnow()
        query = self._servable_query(now)
        query["validity.expires_at"] = {"$gt": now, "$lte": now + window}
        cursor = (
            self._col.find(query).sort("validity.expires_at", ASCENDING).limit(limit)
        )
        return [
            ArtifactDocument(**self._strip_id(row))
            for row in await cursor.to_list(length=limit)
        ]

    async def stats(self) -> ArtifactStats:
        now = utcnow()
        total = await self._col.count_documents({})
        active = await self._col.count_documents(self._servable_query(now))
        valid = await self._col.count_documents({"validity.is_valid": True})
        expired = await self._col.count_documents({"validity.expires_at": {"$lte": now}})

        cursor = self._col.aggregate(
            [
                {"$match": {"status": ArtifactStatus.ACTIVE.value}},
                {
                    "$group": {
                        "_id": None,
                        "average": {"$avg": "$quality.score"},
                        "maximum": {"$max": "$quality.score"},
                        "minimum": {"$min": "$quality.score"},
                    }
                },
            ]
        )
        rows = await cursor.to_list(length=1)
        quality = QualitySummary()
        if rows:
            row = rows[0]
            quality = QualitySummary(
                average=round(row.get("average") or 0.0, 1),
                maximum=row.get("maximum") or 0,
                minimum=row.get("minimum") or 0,
            )
        return ArtifactStats(
            total=total, active=active, valid=valid, expired=expired, quality=quality
        )

    @staticmethod
    def _servable_query(now: datetime) -> dict[str, Any]:
        return {
            "status": ArtifactStatus.ACTIVE.value,
            "validity.is_valid": True,
            "validity.expires_at": {"$gt": now},
        }

    @classmethod
    def _filter_query(cls, criteria: ArtifactFilter, now: datetime) -> dict[str, Any]:
        query = cls._servable_query(now)
        if criteria.domain:
            query["domain"] = criteria.domain
        if criteria.tags:
            query["tags"] = {"$in": criteria.tags}
        if criteria.min_quality:
            query["quality.score"] = {"$gte": criteria.min_quality}
        if criteria.anti_reuse:
            cutoff = now - timedelta(seconds=settings.anti_reuse_window)
            query["$or"] = [
                {"validity.last_used_at": None},
                {"validity.last_used_at": {"$lt": cutoff}},
            ]
        if criteria.max_usage_count:
            query["validity.usage_count"] = {"$lt": criteria.max_usage_count}
        return query
