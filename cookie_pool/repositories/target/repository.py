from __future__ import annotations

import logging
import random
from typing import Iterable, Optional

from pymongo import DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from cookie_pool.core.collections import CollectionNames
from cookie_pool.models.target.document import TargetDocument, TargetOutcome
from cookie_pool.models.target.schemas import TargetStats
from cookie_pool.repositories.base import BaseRepository, utcnow

logger = logging.getLogger(__name__)


class TargetRepository(BaseRepository):
    """MongoDB-backed source of acquisition targets."""

    COLLECTION_NAME = CollectionNames.TARGETS

    async def ensure_indexes(self) -> None:
        await self._col.create_index("target_id", unique=True)
        await self._col.create_index("enabled")

    async def create(
        self,
        target_id: str,
        url: str,
        *,
        title: Optional[str] = None,
        tags: Iterable[str] = (),
    ) -> TargetDocument | None:
        """Insert a new target; returns ``None`` if *target_id* already exists."""
        document = TargetDocument(
            target_id=target_id,
            url=url,
            title=title,
            tags=list(tags),
            created_at=utcnow(),
        )
        try:
            await self._col.insert_one(document.model_dump())
        except DuplicateKeyError:
            logger.info("Target %s already exists; skipping.", target_id)
            return None
        except PyMongoError as exc:
            logger.exception("MongoDB insert failed for target %s", target_id)
            raise RuntimeError("Database write error") from exc
        return document

    async def bulk_create(self, targets: Iterable[dict]) -> list[TargetDocument]:
        created = []
        for item in targets:
            document = await self.create(
                item["target_id"],
                item["url"],
                title=item.get("title"),
                tags=item.get("tags") or (),
            )
            if document is not None:
                created.append(document)
        logger.info("Bulk created %d targets.", len(created))
        return created

    async def list_targets(self, limit: int = 50, tags: Optional[list[str]] = None) -> list[TargetDocument]:
        query: dict = {}
        if tags:
            query["tags"] = {"$in": tags}
        cursor = self._col.find(query).sort("created_at", DESCENDING).limit(limit)
        return [TargetDocument(**self._strip_id(row)) for row in await cursor.to_list(length=limit)]

    async def get_random_target(self) -> TargetDocument | None:
        """Uniform pick among enabled targets, or ``None`` if there are none."""
        query = {"enabled": True}
        count = await self._col.count_documents(query)
        if count == 0:
            return None
        cursor = self._col.find(query).skip(random.randrange(count)).limit(1)
        rows = await cursor.to_list(length=1)
        if not rows:
            return None
        return TargetDocument(**self._strip_id(rows[0]))

    async def report_outcome(self, target_id: str, outcome: TargetOutcome) -> None:
        """Fold one session outcome into the target's health counters."""
        increments = {"metrics.total_visits": 1}
        if outcome.success:
            increments["metrics.successful_visits"] = 1
            increments["metrics.artifacts_generated"] = outcome.artifact_count
        else:
            increments["metrics.failed_visits"] = 1
        await self._col.update_one(
            {"target_id": target_id},
            {
                "$inc": increments,
                "$set": {
                    "metrics.last_latency_ms": outcome.latency_ms,
                    "metrics.last_error": outcome.error,
                    "metrics.last_visited_at": utcnow(),
                },
            },
        )
        logger.debug(
            "Recorded %s outcome for target %s.",
            "success" if outcome.success else "failed",
            target_id,
        )

    async def stats(self) -> TargetStats:
        """Totals over every target; ``success_rate`` is a whole percentage."""
        total = await self._col.count_documents({})
        enabled = await self._col.count_documents({"enabled": True})
        cursor = self._col.aggregate(
            [
                {
                    "$group": {
                        "_id": None,
                        "total_visits": {"$sum": "$metrics.total_visits"},
                        "successful_visits": {"$sum": "$metrics.successful_visits"},
                        "failed_visits": {"$sum": "$metrics.failed_visits"},
                        "artifacts_generated": {"$sum": "$metrics.artifacts_generated"},
                    }
                }
            ]
        )
        rows = await cursor.to_list(length=1)
        totals = {key: value for key, value in rows[0].items() if key != "_id"} if rows else {}
        stats = TargetStats(total=total, enabled=enabled, disabled=total - enabled, **totals)
        if stats.total_visits:
            stats.success_rate = round(stats.successful_visits / stats.total_visits * 100)
        return stats
