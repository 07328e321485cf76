from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional, Sequence

from cookie_pool.core.config import settings
from cookie_pool.models.artifact.document import ArtifactDocument
from cookie_pool.models.artifact.schemas import (
    ArtifactFilter,
    ArtifactListResponse,
    ArtifactSortField,
    ArtifactStats,
    BestArtifactResponse,
    FeedbackResponse,
    PrimaryToken,
)
from cookie_pool.repositories.artifact.repository import ArtifactStore

logger = logging.getLogger(__name__)


def extract_primary_token(
    artifact: ArtifactDocument, markers: Optional[Sequence[str]] = None
) -> PrimaryToken | None:
    """Return the first payload entry whose name contains a token marker.

    The entry's own expiry is reported when it has one; otherwise the
    artifact's expiry stands in.
    """
    markers = [m.lower() for m in (markers or settings.primary_token_markers)]
    for entry in artifact.payload:
        name = entry.name.lower()
        if any(marker in name for marker in markers):
            if entry.expires is not None and entry.expires > 0:
                expires_at = datetime.fromtimestamp(entry.expires, tz=timezone.utc)
            else:
                expires_at = artifact.validity.expires_at
            return PrimaryToken(name=entry.name, value=entry.value, expires_at=expires_at)
    return None


class ArtifactService:
    """Serving and feedback on top of the ``ArtifactStore``."""

    def __init__(self, store: ArtifactStore) -> None:
        self._store = store

    async def best_artifact(self, criteria: ArtifactFilter) -> BestArtifactResponse:
        """Serve one artifact, or a well-formed "none available" answer."""
        artifact = await self._store.select_best(criteria)
        total = await self._store.count(active_only=True)
        if artifact is None:
            return BestArtifactResponse(
                success=False, message="No artifacts available", total=total
            )

        token = extract_primary_token(artifact)
        logger.info(
            "Served artifact %s (score=%d, uses=%d).",
            artifact.artifact_id,
            artifact.quality.score,
            artifact.validity.usage_count,
        )
        return BestArtifactResponse(
            success=True,
            total=total,
            artifact_id=artifact.artifact_id,
            token_name=token.name if token else None,
            token=token.value if token else None,
            expiry=token.expires_at if token else artifact.validity.expires_at,
            quality=artifact.quality.score,
            usage_count=artifact.validity.usage_count,
            payload=artifact.payload,
            target_id=artifact.source.target_id,
            domain=artifact.domain,
            created_at=artifact.created_at,
        )

    async def list_artifacts(
        self,
        criteria: ArtifactFilter,
        sort_by: ArtifactSortField = ArtifactSortField.QUALITY,
        descending: bool = True,
        limit: int = 10,
    ) -> ArtifactListResponse:
        artifacts = await self._store.list_artifacts(
            criteria, sort_by=sort_by, descending=descending, limit=limit
        )
        total = await self._store.count(active_only=True)
        return ArtifactListResponse(total=total, artifacts=artifacts)

    async def record_feedback(self, artifact_id: str, success: bool) -> FeedbackResponse:
        """Raises ``ArtifactNotFound`` for an unknown id."""
        artifact = await self._store.record_feedback(artifact_id, success)
        return FeedbackResponse(
            artifact_id=artifact.artifact_id,
            score=artifact.quality.score,
            status=str(artifact.status),
        )

    async def stats(self) -> ArtifactStats:
        return await self._store.stats()
