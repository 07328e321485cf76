from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from cookie_pool.core.database import db
from cookie_pool.core.errors import ArtifactNotFound
from cookie_pool.models.artifact.schemas import (
    ArtifactFilter,
    ArtifactListResponse,
    ArtifactSortField,
    ArtifactStats,
    BestArtifactResponse,
    FeedbackRequest,
    FeedbackResponse,
)
from cookie_pool.models.common import ErrorResponse
from cookie_pool.repositories.artifact.repository import ArtifactStore
from cookie_pool.services.artifact.service import ArtifactService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/artifacts", tags=["artifacts"])


# ---------------------------------------------------------------------------
# Dependency
# ---------------------------------------------------------------------------


def _get_service() -> ArtifactService:
    """FastAPI dependency that builds an ``ArtifactService`` for each request."""
    return ArtifactService(ArtifactStore.from_db(db))


# ---------------------------------------------------------------------------
# GET /artifacts
# ---------------------------------------------------------------------------


@router.get(
    "",
    response_model=ArtifactListResponse,
    summary="List servable artifacts",
)
async def list_artifacts(
    domain: Optional[str] = None,
    tags: Optional[list[str]] = Query(default=None),
    min_quality: int = Query(default=0, ge=0, le=100),
    sort_by: ArtifactSortField = ArtifactSortField.QUALITY,
    descending: bool = True,
    limit: int = Query(default=10, ge=1, le=100),
    service: ArtifactService = Depends(_get_service),
) -> ArtifactListResponse:
    """Inspect the pool without consuming it; usage counts are untouched.

    - **200** — matching artifacts, possibly empty
    - **422** — invalid query parameters
    - **500** — database failure
    """
    criteria = ArtifactFilter(domain=domain, tags=tags or [], min_quality=min_quality)
    try:
        return await service.list_artifacts(
            criteria, sort_by=sort_by, descending=descending, limit=limit
        )
    except Exception as exc:
        logger.error("GET /artifacts DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


# ---------------------------------------------------------------------------
# GET /artifacts/best
# ---------------------------------------------------------------------------


@router.get(
    "/best",
    response_model=BestArtifactResponse,
    summary="Serve the best available artifact",
)
async def get_best_artifact(
    domain: Optional[str] = None,
    tags: Optional[list[str]] = Query(default=None),
    min_quality: int = Query(default=50, ge=0, le=100),
    anti_reuse: bool = False,
    max_usage_count: Optional[int] = Query(default=None, ge=1),
    service: ArtifactService = Depends(_get_service),
) -> BestArtifactResponse:
    """Select the highest-quality servable artifact and count the use.

    - **200** — artifact served, or ``success=false`` when nothing matches
    - **422** — invalid query parameters
    - **500** — database failure
    """
    criteria = ArtifactFilter(
        domain=domain,
        tags=tags or [],
        min_quality=min_quality,
        anti_reuse=anti_reuse,
        max_usage_count=max_usage_count,
    )
    try:
        return await service.best_artifact(criteria)
    except Exception as exc:
        logger.error("GET /artifacts/best DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


# ---------------------------------------------------------------------------
# POST /artifacts/{artifact_id}/feedback
# ---------------------------------------------------------------------------


@router.post(
    "/{artifact_id}/feedback",
    response_model=FeedbackResponse,
    responses={404: {"model": ErrorResponse}},
    summary="Report whether a served artifact worked",
)
async def post_feedback(
    artifact_id: str,
    request: FeedbackRequest,
    service: ArtifactService = Depends(_get_service),
) -> FeedbackResponse:
    """Adjust the artifact's quality score.

    - **200** — score updated
    - **404** — unknown artifact id
    - **500** — database failure
    """
    try:
        return await service.record_feedback(artifact_id, request.success)
    except ArtifactNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except Exception as exc:
        logger.error("POST /artifacts/%s/feedback DB error: %s", artifact_id, exc)
        raise HTTPException(status_code=500, detail=str(exc))


# ---------------------------------------------------------------------------
# GET /artifacts/stats
# ---------------------------------------------------------------------------


@router.get("/stats", response_model=ArtifactStats, summary="Pool content statistics")
async def get_artifact_stats(
    service: ArtifactService = Depends(_get_service),
) -> ArtifactStats:
    try:
        return await service.stats()
    except Exception as exc:
        logger.error("GET /artifacts/stats DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
