from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from cookie_pool.core.database import db
from cookie_pool.models.target.document import TargetDocument
from cookie_pool.models.target.schemas import (
    TargetBulkCreateRequest,
    TargetBulkCreateResponse,
    TargetCreateRequest,
    TargetStats,
)
from cookie_pool.repositories.target.repository import TargetRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/targets", tags=["targets"])


def _get_repository() -> TargetRepository:
    return TargetRepository.from_db(db)


@router.post("", status_code=201, response_model=TargetDocument, summary="Register a target")
async def post_target(
    request: TargetCreateRequest,
    repository: TargetRepository = Depends(_get_repository),
) -> TargetDocument:
    """Store a new acquisition target.

    - **201** — target stored
    - **409** — a target with this id already exists
    - **422** — invalid URL or missing id
    - **500** — database failure
    """
    try:
        document = await repository.create(
            request.target_id, str(request.url), title=request.title, tags=request.tags
        )
    except Exception as exc:
        logger.error("POST /targets DB error for %s: %s", request.target_id, exc)
        raise HTTPException(status_code=500, detail=str(exc))
    if document is None:
        raise HTTPException(
            status_code=409, detail=f"Target {request.target_id} already exists"
        )
    return document


@router.post(
    "/bulk", response_model=TargetBulkCreateResponse, summary="Register many targets"
)
async def post_targets_bulk(
    request: TargetBulkCreateRequest,
    repository: TargetRepository = Depends(_get_repository),
) -> TargetBulkCreateResponse:
    """Existing ids are skipped; ``created`` counts only new targets."""
    items = [item.model_dump(mode="json") for item in request.targets]
    try:
        created = await repository.bulk_create(items)
    except Exception as exc:
        logger.error("POST /targets/bulk DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
    return TargetBulkCreateResponse(created=len(created))


@router.get("", response_model=list[TargetDocument], summary="List targets")
async def get_targets(
    limit: int = Query(default=50, ge=1, le=500),
    tags: Optional[list[str]] = Query(default=None),
    repository: TargetRepository = Depends(_get_repository),
) -> list[TargetDocument]:
    try:
        return await repository.list_targets(limit=limit, tags=tags)
    except Exception as exc:
        logger.error("GET /targets DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


@router.get("/stats", response_model=TargetStats, summary="Visit totals across targets")
async def get_target_stats(
    repository: TargetRepository = Depends(_get_repository),
) -> TargetStats:
    try:
        return await repository.stats()
    except Exception as exc:
        logger.error("GET /targets/stats DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
