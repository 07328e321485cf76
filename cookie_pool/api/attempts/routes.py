from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from cookie_pool.core.database import db
from cookie_pool.models.attempt.document import AttemptDocument, AttemptStatus
from cookie_pool.models.attempt.schemas import (
    AttemptHealth,
    AttemptHistory,
    AttemptStats,
    RefreshDueResponse,
    ResetStuckResponse,
)
from cookie_pool.models.common import ErrorResponse
from cookie_pool.repositories.attempt.repository import AttemptTracker

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/attempts", tags=["attempts"])


def _get_tracker() -> AttemptTracker:
    return AttemptTracker.from_db(db)


@router.get("/stats", response_model=AttemptStats, summary="Recent attempt statistics")
async def get_attempt_stats(
    limit: int = Query(default=100, ge=1, le=1000),
    tracker: AttemptTracker = Depends(_get_tracker),
) -> AttemptStats:
    try:
        return await tracker.stats(limit)
    except Exception as exc:
        logger.error("GET /attempts/stats DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


@router.get("/history", response_model=AttemptHistory, summary="Paginated attempt history")
async def get_attempt_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    status: Optional[AttemptStatus] = None,
    target_ref: Optional[str] = None,
    tracker: AttemptTracker = Depends(_get_tracker),
) -> AttemptHistory:
    try:
        return await tracker.history(page=page, limit=limit, status=status, target_ref=target_ref)
    except Exception as exc:
        logger.error("GET /attempts/history DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


@router.get("/stuck", response_model=list[AttemptDocument], summary="Attempts stuck in progress")
async def get_stuck_attempts(
    tracker: AttemptTracker = Depends(_get_tracker),
) -> list[AttemptDocument]:
    try:
        return await tracker.stuck_attempts()
    except Exception as exc:
        logger.error("GET /attempts/stuck DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


@router.post(
    "/reset-stuck", response_model=ResetStuckResponse, summary="Fail attempts stuck in progress"
)
async def post_reset_stuck(
    tracker: AttemptTracker = Depends(_get_tracker),
) -> ResetStuckResponse:
    try:
        return ResetStuckResponse(reset=await tracker.reset_stuck())
    except Exception as exc:
        logger.error("POST /attempts/reset-stuck DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


@router.get(
    "/refresh-due", response_model=RefreshDueResponse, summary="Whether a refresh is due"
)
async def get_refresh_due(
    tracker: AttemptTracker = Depends(_get_tracker),
) -> RefreshDueResponse:
    try:
        return RefreshDueResponse(refresh_due=await tracker.is_refresh_due())
    except Exception as exc:
        logger.error("GET /attempts/refresh-due DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


@router.get("/health", response_model=AttemptHealth, summary="Refresh health status")
async def get_attempt_health(
    tracker: AttemptTracker = Depends(_get_tracker),
) -> AttemptHealth:
    try:
        return await tracker.health()
    except Exception as exc:
        logger.error("GET /attempts/health DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


@router.get(
    "/{attempt_id}",
    response_model=AttemptDocument,
    responses={404: {"model": ErrorResponse}},
    summary="One attempt record",
)
async def get_attempt(
    attempt_id: str,
    tracker: AttemptTracker = Depends(_get_tracker),
) -> AttemptDocument:
    """Return one attempt record by id.

    - **200** — attempt found
    - **404** — unknown attempt id
    - **500** — database failure
    """
    try:
        attempt = await tracker.get(attempt_id)
    except Exception as exc:
        logger.error("GET /attempts/%s DB error: %s", attempt_id, exc)
        raise HTTPException(status_code=500, detail=str(exc))
    if attempt is None:
        raise HTTPException(status_code=404, detail=f"Attempt {attempt_id} not found")
    return attempt
