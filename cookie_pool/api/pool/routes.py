from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from cookie_pool.models.common import ActionResponse
from cookie_pool.models.pool.schemas import (
    CleanupReport,
    PoolConfig,
    PoolConfigUpdate,
    PoolStatus,
)
from cookie_pool.services.pool.scheduler import PoolScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/pool", tags=["pool"])


def _get_scheduler(request: Request) -> PoolScheduler:
    """The scheduler owned by the application lifespan."""
    return request.app.state.scheduler


@router.post("/start", response_model=ActionResponse, summary="Start the pool scheduler")
async def start_pool(scheduler: PoolScheduler = Depends(_get_scheduler)) -> ActionResponse:
    if scheduler.running:
        return ActionResponse(message="Pool scheduler is already running", running=True)
    await scheduler.start()
    return ActionResponse(message="Pool scheduler started", running=True)


@router.post("/stop", response_model=ActionResponse, summary="Stop the pool scheduler")
async def stop_pool(scheduler: PoolScheduler = Depends(_get_scheduler)) -> ActionResponse:
    """Stop both timers.  In-flight sessions finish in the background."""
    if not scheduler.running:
        return ActionResponse(message="Pool scheduler is not running", running=False)
    await scheduler.stop(wait=False)
    return ActionResponse(message="Pool scheduler stopped", running=False)


@router.get("/status", response_model=PoolStatus, summary="Scheduler status and counters")
async def get_pool_status(scheduler: PoolScheduler = Depends(_get_scheduler)) -> PoolStatus:
    try:
        return await scheduler.status()
    except Exception as exc:
        logger.error("GET /pool/status DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))


@router.put("/config", response_model=PoolConfig, summary="Update pool settings")
async def put_pool_config(
    request: PoolConfigUpdate,
    scheduler: PoolScheduler = Depends(_get_scheduler),
) -> PoolConfig:
    """Apply new settings to the live scheduler.

    - **200** — configuration applied
    - **422** — the resulting configuration is invalid
    """
    try:
        return scheduler.update_config(request.model_dump(exclude_none=True))
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail=str(exc))


@router.post("/cleanup", response_model=CleanupReport, summary="Run maintenance now")
async def post_pool_cleanup(
    scheduler: PoolScheduler = Depends(_get_scheduler),
) -> CleanupReport:
    try:
        return await scheduler.run_cleanup()
    except Exception as exc:
        logger.error("POST /pool/cleanup DB error: %s", exc)
        raise HTTPException(status_code=500, detail=str(exc))
