from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from cookie_pool.api.router import router
from cookie_pool.core.config import settings
from cookie_pool.core.database import db
from cookie_pool.repositories.artifact.repository import ArtifactStore
from cookie_pool.repositories.attempt.repository import AttemptTracker
from cookie_pool.repositories.target.repository import TargetRepository
from cookie_pool.services.pool.scheduler import build_scheduler
from cookie_pool.workers.browser import close_http_client


def _configure_logging() -> None:
    """Configure the ``cookie_pool`` logger namespace.

    ``logging.basicConfig`` is a no-op when the root logger already has
    handlers (e.g. when uvicorn sets up its own handlers before our lifespan
    runs).  Configuring the ``cookie_pool`` namespace directly, with
    ``propagate = False``, keeps application logs on stdout regardless of
    uvicorn's root-logger setup.
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)-8s %(name)s: %(message)s")
    )
    app_log = logging.getLogger("cookie_pool")
    app_log.setLevel(level)
    if not app_log.handlers:
        app_log.addHandler(handler)
    app_log.propagate = False


_configure_logging()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    # ── Startup ──────────────────────────────────────────────────────
    await db.connect()
    for repository in (ArtifactStore, AttemptTracker, TargetRepository):
        await repository.from_db(db).ensure_indexes()
    scheduler = build_scheduler(db)
    app.state.scheduler = scheduler
    if settings.pool_autostart:
        await scheduler.start()
    yield
    # ── Shutdown ─────────────────────────────────────────────────────
    await scheduler.stop()
    await close_http_client()
    await db.disconnect()


app = FastAPI(
    title="Cookie Pool",
    description="Keeps a pool of fresh browser cookie sets and serves the best one.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)


@app.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}
