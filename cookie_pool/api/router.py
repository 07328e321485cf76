from fastapi import APIRouter

from cookie_pool.api.artifacts.routes import router as artifacts_router
from cookie_pool.api.attempts.routes import router as attempts_router
from cookie_pool.api.pool.routes import router as pool_router
from cookie_pool.api.targets.routes import router as targets_router

router = APIRouter()
router.include_router(artifacts_router)
router.include_router(pool_router)
router.include_router(attempts_router)
router.include_router(targets_router)
