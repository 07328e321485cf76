from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from cookie_pool.core.config import settings
from cookie_pool.models.artifact.schemas import EvictionResult


class PoolConfig(BaseModel):
    """Live-tunable scheduler settings."""

    min_size: int = Field(default_factory=lambda: settings.pool_min_size, ge=0)
    max_size: int = Field(default_factory=lambda: settings.pool_max_size, ge=0)
    max_concurrent: int = Field(
        default_factory=lambda: settings.pool_max_concurrent, ge=1
    )
    visit_interval: float = Field(
        default_factory=lambda: settings.pool_visit_interval, gt=0
    )
    visit_jitter: float = Field(
        default_factory=lambda: settings.pool_visit_jitter, ge=0
    )
    visit_floor: float = Field(default_factory=lambda: settings.pool_visit_floor, ge=0)
    cleanup_interval: float = Field(
        default_factory=lambda: settings.pool_cleanup_interval, gt=0
    )
    continuous_refresh: bool = Field(
        default_factory=lambda: settings.pool_continuous_refresh
    )

    @model_validator(mode="after")
    def _check_band(self) -> PoolConfig:
        if self.min_size > self.max_size:
            raise ValueError("min_size must not exceed max_size")
        return self


class PoolConfigUpdate(BaseModel):
    """Request body for PUT /pool/config; omitted fields stay unchanged."""

    min_size: Optional[int] = None
    max_size: Optional[int] = None
    max_concurrent: Optional[int] = None
    visit_interval: Optional[float] = None
    visit_jitter: Optional[float] = None
    visit_floor: Optional[float] = None
    cleanup_interval: Optional[float] = None
    continuous_refresh: Optional[bool] = None


class SessionCounters(BaseModel):
    total_sessions: int = 0
    successful_sessions: int = 0
    failed_sessions: int = 0
    artifacts_generated: int = 0


class PoolStatus(BaseModel):
    running: bool
    started_at: Optional[datetime] = None
    uptime_seconds: int = 0
    active_sessions: int
    idle_reason: Optional[str] = None
    pool_size: Optional[int] = None
    config: PoolConfig
    counters: SessionCounters


class CleanupReport(BaseModel):
    eviction: EvictionResult
    stuck_reset: int = 0
    attempts_pruned: int = 0
