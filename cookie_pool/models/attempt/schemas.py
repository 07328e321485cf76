from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel

from cookie_pool.models.attempt.document import AttemptDocument


class AttemptStats(BaseModel):
    """Aggregates over the most recent attempts.  Read-only."""

    total: int
    success_count: int
    failed_count: int
    in_progress_count: int
    success_rate: Optional[float] = None
    average_artifacts: float = 0.0
    average_duration_ms: Optional[float] = None
    next_eligible_at: Optional[datetime] = None
    stuck_count: int = 0
    health: str = "degraded"


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int
    has_next: bool
    has_prev: bool


class AttemptHistory(BaseModel):
    attempts: list[AttemptDocument]
    pagination: Pagination


class RefreshDueResponse(BaseModel):
    refresh_due: bool


class ResetStuckResponse(BaseModel):
    reset: int


class AttemptHealth(BaseModel):
    """Refresh health.

    ``critical`` while any attempt is stuck, ``healthy`` with no stuck
    attempts and at least one success in the last hour, else ``degraded``.
    """

    status: Literal["healthy", "degraded", "critical"]
    last_hour_success_count: int
    last_day_success_count: int
    stuck_count: int
    next_eligible_at: Optional[datetime] = None
    checked_at: datetime
