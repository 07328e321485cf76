from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class AttemptStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


TERMINAL_STATUSES = (AttemptStatus.SUCCESS.value, AttemptStatus.FAILED.value)


class AttemptDocument(BaseModel):
    """One acquisition try.

    Leaves ``in_progress`` at most once; ``success`` and ``failed`` are
    terminal.
    """

    model_config = ConfigDict(use_enum_values=True)

    attempt_id: str
    target_ref: Optional[str] = None
    proxy_ref: Optional[str] = None
    status: AttemptStatus = AttemptStatus.IN_PROGRESS
    started_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    retry_count: int = 0
    consecutive_failures: int = 0
    error_message: Optional[str] = None
    artifact_count: Optional[int] = None
    next_eligible_at: Optional[datetime] = None
    metadata: dict[str, Any] = Field(default_factory=dict)
