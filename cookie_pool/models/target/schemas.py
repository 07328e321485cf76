from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, HttpUrl


class TargetCreateRequest(BaseModel):
    """Request body for POST /targets."""

    target_id: str = Field(min_length=1)
    url: HttpUrl
    title: Optional[str] = None
    tags: list[str] = Field(default_factory=list)


class TargetBulkCreateRequest(BaseModel):
    targets: list[TargetCreateRequest]


class TargetBulkCreateResponse(BaseModel):
    created: int


class TargetStats(BaseModel):
    """Visit totals across all targets."""

    total: int = 0
    enabled: int = 0
    disabled: int = 0
    total_visits: int = 0
    successful_visits: int = 0
    failed_visits: int = 0
    artifacts_generated: int = 0
    success_rate: int = 0
