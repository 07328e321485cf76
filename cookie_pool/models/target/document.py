from __future__ import annotations

from datetime import datetime
from typing import Optional
from urllib.parse import urlsplit

from pydantic import BaseModel, Field


class TargetMetrics(BaseModel):
    total_visits: int = 0
    successful_visits: int = 0
    failed_visits: int = 0
    artifacts_generated: int = 0
    last_latency_ms: Optional[int] = None
    last_error: Optional[str] = None
    last_visited_at: Optional[datetime] = None


class TargetDocument(BaseModel):
    """A URL the pool visits to elicit a fresh artifact."""

    target_id: str
    url: str
    title: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    enabled: bool = True
    metrics: TargetMetrics = Field(default_factory=TargetMetrics)
    created_at: datetime

    @property
    def domain(self) -> str:
        """Host of ``url`` without a leading ``www.``."""
        host = (urlsplit(self.url).hostname or "").lower()
        return host[4:] if host.startswith("www.") else host


class TargetOutcome(BaseModel):
    success: bool
    artifact_count: int = 0
    latency_ms: int = 0
    error: Optional[str] = None
