from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, computed_field

from cookie_pool.models.artifact.document import ArtifactDocument, PayloadEntry


class ArtifactFilter(BaseModel):
    """Conditions shared by ``ArtifactStore.select_best`` and ``list_artifacts``.

    ``status=active``, ``is_valid`` and an unexpired ``expires_at`` are always
    required; everything here narrows the match further.
    """

    domain: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    min_quality: int = Field(default=0, ge=0, le=100)
    anti_reuse: bool = False
    max_usage_count: Optional[int] = Field(default=None, ge=1)


class ArtifactSortField(str, Enum):
    QUALITY = "quality"
    EXPIRY = "expiry"
    USAGE = "usage"
    CREATED = "created"

    @property
    def path(self) -> str:
        """Document field the listing sorts on."""
        return {
            "quality": "quality.score",
            "expiry": "validity.expires_at",
            "usage": "validity.usage_count",
            "created": "created_at",
        }[self.value]


class EvictionResult(BaseModel):
    expired: int = 0
    invalid: int = 0

    @computed_field
    @property
    def total(self) -> int:
        return self.expired + self.invalid


class QualitySummary(BaseModel):
    average: float = 0.0
    maximum: int = 0
    minimum: int = 0


class ArtifactStats(BaseModel):
    total: int
    active: int
    valid: int
    expired: int
    quality: QualitySummary


class PrimaryToken(BaseModel):
    name: str
    value: str
    expires_at: datetime


class BestArtifactResponse(BaseModel):
    """Response for ``GET /artifacts/best``.

    ``success`` is ``False`` with only ``message`` and ``total`` populated
    when the pool has nothing matching the filter.
    """

    success: bool
    message: Optional[str] = None
    total: int
    artifact_id: Optional[str] = None
    token_name: Optional[str] = None
    token: Optional[str] = None
    expiry: Optional[datetime] = None
    quality: Optional[int] = None
    usage_count: Optional[int] = None
    payload: list[PayloadEntry] = Field(default_factory=list)
    target_id: Optional[str] = None
    domain: Optional[str] = None
    created_at: Optional[datetime] = None


class FeedbackRequest(BaseModel):
    """Request body for ``POST /artifacts/{artifact_id}/feedback``."""

    success: bool


class FeedbackResponse(BaseModel):
    artifact_id: str
    score: int
    status: str


class ArtifactListResponse(BaseModel):
    """Response for ``GET /artifacts``.  Listing never counts a use."""

    total: int
    artifacts: list[ArtifactDocument]
