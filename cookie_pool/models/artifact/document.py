from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ArtifactStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    FAILED = "failed"


class PayloadEntry(BaseModel):
    """One cookie as reported by the browser capability.

    ``expires`` is a Unix timestamp in seconds; ``-1`` or ``None`` marks a
    session cookie.  Unknown keys are preserved so the stored payload can be
    replayed as-is by consumers.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    value: str = ""
    domain: str = ""
    path: str = "/"
    expires: Optional[float] = None
    http_only: bool = Field(default=False, alias="httpOnly")
    secure: bool = False
    same_site: Optional[str] = Field(default=None, alias="sameSite")


class ArtifactSource(BaseModel):
    target_id: Optional[str] = None
    target_url: Optional[str] = None
    proxy: Optional[str] = None
    session_id: Optional[str] = None
    attempt_id: Optional[str] = None


class Validity(BaseModel):
    is_valid: bool = True
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    usage_count: int = 0


class Quality(BaseModel):
    score: int = Field(default=100, ge=0, le=100)
    last_success_at: Optional[datetime] = None


class ArtifactDocument(BaseModel):
    """A stored cookie set plus its validity, quality, and lifecycle state."""

    model_config = ConfigDict(use_enum_values=True)

    artifact_id: str
    payload: list[PayloadEntry]
    source: ArtifactSource = Field(default_factory=ArtifactSource)
    domain: Optional[str] = None
    validity: Validity
    quality: Quality = Field(default_factory=Quality)
    status: ArtifactStatus = ArtifactStatus.ACTIVE
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
