from __future__ import annotations

from typing import Optional

from pydantic import BaseModel


class ActionResponse(BaseModel):
    """Acknowledgement for control endpoints such as ``POST /pool/start``."""

    message: str
    running: Optional[bool] = None


class ErrorResponse(BaseModel):
    """Body of every error raised through ``HTTPException``."""

    detail: str
