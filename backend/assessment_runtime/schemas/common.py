from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel


# Machine-readable error codes carried in `error.code`
HTTP_ERROR = "HTTP_ERROR"
VALIDATION_ERROR = "VALIDATION_ERROR"
INTERNAL_ERROR = "INTERNAL_ERROR"
SESSION_NOT_ACTIVE = "SESSION_NOT_ACTIVE"
FOCUS_LOCKED = "FOCUS_LOCKED"
AI_ASSIST_LOCKED = "AI_ASSIST_LOCKED"
AI_ASSIST_UNAVAILABLE = "AI_ASSIST_UNAVAILABLE"
NOTHING_TO_RETRY = "NOTHING_TO_RETRY"


class ErrorOut(BaseModel):
    code: str
    message: str
    details: Optional[Dict[str, Any]] = None


class Envelope(BaseModel):
    """Every response body: `data` on success, `error` otherwise, never both."""

    request_id: str
    data: Optional[Any] = None
    error: Optional[ErrorOut] = None


def envelope(request_id: str, data: Any = None, error: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return Envelope(request_id=request_id, data=data, error=error).model_dump()
