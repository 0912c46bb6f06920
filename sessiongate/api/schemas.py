from __future__ import annotations

from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from sessiongate.storage.models import Session


class ErrorBody(BaseModel):
    """Error envelope body; ``code`` is an ``ErrorKind`` value or a generic status code."""

    code: str
    message: str
    details: Optional[Any] = None


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SessionInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    session_id: str
    user_id: str
    created_at: int
    last_activity: int
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_session(cls, session: Session) -> "SessionInfo":
        return cls(
            session_id=session.session_id,
            user_id=session.user_id,
            created_at=session.created_at,
            last_activity=session.last_activity,
            metadata=dict(session.metadata),
        )


class VerifyResponse(BaseModel):
    user_id: str
    session: Optional[SessionInfo] = None


class RefreshResponse(BaseModel):
    token: str
    session_id: str
    expires_in: int
    token_type: str = "bearer"


class LogoutResponse(BaseModel):
    removed: bool
    connections_closed: int = 0


class HeartbeatResponse(BaseModel):
    updated: bool


class ActiveSessionResponse(BaseModel):
    session: Optional[SessionInfo] = None
