from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


@dataclass
class Session:
    """A user's single live session.

    Timestamps are epoch milliseconds. ``metadata`` carries client context
    (user agent, IP address, device string) and is stored verbatim.
    """

    user_id: str
    session_id: str
    created_at: int
    last_activity: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "session_id": self.session_id,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise ValueError("session metadata must be an object")
        return cls(
            user_id=str(data["user_id"]),
            session_id=str(data["session_id"]),
            created_at=int(data["created_at"]),
            last_activity=int(data["last_activity"]),
            metadata=metadata,
        )


@dataclass
class SessionGrant:
    """Result of a successful createSession call."""

    session_id: str
    expires_in: int
    session: Session
