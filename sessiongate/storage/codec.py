from __future__ import annotations

import json
from typing import Any, Optional

from sessiongate.logging import get_logger
from sessiongate.storage.models import Session

logger = get_logger(__name__)


class SessionRecordCodec:
    """Converts Session records to and from the store's string form.

    Decoding never raises: empty, corrupt or foreign payloads come back as
    ``None`` so callers can treat them the same as a missing record.
    """

    @staticmethod
    def encode(session: Session) -> str:
        return json.dumps(session.to_dict(), separators=(",", ":"), sort_keys=True)

    @staticmethod
    def decode(value: Any) -> Optional[Session]:
        if value is None or value == "" or value == b"":
            return None
        if isinstance(value, Session):
            return value
        if isinstance(value, (bytes, bytearray)):
            try:
                value = bytes(value).decode("utf-8")
            except UnicodeDecodeError:
                logger.warning("session_record_not_utf8")
                return None
        if isinstance(value, dict):
            data = value
        elif isinstance(value, str):
            try:
                data = json.loads(value)
            except ValueError:
                logger.warning("session_record_not_json", length=len(value))
                return None
        else:
            return None
        if not isinstance(data, dict):
            return None
        try:
            return Session.from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("session_record_malformed", error=str(exc))
            return None
