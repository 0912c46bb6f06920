from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Callable, Dict

from sessiongate.config import Settings
from sessiongate.logging import get_logger
from sessiongate.service.errors import InvalidTokenError, TokenExpiredError

logger = get_logger(__name__)

CLOCK_SKEW_LEEWAY_SECONDS = 120


class TokenService:
    """Issues and verifies HS256 bearer tokens bound to a session id.

    The token only proves identity and the session it was minted for; whether
    that session is still the active one is decided by ``SessionService``.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], float] = time.time):
        self.settings = settings
        self._clock = clock

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        digest = hmac.new(
            self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def issue(self, user_id: str, session_id: str) -> str:
        now = int(self._clock())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user_id,
            "sid": session_id,
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": now + self.settings.access_token_ttl_minutes * 60,
        }
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def verify(self, token: str) -> Dict[str, Any]:
        """Return the claims of ``token``.

        Raises:
            InvalidTokenError: malformed, wrongly signed, or issued for
                another issuer or audience.
            TokenExpiredError: well-formed but past ``exp``.
        """
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            raise InvalidTokenError("malformed token")

        try:
            header = json.loads(self._decode_segment(header_b64))
        except ValueError:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("malformed token")
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("unsupported token algorithm")

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            raise InvalidTokenError("token signature mismatch")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except ValueError as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("malformed token")
        if not isinstance(payload, dict):
            raise InvalidTokenError("malformed token")

        if payload.get("iss") != self.settings.jwt_issuer:
            raise InvalidTokenError("token issuer mismatch")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            raise InvalidTokenError("token audience mismatch")
        if not payload.get("sub") or not payload.get("sid"):
            raise InvalidTokenError("token is missing subject or session")

        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError("token has no valid expiry")
        if exp_ts <= self._clock() - CLOCK_SKEW_LEEWAY_SECONDS:
            raise TokenExpiredError("token expired")
        return payload
