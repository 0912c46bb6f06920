from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Set

from sessiongate.logging import get_logger, mask_id
from sessiongate.service.errors import (
    AuthenticationError,
    ErrorKind,
    ServerError,
    ServiceError,
    error_for_kind,
)
from sessiongate.service.sessions import SessionService
from sessiongate.service.tokens import TokenService
from sessiongate.storage.models import Session

logger = get_logger(__name__)

# Application close code used when a socket's session is no longer valid
SESSION_CLOSE_CODE = 4401

SESSION_ENDED_MESSAGES = {
    "duplicate_login": "Logged in on another device; this session has ended.",
    "logout": "You have been logged out.",
    "session_refreshed": "This session was replaced by a refreshed one.",
    "session_invalid": "Session is no longer valid; please log in again.",
    "force_logout": "Your session was ended by an administrator.",
}


@dataclass
class AuthContext:
    user_id: str
    session_id: str
    session: Optional[Session] = None
    claims: Dict[str, Any] = field(default_factory=dict)


class CredentialGuard:
    """Turns a ``(token, session_id)`` pair into an ``AuthContext`` or a rejection.

    Every failure surfaces as a ``ServiceError`` whose ``error_code`` is one of
    the ``ErrorKind`` values; nothing else escapes ``authorize``.
    """

    def __init__(self, sessions: SessionService, tokens: TokenService):
        self.sessions = sessions
        self.tokens = tokens

    async def authorize(
        self, token: Optional[str], session_id: Optional[str]
    ) -> AuthContext:
        if not token or not session_id:
            raise AuthenticationError(
                "authentication token and session id are required",
                error_code=ErrorKind.MISSING_CREDENTIALS.value,
            )
        try:
            claims = self.tokens.verify(token)
            user_id = str(claims["sub"])
            if claims.get("sid") != session_id:
                logger.warning(
                    "session_token_mismatch",
                    user_id=user_id,
                    session_id=mask_id(session_id),
                )
                raise AuthenticationError(
                    "token was not issued for this session",
                    error_code=ErrorKind.SESSION_MISMATCH.value,
                )
            result = await self.sessions.validate_session(user_id, session_id)
        except ServiceError:
            raise
        except Exception as exc:
            logger.error(
                "credential_guard_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise ServerError(
                "session validation failed",
                error_code=ErrorKind.VALIDATION_ERROR.value,
            ) from exc

        if not result.is_valid:
            raise error_for_kind(result.error_kind, result.message or "invalid session")
        return AuthContext(
            user_id=user_id, session_id=session_id, session=result.session, claims=claims
        )


class Connection(Protocol):
    """The slice of a websocket the guard needs."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


@dataclass
class _Registration:
    context: AuthContext
    connection: Connection
    metadata: Dict[str, Any] = field(default_factory=dict)


class SocketGuard:
    """Authenticates realtime connections and owns the connection registry.

    The registry maps a connection id to the identity it authenticated as.
    It lives exactly as long as this object: entries are inserted by
    ``authenticate`` and removed by ``disconnect`` or when the guard ends a
    connection itself.
    """

    def __init__(
        self,
        guard: CredentialGuard,
        *,
        duplicate_login_grace_seconds: float = 10.0,
    ):
        self.guard = guard
        self.duplicate_login_grace_seconds = duplicate_login_grace_seconds
        self._connections: Dict[str, _Registration] = {}
        self._pending: Set[asyncio.Task] = set()

    async def authenticate(
        self,
        connection_id: str,
        connection: Connection,
        handshake: Mapping[str, Any],
        *,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> AuthContext:
        """Validate the handshake and register the connection.

        Raises ``ServiceError`` on rejection; the connection is not registered.
        """
        if not isinstance(handshake, Mapping):
            raise AuthenticationError(
                "handshake must be an object",
                error_code=ErrorKind.MISSING_CREDENTIALS.value,
            )
        token = handshake.get("token")
        session_id = handshake.get("session_id") or handshake.get("sessionId")
        ctx = await self.guard.authorize(token, session_id)

        superseded = [
            cid
            for cid, entry in self._connections.items()
            if entry.context.user_id == ctx.user_id
            and entry.context.session_id != ctx.session_id
        ]
        self._connections[connection_id] = _Registration(
            context=ctx, connection=connection, metadata=dict(metadata or {})
        )
        logger.info(
            "socket_authenticated",
            user_id=ctx.user_id,
            session_id=mask_id(ctx.session_id),
            connection_id=connection_id,
            superseded=len(superseded),
        )
        for cid in superseded:
            self._spawn(self._handle_duplicate_login(cid, metadata or {}))
        return ctx

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _handle_duplicate_login(
        self, connection_id: str, new_login: Mapping[str, Any]
    ) -> None:
        entry = self._connections.get(connection_id)
        if entry is None:
            return
        try:
            await entry.connection.send_json(
                {
                    "type": "duplicate_login",
                    "data": {
                        "type": "new_login_attempt",
                        "device_info": new_login.get("user_agent", ""),
                        "ip_address": new_login.get("ip_address", ""),
                        "timestamp": int(time.time() * 1000),
                    },
                }
            )
        except Exception as exc:
            logger.warning(
                "duplicate_login_notice_failed",
                connection_id=connection_id,
                error_type=type(exc).__name__,
            )
        if self.duplicate_login_grace_seconds > 0:
            await asyncio.sleep(self.duplicate_login_grace_seconds)
        await self._end(connection_id, "duplicate_login")

    async def _end(self, connection_id: str, reason: str) -> bool:
        entry = self._connections.pop(connection_id, None)
        if entry is None:
            return False
        try:
            await entry.connection.send_json(
                {
                    "type": "session_ended",
                    "data": {
                        "reason": reason,
                        "message": SESSION_ENDED_MESSAGES.get(reason, "Session ended."),
                    },
                }
            )
            await entry.connection.close(code=SESSION_CLOSE_CODE, reason=reason)
        except Exception as exc:
            # Peer already gone; the registry entry is removed either way
            logger.debug(
                "socket_close_failed",
                connection_id=connection_id,
                error_type=type(exc).__name__,
            )
        logger.info(
            "socket_session_ended",
            user_id=entry.context.user_id,
            connection_id=connection_id,
            reason=reason,
        )
        return True

    async def revalidate(self, connection_id: str) -> AuthContext:
        """Re-run session validation for an inbound message.

        On rejection the connection is ended and the ``ServiceError`` is
        re-raised so the caller stops processing the message.
        """
        entry = self._connections.get(connection_id)
        if entry is None:
            raise AuthenticationError(
                "connection is not authenticated",
                error_code=ErrorKind.SESSION_NOT_FOUND.value,
            )
        ctx = entry.context
        try:
            result = await self.guard.sessions.validate_session(ctx.user_id, ctx.session_id)
        except Exception as exc:
            logger.error(
                "socket_revalidate_error",
                connection_id=connection_id,
                error_type=type(exc).__name__,
            )
            raise ServerError(
                "session validation failed",
                error_code=ErrorKind.VALIDATION_ERROR.value,
            ) from exc
        if not result.is_valid:
            error = error_for_kind(result.error_kind, result.message or "invalid session")
            # Transient store failures do not end the connection
            if error.status_code == 401:
                await self._end(connection_id, "session_invalid")
            raise error
        ctx.session = result.session
        return ctx

    async def end_sessions(
        self, user_id: str, session_id: Optional[str] = None, reason: str = "logout"
    ) -> int:
        """End the user's connections, optionally only those bound to ``session_id``."""
        targets = [
            cid
            for cid, entry in list(self._connections.items())
            if entry.context.user_id == user_id
            and (session_id is None or entry.context.session_id == session_id)
        ]
        ended = 0
        for cid in targets:
            if await self._end(cid, reason):
                ended += 1
        return ended

    def disconnect(self, connection_id: str) -> None:
        if self._connections.pop(connection_id, None) is not None:
            logger.debug("socket_unregistered", connection_id=connection_id)

    def connections_for(self, user_id: str) -> List[str]:
        return [
            cid
            for cid, entry in self._connections.items()
            if entry.context.user_id == user_id
        ]

    def context_for(self, connection_id: str) -> Optional[AuthContext]:
        entry = self._connections.get(connection_id)
        return entry.context if entry else None

    async def drain(self) -> None:
        """Wait for scheduled duplicate-login handovers to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def shutdown(self) -> None:
        for task in list(self._pending):
            task.cancel()
        await self.drain()
        self._connections.clear()
