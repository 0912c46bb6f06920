from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sessiongate.logging import get_logger, mask_id
from sessiongate.service.errors import ErrorKind, SessionCreationError, ValidationError
from sessiongate.storage.codec import SessionRecordCodec
from sessiongate.storage.errors import StoreError
from sessiongate.storage.kv import KeyValueStore
from sessiongate.storage.models import Session, SessionGrant

logger = get_logger(__name__)

SESSION_PREFIX = "session:"
SESSION_ID_PREFIX = "sessionId:"
USER_SESSIONS_PREFIX = "user_sessions:"
ACTIVE_SESSION_PREFIX = "active_session:"

DEFAULT_SESSION_TTL_SECONDS = 24 * 60 * 60


def session_key(user_id: str) -> str:
    return f"{SESSION_PREFIX}{user_id}"


def session_id_key(session_id: str) -> str:
    return f"{SESSION_ID_PREFIX}{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"{USER_SESSIONS_PREFIX}{user_id}"


def active_session_key(user_id: str) -> str:
    return f"{ACTIVE_SESSION_PREFIX}{user_id}"


def generate_session_id() -> str:
    """256 bits from the OS CSPRNG, hex encoded."""
    return secrets.token_hex(32)


@dataclass
class ValidationResult:
    is_valid: bool
    session: Optional[Session] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, session: Session) -> "ValidationResult":
        return cls(is_valid=True, session=session)

    @classmethod
    def fail(cls, kind: ErrorKind, message: str) -> "ValidationResult":
        return cls(is_valid=False, error_kind=kind, message=message)


class SessionService:
    """Single-active-session lifecycle with sliding expiration.

    A session is spread over four keys that always share one TTL:

    - ``session:{user}``: the JSON record
    - ``sessionId:{sid}``: reverse lookup to the owning user
    - ``user_sessions:{user}``: pointer used for cleanup
    - ``active_session:{user}``: the authoritative pointer compared on validation

    Every multi-key change goes through ``KeyValueStore.commit`` so the keys
    are written, refreshed and deleted together. Writes that extend a session
    are guarded on the active pointer still naming it, which keeps a slow
    validation from resurrecting a session a newer login has replaced.
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        session_ttl_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        inactivity_timeout_seconds: int = DEFAULT_SESSION_TTL_SECONDS,
        create_max_attempts: int = 3,
        clock: Callable[[], float] = time.time,
        codec: Optional[SessionRecordCodec] = None,
    ) -> None:
        self.store = store
        self.session_ttl_seconds = session_ttl_seconds
        self.inactivity_timeout_seconds = inactivity_timeout_seconds
        self.create_max_attempts = max(1, create_max_attempts)
        self._clock = clock
        self.codec = codec or SessionRecordCodec()

    def _now_ms(self) -> int:
        return int(round(self._clock() * 1000))

    async def _load(self, user_id: str) -> Optional[Session]:
        return self.codec.decode(await self.store.get(session_key(user_id)))

    async def create_session(
        self, user_id: str, metadata: Optional[Dict[str, Any]] = None
    ) -> SessionGrant:
        """Replace any existing session for ``user_id`` with a fresh one.

        Raises:
            ValidationError: ``user_id`` is empty.
            SessionCreationError: the new session could not be stored.
        """
        if not user_id:
            raise ValidationError("user_id is required")
        meta: Dict[str, Any] = {"user_agent": "", "ip_address": "", "device_info": ""}
        meta.update(metadata or {})

        for attempt in range(1, self.create_max_attempts + 1):
            try:
                current = await self.store.get(active_session_key(user_id))
                pointed = await self.store.get(user_sessions_key(user_id))
            except StoreError as exc:
                logger.error("session_create_read_failed", user_id=user_id, error=str(exc))
                raise SessionCreationError("failed to create session") from exc

            now = self._now_ms()
            session = Session(
                user_id=user_id,
                session_id=generate_session_id(),
                created_at=now,
                last_activity=now,
                metadata=dict(meta),
            )
            # The record and both pointers are overwritten; only the prior
            # reverse mappings need explicit deletes.
            stale = {sid for sid in (current, pointed) if sid}
            try:
                record = self.codec.encode(session)
            except (TypeError, ValueError) as exc:
                logger.error("session_create_encode_failed", user_id=user_id, error=str(exc))
                raise SessionCreationError(
                    "session metadata is not serializable"
                ) from exc
            writes = {
                session_key(user_id): record,
                session_id_key(session.session_id): user_id,
                user_sessions_key(user_id): session.session_id,
                active_session_key(user_id): session.session_id,
            }
            try:
                committed = await self.store.commit(
                    writes,
                    self.session_ttl_seconds,
                    deletes=[session_id_key(sid) for sid in sorted(stale)],
                    guard=(active_session_key(user_id), current),
                )
            except StoreError as exc:
                logger.error("session_create_write_failed", user_id=user_id, error=str(exc))
                raise SessionCreationError("failed to create session") from exc

            if committed:
                logger.info(
                    "session_created",
                    user_id=user_id,
                    session_id=mask_id(session.session_id),
                    replaced=len(stale),
                    attempt=attempt,
                )
                return SessionGrant(
                    session_id=session.session_id,
                    expires_in=self.session_ttl_seconds,
                    session=session,
                )
            logger.warning("session_create_conflict", user_id=user_id, attempt=attempt)

        raise SessionCreationError(
            "concurrent logins kept replacing the session; giving up",
            detail={"attempts": self.create_max_attempts},
        )

    async def validate_session(self, user_id: str, session_id: str) -> ValidationResult:
        """Check that ``session_id`` is the user's live session and slide its expiry.

        Expected outcomes (no session, superseded, expired) are returned as a
        failed result rather than raised.
        """
        if not user_id or not session_id:
            return ValidationResult.fail(
                ErrorKind.INVALID_PARAMETERS, "user_id and session_id are required"
            )
        try:
            active = await self.store.get(active_session_key(user_id))
            if active is None:
                return ValidationResult.fail(
                    ErrorKind.SESSION_NOT_FOUND, "no active session for this user"
                )
            if active != session_id:
                logger.info(
                    "session_superseded",
                    user_id=user_id,
                    session_id=mask_id(session_id),
                    active_session_id=mask_id(active),
                )
                return ValidationResult.fail(
                    ErrorKind.INVALID_SESSION,
                    "logged in on another device; this session has ended",
                )

            session = await self._load(user_id)
            if session is None or session.session_id != session_id:
                return ValidationResult.fail(ErrorKind.SESSION_NOT_FOUND, "session not found")
            pointed = await self.store.get(user_sessions_key(user_id))
            if pointed != active:
                # Pointers disagree: a partial write happened somewhere
                logger.warning(
                    "session_pointers_inconsistent",
                    user_id=user_id,
                    session_id=mask_id(session_id),
                )
                return ValidationResult.fail(ErrorKind.SESSION_NOT_FOUND, "session not found")

            now = self._now_ms()
            if now - session.last_activity > self.inactivity_timeout_seconds * 1000:
                await self._delete_keys(user_id, session_id)
                logger.info("session_expired", user_id=user_id, session_id=mask_id(session_id))
                return ValidationResult.fail(
                    ErrorKind.SESSION_EXPIRED, "session expired; please log in again"
                )
        except Exception as exc:
            logger.error(
                "session_validation_error",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return ValidationResult.fail(
                ErrorKind.VALIDATION_ERROR, "session validation failed"
            )

        session.last_activity = now
        try:
            refreshed = await self._touch(user_id, session)
        except StoreError as exc:
            logger.error("session_refresh_failed", user_id=user_id, error=str(exc))
            return ValidationResult.fail(ErrorKind.UPDATE_FAILED, "failed to refresh session")
        if not refreshed:
            return ValidationResult.fail(
                ErrorKind.INVALID_SESSION,
                "logged in on another device; this session has ended",
            )
        return ValidationResult.ok(session)

    async def _touch(self, user_id: str, session: Session) -> bool:
        return await self.store.commit(
            {session_key(user_id): self.codec.encode(session)},
            self.session_ttl_seconds,
            refresh=[
                active_session_key(user_id),
                user_sessions_key(user_id),
                session_id_key(session.session_id),
            ],
            guard=(active_session_key(user_id), session.session_id),
        )

    async def _delete_keys(self, user_id: str, session_id: str) -> None:
        await self.store.commit(
            {},
            self.session_ttl_seconds,
            deletes=[
                session_key(user_id),
                session_id_key(session_id),
                user_sessions_key(user_id),
                active_session_key(user_id),
            ],
            guard=(active_session_key(user_id), session_id),
        )

    async def remove_session(self, user_id: str, session_id: Optional[str] = None) -> bool:
        """Delete the user's current session.

        With ``session_id``, only removes it if it is still the session the
        user points to, so a logout racing a new login cannot end the new one.
        Returns False when there was nothing to remove.
        """
        pointed = await self.store.get(user_sessions_key(user_id))
        if not pointed or (session_id and pointed != session_id):
            logger.debug(
                "session_remove_noop",
                user_id=user_id,
                session_id=mask_id(session_id),
            )
            return False
        removed = await self.store.commit(
            {},
            self.session_ttl_seconds,
            deletes=[
                session_key(user_id),
                session_id_key(pointed),
                user_sessions_key(user_id),
                active_session_key(user_id),
            ],
            guard=(user_sessions_key(user_id), pointed),
        )
        if removed:
            logger.info("session_removed", user_id=user_id, session_id=mask_id(pointed))
        return removed

    async def remove_all_sessions_for_user(self, user_id: str) -> bool:
        """Force-logout: drop every key belonging to ``user_id``."""
        try:
            pointed = await self.store.get(user_sessions_key(user_id))
            active = await self.store.get(active_session_key(user_id))
            deletes = [active_session_key(user_id), user_sessions_key(user_id)]
            stale = {sid for sid in (pointed, active) if sid}
            if stale:
                deletes.append(session_key(user_id))
                deletes.extend(session_id_key(sid) for sid in sorted(stale))
            await self.store.commit({}, self.session_ttl_seconds, deletes=deletes)
        except StoreError as exc:
            logger.error("remove_all_sessions_failed", user_id=user_id, error=str(exc))
            return False
        logger.info("all_sessions_removed", user_id=user_id, removed=len(stale))
        return True

    async def update_last_activity(self, user_id: str) -> bool:
        """Heartbeat: stamp activity and slide the TTL without a full validation.

        Returns False when there is no session; that is a normal outcome.
        """
        if not user_id:
            return False
        try:
            session = await self._load(user_id)
            if session is None:
                logger.debug("heartbeat_no_session", user_id=user_id)
                return False
            session.last_activity = self._now_ms()
            refreshed = await self._touch(user_id, session)
        except StoreError as exc:
            logger.error("heartbeat_failed", user_id=user_id, error=str(exc))
            return False
        if not refreshed:
            logger.debug("heartbeat_superseded", user_id=user_id)
        return refreshed

    async def get_active_session(self, user_id: str) -> Optional[Session]:
        """Resolve the active session, repairing a pointer whose record is gone."""
        if not user_id:
            return None
        try:
            session_id = await self.store.get(active_session_key(user_id))
            if not session_id:
                return None
            session = await self._load(user_id)
            if session is None:
                # Only drop the pointer if a newer login has not replaced it
                removed = await self.store.commit(
                    {},
                    self.session_ttl_seconds,
                    deletes=[active_session_key(user_id)],
                    guard=(active_session_key(user_id), session_id),
                )
                if removed:
                    logger.warning(
                        "dangling_session_pointer_removed",
                        user_id=user_id,
                        session_id=mask_id(session_id),
                    )
                return None
        except StoreError as exc:
            logger.error("get_active_session_failed", user_id=user_id, error=str(exc))
            return None
        if session.session_id != session_id:
            return None
        return session

    async def get_session_owner(self, session_id: str) -> Optional[str]:
        """Reverse lookup of the user that owns ``session_id``."""
        if not session_id:
            return None
        return await self.store.get(session_id_key(session_id))
