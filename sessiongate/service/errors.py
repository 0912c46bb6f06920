from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Stable error codes surfaced to clients when a session is rejected.

    The first six are produced by session validation; the rest by the
    credential guard before a session is ever looked up.
    """

    INVALID_PARAMETERS = "INVALID_PARAMETERS"
    INVALID_SESSION = "INVALID_SESSION"
    SESSION_NOT_FOUND = "SESSION_NOT_FOUND"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    UPDATE_FAILED = "UPDATE_FAILED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    MISSING_CREDENTIALS = "MISSING_CREDENTIALS"
    INVALID_TOKEN = "INVALID_TOKEN"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    SESSION_MISMATCH = "SESSION_MISMATCH"

    @property
    def status_code(self) -> int:
        if self is ErrorKind.INVALID_PARAMETERS:
            return 400
        if self in (ErrorKind.UPDATE_FAILED, ErrorKind.VALIDATION_ERROR):
            return 500
        return 401


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses."""

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = ErrorKind.INVALID_PARAMETERS.value


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    error_code = ErrorKind.INVALID_TOKEN.value


class TokenExpiredError(AuthenticationError):
    error_code = ErrorKind.TOKEN_EXPIRED.value


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class SessionCreationError(ServerError):
    """The session could not be durably stored; no credential may be issued."""
    error_code = "SESSION_CREATION_FAILED"


def error_for_kind(kind: ErrorKind, message: str) -> ServiceError:
    """Build the exception a guard raises for a rejected session."""
    status = kind.status_code
    if status == 400:
        return ValidationError(message, error_code=kind.value)
    if status == 500:
        return ServerError(message, error_code=kind.value)
    return AuthenticationError(message, error_code=kind.value)


__all__ = [
    "ErrorKind",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidTokenError",
    "TokenExpiredError",
    "ServerError",
    "SessionCreationError",
    "error_for_kind",
]
