from __future__ import annotations

import os
import secrets
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from sessiongate.logging import get_logger

logger = get_logger(__name__)


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session subsystem."""

    redis_url: str = env_field("redis://localhost:6379/0", "REDIS_URL")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Enables the in-memory store fallback and runtime resets used by tests.",
    )

    # The store TTL is the passive backstop; the inactivity timeout is the
    # application-level ceiling checked on every validation. They default to
    # the same value but are configured independently.
    session_ttl_seconds: int = env_field(
        24 * 60 * 60,
        "SESSION_TTL_SECONDS",
        description="TTL applied to all four session keys on create and on every refresh",
    )
    session_inactivity_timeout_seconds: int = env_field(
        24 * 60 * 60,
        "SESSION_INACTIVITY_TIMEOUT_SECONDS",
        description="Maximum idle time before validation reports SESSION_EXPIRED",
    )
    session_create_max_attempts: int = env_field(
        3,
        "SESSION_CREATE_MAX_ATTEMPTS",
        description="Compare-and-swap attempts before createSession gives up",
    )

    redis_socket_timeout: float = env_field(5.0, "REDIS_SOCKET_TIMEOUT")
    redis_retry_attempts: int = env_field(3, "REDIS_RETRY_ATTEMPTS")
    redis_backoff_base_seconds: float = env_field(0.1, "REDIS_BACKOFF_BASE_SECONDS")
    redis_backoff_cap_seconds: float = env_field(2.0, "REDIS_BACKOFF_CAP_SECONDS")
    redis_disconnect_cooldown_seconds: float = env_field(
        10.0,
        "REDIS_DISCONNECT_COOLDOWN_SECONDS",
        description="How long the store fails fast after exhausting its reconnect retries",
    )

    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("sessiongate", "JWT_ISSUER")
    jwt_audience: str = env_field("sessiongate-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(24 * 60, "ACCESS_TOKEN_TTL_MINUTES")

    duplicate_login_grace_seconds: float = env_field(
        10.0,
        "DUPLICATE_LOGIN_GRACE_SECONDS",
        description="Delay between the duplicate_login notice and closing the older connection",
    )

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator(
        "session_ttl_seconds",
        "session_inactivity_timeout_seconds",
        "session_create_max_attempts",
        "access_token_ttl_minutes",
    )
    @classmethod
    def _ensure_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be a positive integer")
        return value

    @field_validator("redis_retry_attempts")
    @classmethod
    def _ensure_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("duplicate_login_grace_seconds", "redis_disconnect_cooldown_seconds")
    @classmethod
    def _ensure_non_negative_delay(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must not be negative")
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            return value
        logger.warning(
            "jwt_secret_generated",
            message="JWT_SECRET is not set; tokens will not survive a restart",
        )
        return secrets.token_urlsafe(64)


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
