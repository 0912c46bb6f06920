from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from sessiongate.config import Settings, get_settings, reset_settings_cache
from sessiongate.logging import get_logger
from sessiongate.service.guard import CredentialGuard, SocketGuard
from sessiongate.service.sessions import SessionService
from sessiongate.service.tokens import TokenService
from sessiongate.storage.memory import MemoryKeyValueStore
from sessiongate.storage.redis_store import RedisKeyValueStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        self.store: Union[RedisKeyValueStore, MemoryKeyValueStore] = self._build_store()
        self.sessions = SessionService(
            self.store,
            session_ttl_seconds=self.settings.session_ttl_seconds,
            inactivity_timeout_seconds=self.settings.session_inactivity_timeout_seconds,
            create_max_attempts=self.settings.session_create_max_attempts,
        )
        self.tokens = TokenService(self.settings)
        self.guard = CredentialGuard(self.sessions, self.tokens)
        self.sockets = SocketGuard(
            self.guard,
            duplicate_login_grace_seconds=self.settings.duplicate_login_grace_seconds,
        )
        logger.info(
            "runtime_init_completed",
            store_type=type(self.store).__name__,
        )

    def _build_store(self) -> Union[RedisKeyValueStore, MemoryKeyValueStore]:
        redis_error: Exception | None = None
        if self.settings.redis_url and not self.settings.use_memory_store:
            store = RedisKeyValueStore(
                self.settings.redis_url,
                socket_timeout=self.settings.redis_socket_timeout,
                retry_attempts=self.settings.redis_retry_attempts,
                backoff_base=self.settings.redis_backoff_base_seconds,
                backoff_cap=self.settings.redis_backoff_cap_seconds,
                disconnect_cooldown=self.settings.redis_disconnect_cooldown_seconds,
            )
            try:
                store.verify_connection()
                return store
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for session storage; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "memory_store_requested",
            message=(
                f"Running without Redis under {fallback_mode}; sessions are "
                "process-local and lost on restart."
            ),
            mode=fallback_mode,
        )
        return MemoryKeyValueStore()

    async def close(self) -> None:
        await self.sockets.shutdown()
        await self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked check is the fast path, the
    locked one prevents two threads building it at once.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.store, RedisKeyValueStore):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.store.close())
            except RuntimeError:
                asyncio.run(runtime.store.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
