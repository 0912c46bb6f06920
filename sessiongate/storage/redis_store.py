from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Iterable, Mapping, Optional, TypeVar

import redis.asyncio as aioredis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, WatchError
from redis.exceptions import TimeoutError as RedisTimeoutError

from sessiongate.logging import get_logger
from sessiongate.storage.errors import StoreError, StoreUnavailableError
from sessiongate.storage.kv import Guard

logger = get_logger(__name__)

T = TypeVar("T")


class RedisKeyValueStore:
    """Redis-backed session store.

    Connection failures are retried by the client with exponential backoff
    and a bounded retry count. Once those retries are exhausted the store
    enters a disconnected state in which every call fails fast with
    ``StoreUnavailableError`` until ``disconnect_cooldown`` has passed; the
    next call after the cooldown is allowed through to test the connection.
    """

    WATCH_RETRY_ATTEMPTS = 2

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 5.0,
        retry_attempts: int = 3,
        backoff_base: float = 0.1,
        backoff_cap: float = 2.0,
        disconnect_cooldown: float = 10.0,
        client: Any = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.redis_url = redis_url
        self.disconnect_cooldown = disconnect_cooldown
        self._clock = clock
        self._disconnected_at: Optional[float] = None
        if client is not None:
            self.client = client
        else:
            self.client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
                retry=Retry(
                    ExponentialBackoff(cap=backoff_cap, base=backoff_base),
                    retry_attempts,
                ),
                retry_on_error=[RedisConnectionError, RedisTimeoutError],
            )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the store is put into service."""
        from redis import Redis

        # A short-lived sync client keeps the async pool off the startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @property
    def is_disconnected(self) -> bool:
        if self._disconnected_at is None:
            return False
        return self._clock() - self._disconnected_at < self.disconnect_cooldown

    async def _call(self, operation: str, func: Callable[[], Awaitable[T]]) -> T:
        if self.is_disconnected:
            raise StoreUnavailableError("session store is disconnected", operation=operation)
        try:
            result = await func()
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self._disconnected_at = self._clock()
            logger.error(
                "redis_store_disconnected",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
                cooldown_seconds=self.disconnect_cooldown,
            )
            raise StoreUnavailableError(
                f"session store unreachable during {operation}", operation=operation
            ) from exc
        except RedisError as exc:
            logger.error("redis_store_error", operation=operation, error=str(exc))
            raise StoreError(f"session store {operation} failed", operation=operation) from exc
        if self._disconnected_at is not None:
            logger.info("redis_store_reconnected", operation=operation)
            self._disconnected_at = None
        return result

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", lambda: self.client.get(key))

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._call("set", lambda: self.client.set(key, value, ex=ttl_seconds))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", lambda: self.client.delete(*keys)))

    async def refresh_ttl(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self._call("expire", lambda: self.client.expire(key, ttl_seconds)))

    async def commit(
        self,
        writes: Mapping[str, str],
        ttl_seconds: int,
        *,
        deletes: Iterable[str] = (),
        refresh: Iterable[str] = (),
        guard: Optional[Guard] = None,
    ) -> bool:
        delete_keys = list(deletes)
        refresh_keys = list(refresh)

        async def _attempt() -> bool:
            async with self.client.pipeline(transaction=True) as pipe:
                if guard is not None:
                    guard_key, expected = guard
                    await pipe.watch(guard_key)
                    current = await pipe.get(guard_key)
                    if current != expected:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                if delete_keys:
                    pipe.delete(*delete_keys)
                for key, value in writes.items():
                    pipe.set(key, value, ex=ttl_seconds)
                for key in refresh_keys:
                    pipe.expire(key, ttl_seconds)
                await pipe.execute()
                return True

        async def _transaction() -> bool:
            for attempt in range(1, self.WATCH_RETRY_ATTEMPTS + 1):
                try:
                    return await _attempt()
                except WatchError:
                    # redis-py also raises WatchError when the connection drops
                    # while a key is watched, so only a changed value is a conflict.
                    guard_key, expected = guard
                    if await self.client.get(guard_key) != expected:
                        return False
                    logger.warning(
                        "redis_commit_watch_lost", key=guard_key, attempt=attempt
                    )
            raise StoreError(
                "session store commit kept losing its watch", operation="commit"
            )

        committed = await self._call("commit", _transaction)
        if not committed:
            logger.debug("redis_commit_guard_failed", key=guard[0] if guard else None)
        return committed

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping))

    async def close(self) -> None:
        """Close the client and its connection pool."""
        await self.client.aclose()
