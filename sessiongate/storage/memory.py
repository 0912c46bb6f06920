from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Iterable, Mapping, Optional, Tuple

from sessiongate.logging import get_logger
from sessiongate.storage.kv import Guard


class MemoryKeyValueStore:
    """In-process stand-in for Redis, used by tests and the dev fallback.

    Entries expire lazily against ``clock`` (epoch seconds), so tests can
    move time forward without sleeping. Keys that are never read again are
    dropped by a sweep that runs every ``sweep_every`` writes.
    """

    def __init__(
        self, *, clock: Callable[[], float] = time.time, sweep_every: int = 256
    ) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._sweep_every = max(1, sweep_every)
        self._writes_since_sweep = 0
        # key -> (value, expires_at)
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._data_lock = threading.RLock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            self._data.pop(key, None)
            return None
        return entry

    def _expiry(self, ttl_seconds: int) -> float:
        return self._clock() + ttl_seconds

    def _maybe_sweep(self) -> None:
        """Caller holds the lock."""
        self._writes_since_sweep += 1
        if self._writes_since_sweep < self._sweep_every:
            return
        self._writes_since_sweep = 0
        now = self._clock()
        expired = [
            key
            for key, (_, expires_at) in self._data.items()
            if expires_at is not None and now >= expires_at
        ]
        for key in expired:
            del self._data[key]
        if expired:
            self.logger.debug("memory_store_swept", removed=len(expired))

    async def get(self, key: str) -> Optional[str]:
        with self._data_lock:
            entry = self._live(key)
            return entry[0] if entry else None

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None:
        with self._data_lock:
            self._maybe_sweep()
            self._data[key] = (value, self._expiry(ttl_seconds))

    async def delete(self, *keys: str) -> int:
        with self._data_lock:
            removed = 0
            for key in keys:
                if self._live(key) is not None:
                    removed += 1
                self._data.pop(key, None)
            return removed

    async def refresh_ttl(self, key: str, ttl_seconds: int) -> bool:
        with self._data_lock:
            entry = self._live(key)
            if entry is None:
                return False
            self._data[key] = (entry[0], self._expiry(ttl_seconds))
            return True

    async def ttl(self, key: str) -> Optional[float]:
        """Remaining lifetime of ``key`` in seconds, or None if absent."""
        with self._data_lock:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return entry[1] - self._clock()

    async def commit(
        self,
        writes: Mapping[str, str],
        ttl_seconds: int,
        *,
        deletes: Iterable[str] = (),
        refresh: Iterable[str] = (),
        guard: Optional[Guard] = None,
    ) -> bool:
        with self._data_lock:
            if guard is not None:
                guard_key, expected = guard
                entry = self._live(guard_key)
                current = entry[0] if entry else None
                if current != expected:
                    self.logger.debug("memory_commit_guard_failed", key=guard_key)
                    return False
            for key in deletes:
                self._data.pop(key, None)
            self._maybe_sweep()
            expires_at = self._expiry(ttl_seconds)
            for key, value in writes.items():
                self._data[key] = (value, expires_at)
            for key in refresh:
                entry = self._live(key)
                if entry is not None:
                    self._data[key] = (entry[0], expires_at)
            return True

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        with self._data_lock:
            self._data.clear()
