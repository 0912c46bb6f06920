from __future__ import annotations

from typing import Iterable, Mapping, Optional, Protocol, Tuple

# (key, expected value); ``None`` as the expected value means "key is absent".
Guard = Tuple[str, Optional[str]]


class KeyValueStore(Protocol):
    """Network-accessible key-value store with per-key TTL.

    Single-key operations are atomic per key. ``commit`` is the only
    multi-key primitive: it applies deletes, then writes, then TTL refreshes
    as one unit, optionally conditioned on a guard key still holding an
    expected value. Implementations raise ``StoreUnavailableError`` when the
    backend cannot be reached.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set_with_ttl(self, key: str, value: str, ttl_seconds: int) -> None: ...

    async def delete(self, *keys: str) -> int: ...

    async def refresh_ttl(self, key: str, ttl_seconds: int) -> bool: ...

    async def commit(
        self,
        writes: Mapping[str, str],
        ttl_seconds: int,
        *,
        deletes: Iterable[str] = (),
        refresh: Iterable[str] = (),
        guard: Optional[Guard] = None,
    ) -> bool: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


__all__ = ["Guard", "KeyValueStore"]
