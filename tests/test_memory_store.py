"""Tests for the in-memory key-value store used by tests and the dev fallback."""

import pytest

from sessiongate.storage.memory import MemoryKeyValueStore


@pytest.fixture
def mem(clock):
    return MemoryKeyValueStore(clock=clock)


class TestBasicOperations:
    async def test_set_and_get(self, mem):
        await mem.set_with_ttl("k", "v", 10)

        assert await mem.get("k") == "v"
        assert await mem.get("missing") is None

    async def test_values_expire(self, mem, clock):
        await mem.set_with_ttl("k", "v", 10)
        clock.advance(10)

        assert await mem.get("k") is None
        assert await mem.ttl("k") is None

    async def test_delete_counts_live_keys(self, mem, clock):
        await mem.set_with_ttl("a", "1", 10)
        await mem.set_with_ttl("b", "2", 1)
        clock.advance(2)

        assert await mem.delete("a", "b", "c") == 1

    async def test_refresh_ttl(self, mem, clock):
        await mem.set_with_ttl("k", "v", 10)
        clock.advance(8)

        assert await mem.refresh_ttl("k", 10) is True
        clock.advance(8)
        assert await mem.get("k") == "v"
        assert await mem.refresh_ttl("missing", 10) is False

    async def test_ping_and_close(self, mem):
        await mem.set_with_ttl("k", "v", 10)

        assert await mem.ping() is True
        await mem.close()
        assert await mem.get("k") is None


class TestCommit:
    async def test_commit_applies_deletes_writes_and_refresh(self, mem, clock):
        await mem.set_with_ttl("old", "x", 100)
        await mem.set_with_ttl("keep", "y", 5)

        ok = await mem.commit({"new": "z"}, 50, deletes=["old"], refresh=["keep", "absent"])

        assert ok is True
        assert await mem.get("old") is None
        assert await mem.get("new") == "z"
        assert await mem.ttl("keep") == 50
        # Refreshing an absent key does not create it
        assert await mem.get("absent") is None

    async def test_guard_mismatch_changes_nothing(self, mem):
        await mem.set_with_ttl("pointer", "current", 100)

        ok = await mem.commit({"pointer": "next"}, 100, guard=("pointer", "stale"))

        assert ok is False
        assert await mem.get("pointer") == "current"

    async def test_guard_on_absent_key(self, mem):
        assert await mem.commit({"pointer": "first"}, 100, guard=("pointer", None)) is True
        assert await mem.commit({"pointer": "second"}, 100, guard=("pointer", None)) is False
        assert await mem.get("pointer") == "first"

    async def test_guard_sees_expired_key_as_absent(self, mem, clock):
        await mem.set_with_ttl("pointer", "old", 1)
        clock.advance(2)

        assert await mem.commit({"pointer": "new"}, 100, guard=("pointer", None)) is True


class TestSweep:
    async def test_unread_expired_keys_are_swept_on_write(self, clock):
        mem = MemoryKeyValueStore(clock=clock, sweep_every=2)
        await mem.set_with_ttl("stale", "1", 1)
        clock.advance(2)

        await mem.commit({"fresh": "2"}, 10)

        assert "stale" not in mem._data
        assert await mem.get("fresh") == "2"

    async def test_live_keys_survive_a_sweep(self, clock):
        mem = MemoryKeyValueStore(clock=clock, sweep_every=1)
        await mem.set_with_ttl("a", "1", 10)
        await mem.set_with_ttl("b", "2", 10)

        assert await mem.get("a") == "1"
        assert await mem.get("b") == "2"
