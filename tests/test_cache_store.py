"""
test_cache_store.py — Tests for the in-process snapshot cache.

Covers:
    • get / get_fresh / set / is_expired with an injected clock
    • Hit and miss accounting
    • Invalidate, clear, cleanup sweep with the stale-served grace window
    • Statistics
    • Request coalescing (one producer run per key at a time, unaffected
      by a cancelled caller)

Run with:
    pytest tests/test_cache_store.py -v
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.hydro.cache_store import CacheStore


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

START = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return CacheStore(stale_grace_seconds=3600, clock=clock)


# ═══════════════════════════════════════════════════════════════════════════
# Reads and writes
# ═══════════════════════════════════════════════════════════════════════════

class TestGetSet:
    def test_get_after_set_returns_payload_not_expired(self, cache):
        cache.set("merged", ["a", "b"], ttl=600)
        entry = cache.get("merged")
        assert entry.payload == ("a", "b")
        assert cache.is_expired("merged") is False

    def test_expires_after_ttl(self, cache, clock):
        cache.set("merged", ["a"], ttl=600)
        clock.advance(599)
        assert cache.is_expired("merged") is False
        clock.advance(1)
        assert cache.is_expired("merged") is True

    def test_absent_key_counts_as_expired(self, cache):
        assert cache.is_expired("hydro") is True
        assert cache.get("hydro") is None

    def test_get_returns_expired_entry(self, cache, clock):
        cache.set("hydro", ["x"], ttl=10)
        clock.advance(60)
        assert cache.get("hydro").payload == ("x",)

    def test_set_replaces_whole_entry(self, cache, clock):
        cache.set("hydro", ["old"], ttl=10)
        cache.get_fresh("hydro")
        clock.advance(5)
        entry = cache.set("hydro", ["new"], ttl=10)
        assert entry.payload == ("new",)
        assert entry.hits == 0
        assert entry.fetched_at == clock.now
        assert entry.expires_at == clock.now + timedelta(seconds=10)

    def test_keys_and_expired_keys(self, cache, clock):
        cache.set("hydro", [], ttl=10)
        cache.set("merged", [], ttl=100)
        clock.advance(50)
        assert sorted(cache.keys()) == ["hydro", "merged"]
        assert cache.expired_keys() == ["hydro"]


class TestHitMiss:
    def test_get_fresh_counts_hits_and_misses(self, cache, clock):
        assert cache.get_fresh("merged") is None
        cache.set("merged", [1], ttl=10)
        assert cache.get_fresh("merged") is not None
        assert cache.get_fresh("merged") is not None
        clock.advance(10)
        assert cache.get_fresh("merged") is None

        assert cache.hits == 2
        assert cache.misses == 2
        assert cache.get("merged").hits == 2


# ═══════════════════════════════════════════════════════════════════════════
# Eviction
# ═══════════════════════════════════════════════════════════════════════════

class TestEviction:
    def test_invalidate(self, cache):
        cache.set("hydro", [1], ttl=10)
        assert cache.invalidate("hydro") is True
        assert cache.invalidate("hydro") is False
        assert cache.get("hydro") is None

    def test_clear_all(self, cache):
        cache.set("hydro", [1], ttl=10)
        cache.set("hydro2", [1], ttl=10)
        assert cache.clear_all() == 2
        assert cache.keys() == []

    def test_cleanup_removes_only_expired(self, cache, clock):
        cache.set("hydro", [1], ttl=10)
        cache.set("merged", [1], ttl=1000)
        clock.advance(11)
        assert cache.cleanup_expired() == 1
        assert cache.keys() == ["merged"]

    def test_cleanup_keeps_recently_served_stale_entry(self, cache, clock):
        cache.set("merged", [1], ttl=10)
        clock.advance(20)
        cache.mark_stale_served("merged")
        clock.advance(1800)
        assert cache.cleanup_expired() == 0
        assert cache.get("merged") is not None

    def test_cleanup_drops_stale_entry_after_grace(self, cache, clock):
        cache.set("merged", [1], ttl=10)
        clock.advance(20)
        cache.mark_stale_served("merged")
        clock.advance(3601)
        assert cache.cleanup_expired() == 1
        assert cache.get("merged") is None


# ═══════════════════════════════════════════════════════════════════════════
# Statistics
# ═══════════════════════════════════════════════════════════════════════════

class TestStats:
    def test_empty(self, cache):
        stats = cache.stats()
        assert stats["totalEntries"] == 0
        assert stats["lastUpdate"] is None
        assert stats["nextUpdate"] is None
        assert stats["sizeBytes"] == 0

    def test_populated(self, cache, clock):
        cache.set("hydro", [{"id": "1"}], ttl=300)
        clock.advance(30)
        cache.set("merged", [{"id": "1"}, {"id": "2"}], ttl=600)
        cache.get_fresh("merged")

        stats = cache.stats()
        assert stats["totalEntries"] == 2
        assert stats["hits"] == 1
        assert stats["refreshes"] == 2
        assert stats["sizeBytes"] > 0
        assert stats["lastUpdate"] == clock.now.isoformat()
        assert stats["nextUpdate"] == (START + timedelta(seconds=300)).isoformat()
        assert stats["entries"]["merged"]["items"] == 2
        assert stats["entries"]["hydro"]["ageSeconds"] == 30.0


# ═══════════════════════════════════════════════════════════════════════════
# Request coalescing
# ═══════════════════════════════════════════════════════════════════════════

class TestCoalesce:
    def test_concurrent_callers_share_one_producer_run(self, cache):
        calls = 0

        async def producer():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            return ["snapshot"]

        async def scenario():
            return await asyncio.gather(*(cache.coalesce("merged", producer) for _ in range(20)))

        results = asyncio.run(scenario())
        assert calls == 1
        assert all(r == ["snapshot"] for r in results)
        assert cache.is_refreshing("merged") is False

    def test_exception_shared_and_slot_released(self, cache):
        calls = 0

        async def failing():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.01)
            raise RuntimeError("upstream down")

        async def scenario():
            return await asyncio.gather(
                *(cache.coalesce("merged", failing) for _ in range(5)),
                return_exceptions=True,
            )

        results = asyncio.run(scenario())
        assert calls == 1
        assert all(isinstance(r, RuntimeError) for r in results)
        assert cache.is_refreshing("merged") is False

    def test_sequential_calls_run_producer_again(self, cache):
        calls = 0

        async def producer():
            nonlocal calls
            calls += 1
            return calls

        async def scenario():
            first = await cache.coalesce("hydro", producer)
            second = await cache.coalesce("hydro", producer)
            return first, second

        assert asyncio.run(scenario()) == (1, 2)

    def test_different_keys_do_not_coalesce(self, cache):
        calls = []

        async def producer_for(key):
            calls.append(key)
            await asyncio.sleep(0.01)
            return key

        async def scenario():
            return await asyncio.gather(
                cache.coalesce("hydro", lambda: producer_for("hydro")),
                cache.coalesce("hydro2", lambda: producer_for("hydro2")),
            )

        assert asyncio.run(scenario()) == ["hydro", "hydro2"]
        assert sorted(calls) == ["hydro", "hydro2"]

    def test_cancelled_caller_leaves_refresh_running_for_others(self, cache):
        calls = 0

        async def producer():
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            return ["snapshot"]

        async def scenario():
            first = asyncio.create_task(cache.coalesce("merged", producer))
            await asyncio.sleep(0)
            second = asyncio.create_task(cache.coalesce("merged", producer))
            await asyncio.sleep(0)
            first.cancel()
            result = await second
            with pytest.raises(asyncio.CancelledError):
                await first
            return result

        assert asyncio.run(scenario()) == ["snapshot"]
        assert calls == 1
        assert cache.is_refreshing("merged") is False

    def test_refresh_completes_after_its_only_caller_is_cancelled(self, cache):
        finished = []

        async def producer():
            await asyncio.sleep(0.01)
            finished.append(True)
            return ["snapshot"]

        async def scenario():
            caller = asyncio.create_task(cache.coalesce("hydro", producer))
            await asyncio.sleep(0)
            caller.cancel()
            await asyncio.sleep(0.03)
            return caller.cancelled()

        assert asyncio.run(scenario()) is True
        assert finished == [True]
        assert cache.is_refreshing("hydro") is False
