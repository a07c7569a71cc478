"""Tests for CacheStore."""

import json
from datetime import timedelta

import pytest

from carelink.datastore.store import MemoryStore
from carelink.services.cache import CacheEntry, CacheStore


class BrokenStore(MemoryStore):
    async def get(self, key):
        raise RuntimeError("storage unavailable")

    async def set(self, key, value):
        raise RuntimeError("storage unavailable")

    async def keys(self):
        raise RuntimeError("storage unavailable")


class TestCacheEntry:
    def test_expiry_is_strict(self):
        entry = CacheEntry(key="k", data=1, created_at=1000, expires_at=2000)
        assert not entry.is_expired(2000)
        assert entry.is_expired(2001)

    def test_loads_current_layout(self):
        raw = json.dumps({"data": [1, 2], "timestamp": 1000, "expiry": 500})
        entry = CacheEntry.loads("k", raw)
        assert entry.data == [1, 2]
        assert entry.expires_at == 1500

    def test_loads_legacy_layout(self):
        raw = json.dumps({"data": "x", "timestamp": 1000, "expiresAt": 4000})
        entry = CacheEntry.loads("k", raw)
        assert entry.expires_at == 4000


class TestCacheStore:
    @pytest.fixture
    def cache(self, store, clock):
        return CacheStore(store, clock=clock)

    @pytest.mark.asyncio
    async def test_get_within_ttl(self, cache, clock):
        await cache.set("profile", {"name": "Ann"}, timedelta(seconds=10))
        clock.advance(9)
        assert await cache.get("profile") == {"name": "Ann"}

    @pytest.mark.asyncio
    async def test_expired_entry_is_deleted_on_read(self, cache, store, clock):
        await cache.set("profile", {"name": "Ann"}, timedelta(seconds=10))
        clock.advance(11)

        assert await cache.get("profile") is None
        assert "cache_profile" not in store.snapshot()

    @pytest.mark.asyncio
    async def test_default_ttl_is_five_minutes(self, cache, clock):
        await cache.set("doctors", ["a"])
        clock.advance(299)
        assert await cache.get("doctors") == ["a"]
        clock.advance(2)
        assert await cache.get("doctors") is None

    @pytest.mark.asyncio
    async def test_non_positive_ttl_rejected(self, cache):
        with pytest.raises(ValueError):
            await cache.set("k", 1, timedelta(0))

    @pytest.mark.asyncio
    async def test_entry_carries_timestamps(self, cache, clock):
        await cache.set("k", "v", timedelta(minutes=1))
        entry = await cache.get_entry("k")
        assert entry.created_at == int(clock.now * 1000)
        assert entry.expires_at == entry.created_at + 60_000

    @pytest.mark.asyncio
    async def test_stored_under_namespace(self, cache, store):
        await cache.set("profile", {"id": 1})
        raw = json.loads(store.snapshot()["cache_profile"])
        assert raw["data"] == {"id": 1}
        assert raw["expiry"] == 300_000

    @pytest.mark.asyncio
    async def test_reads_legacy_entries(self, cache, store, clock):
        now_ms = int(clock.now * 1000)
        await store.set(
            "api_cache_old",
            json.dumps({"data": {"v": 1}, "timestamp": now_ms, "expiresAt": now_ms + 60_000}),
        )
        assert await cache.get("old") == {"v": 1}
        assert await cache.keys() == ["old"]

    @pytest.mark.asyncio
    async def test_clear_removes_both_layouts_only(self, cache, store):
        await cache.set("a", 1)
        await store.set("api_cache_b", json.dumps({"data": 2, "timestamp": 0, "expiry": 1}))
        await store.set("authToken", "t")

        await cache.clear()

        assert store.snapshot() == {"authToken": "t"}
        assert await cache.keys() == []

    @pytest.mark.asyncio
    async def test_remove(self, cache):
        await cache.set("a", 1)
        await cache.remove("a")
        assert await cache.get("a") is None

    @pytest.mark.asyncio
    async def test_purge_expired(self, cache, clock):
        await cache.set("short", 1, timedelta(seconds=1))
        await cache.set("long", 2, timedelta(hours=1))
        clock.advance(5)

        assert await cache.purge_expired() == 1
        assert await cache.keys() == ["long"]

    @pytest.mark.asyncio
    async def test_over_budget_write_purges_expired(self, store, clock):
        cache = CacheStore(store, max_size=100, clock=clock)
        await cache.set("a", "x", timedelta(seconds=1))
        clock.advance(2)

        await cache.set("b", "y" * 30, timedelta(minutes=1))

        assert "cache_a" not in store.snapshot()
        assert await cache.get("b") == "y" * 30

    @pytest.mark.asyncio
    async def test_over_budget_write_still_succeeds_without_expired(self, store, clock):
        cache = CacheStore(store, max_size=100, clock=clock)
        await cache.set("a", "x" * 30)
        await cache.set("b", "y" * 30)

        assert await cache.get("a") == "x" * 30
        assert await cache.get("b") == "y" * 30

    @pytest.mark.asyncio
    async def test_storage_failures_are_absorbed(self, clock):
        cache = CacheStore(BrokenStore(), clock=clock)

        await cache.set("k", 1)
        assert await cache.get("k") is None
        assert await cache.keys() == []
        await cache.clear()

    @pytest.mark.asyncio
    async def test_stats(self, cache):
        await cache.set("a", 1)
        await cache.get("a")
        await cache.get("missing")

        stats = await cache.get_stats()
        assert stats.hits == 1
        assert stats.misses == 1
        assert stats.item_count == 1
        assert stats.to_dict()["hit_rate"] == "50.00%"
