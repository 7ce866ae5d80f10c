import asyncio

import pytest

from conftest import FakeClock
from quota_gateway.cache import CacheEntry, MemoryTier, TieredCache
from quota_gateway.cache.storage import JsonFileCacheStore, PersistentStore, SQLCacheStore, StoredEntry
from quota_gateway.core.errors import CacheBackendError


class BrokenStore(PersistentStore):
    """Persistent tier that fails every call."""

    def __init__(self):
        self.calls = 0

    async def _fail(self, *args, **kwargs):
        self.calls += 1
        raise CacheBackendError("database is locked")

    upsert = find = touch = delete = count_and_aggregate = _fail

    async def delete_many(self, **kwargs):
        return await self._fail()


def entry(key: str, now: float, ttl: float = 60, tags=()) -> CacheEntry:
    return CacheEntry(key=key, payload=key.upper(), expires_at=now + ttl, created_at=now, tags=frozenset(tags))


# =============================================================================
# MEMORY TIER
# =============================================================================


def test_memory_tier_evicts_least_recently_accessed() -> None:
    tier = MemoryTier(max_entries=3)
    for key in ("a", "b", "c"):
        tier.put(entry(key, 0.0))

    assert tier.get("a", 1.0) is not None
    evicted = tier.put(entry("d", 2.0))

    assert evicted == "b"
    assert len(tier) == 3
    assert tier.keys() == ["c", "a", "d"]
    assert tier.evictions == 1


def test_memory_tier_replacing_a_key_does_not_evict() -> None:
    tier = MemoryTier(max_entries=2)
    tier.put(entry("a", 0.0))
    tier.put(entry("b", 0.0))

    assert tier.put(entry("a", 1.0)) is None
    assert len(tier) == 2


def test_memory_tier_drops_expired_entries_on_read() -> None:
    tier = MemoryTier()
    tier.put(entry("a", 0.0, ttl=10))

    assert tier.get("a", 9.9).access_count == 1
    assert tier.get("a", 10.0) is None
    assert "a" not in tier


def test_cache_entry_must_expire_after_creation() -> None:
    with pytest.raises(ValueError):
        CacheEntry(key="k", payload=1, expires_at=5.0, created_at=5.0)


# =============================================================================
# TIERED CACHE
# =============================================================================


@pytest.mark.asyncio
async def test_set_then_get_until_ttl_elapses(clock: FakeClock) -> None:
    cache = TieredCache(clock=clock)
    await cache.set("k", {"title": "hello"}, ttl=5)

    assert await cache.get("k") == {"title": "hello"}
    clock.advance(4)
    assert await cache.get("k") == {"title": "hello"}
    clock.advance(1)
    assert await cache.get("k") is None


@pytest.mark.asyncio
async def test_non_positive_ttl_is_rejected(clock: FakeClock) -> None:
    cache = TieredCache(clock=clock)
    with pytest.raises(ValueError):
        await cache.set("k", 1, ttl=0)


@pytest.mark.asyncio
async def test_invalidate_by_tags_only_removes_tagged_entries(clock: FakeClock, session_maker) -> None:
    store = SQLCacheStore(session_maker=session_maker)
    cache = TieredCache(store=store, clock=clock)
    await cache.set("v1", 1, ttl=60, tags=["video"])
    await cache.set("v2", 2, ttl=60, tags=["video", "trending"])
    await cache.set("s1", 3, ttl=60, tags=["search"])

    removed = await cache.invalidate_by_tags(["video"])

    assert removed == 2
    assert await cache.get("v1") is None
    assert await cache.get("v2") is None
    assert await cache.get("s1") == 3
    assert await store.find("v2") is None
    assert await store.find("s1") is not None


@pytest.mark.asyncio
async def test_clear_namespace_leaves_other_namespaces(clock: FakeClock, session_maker) -> None:
    store = SQLCacheStore(session_maker=session_maker)
    cache = TieredCache(store=store, clock=clock)
    await cache.set("k", "upstream value", ttl=60, namespace="upstream")
    await cache.set("k", "ai value", ttl=60, namespace="ai")

    await cache.clear("upstream")

    assert await cache.get("k", namespace="upstream") is None
    assert await cache.get("k", namespace="ai") == "ai value"
    assert await store.find("upstream:k") is None

    await cache.clear()
    assert await cache.get("k", namespace="ai") is None


@pytest.mark.asyncio
async def test_persistent_hit_is_promoted_and_touched(clock: FakeClock, session_maker) -> None:
    store = SQLCacheStore(session_maker=session_maker)
    writer = TieredCache(store=store, clock=clock)
    await writer.set("video:abc", {"id": "abc"}, ttl=3600, tags=["video"])

    # A fresh process only has the persistent tier
    reader = TieredCache(store=store, clock=clock)
    assert "video:abc" not in reader.memory

    assert await reader.get("video:abc") == {"id": "abc"}
    assert "video:abc" in reader.memory
    assert reader.memory.peek("video:abc").tags == frozenset({"video"})

    await reader.drain()
    stored = await store.find("video:abc")
    assert stored.access_count == 1


@pytest.mark.asyncio
async def test_expired_persistent_row_is_a_miss_and_removed(clock: FakeClock, session_maker) -> None:
    store = SQLCacheStore(session_maker=session_maker)
    await store.upsert(
        StoredEntry(key="old", data='"stale"', expires_at=clock.now() - 1, created_at=clock.now() - 100)
    )
    cache = TieredCache(store=store, clock=clock)

    assert await cache.get("old") is None
    await cache.drain()
    assert await store.find("old") is None


@pytest.mark.asyncio
async def test_persistent_failures_never_fail_cache_calls(clock: FakeClock) -> None:
    store = BrokenStore()
    cache = TieredCache(store=store, clock=clock)
    await cache.initialize(start_sweeper=False)

    await cache.set("k", "v", ttl=60, tags=["t"])
    assert await cache.get("k") == "v"
    assert await cache.get("missing") is None
    assert await cache.invalidate_by_tags(["t"]) == 1
    await cache.clear()
    assert await cache.cleanup_persistent() == 0
    stats = await cache.stats()

    assert stats.persistent_entries == 0
    assert store.calls >= 5


@pytest.mark.asyncio
async def test_unserializable_values_stay_in_memory(clock: FakeClock, session_maker) -> None:
    store = SQLCacheStore(session_maker=session_maker)
    cache = TieredCache(store=store, clock=clock)
    value = {"when": object()}

    await cache.set("k", value, ttl=60)

    assert await cache.get("k") is value
    assert await store.find("k") is None


@pytest.mark.asyncio
async def test_memory_tier_is_bounded(clock: FakeClock) -> None:
    cache = TieredCache(clock=clock, max_memory_entries=2)
    await cache.set("a", 1, ttl=60)
    await cache.set("b", 2, ttl=60)
    await cache.get("a")
    await cache.set("c", 3, ttl=60)

    assert await cache.get("b") is None
    assert await cache.get("a") == 1
    assert (await cache.stats()).evictions == 1


@pytest.mark.asyncio
async def test_stats_report_sizes_and_hit_rate(clock: FakeClock, session_maker) -> None:
    cache = TieredCache(store=SQLCacheStore(session_maker=session_maker), clock=clock)
    await cache.set("a", 1, ttl=60)
    await cache.set("b", 2, ttl=60)
    await cache.get("a")
    await cache.get("a")
    await cache.get("a")
    await cache.get("missing")

    stats = await cache.stats()

    assert stats.memory_entries == 2
    assert stats.persistent_entries == 2
    assert stats.total_size == 4
    assert stats.hits == 3
    assert stats.misses == 1
    assert stats.hit_rate_estimate == 75


@pytest.mark.asyncio
async def test_sweep_and_cleanup_remove_expired_entries(clock: FakeClock, session_maker) -> None:
    store = SQLCacheStore(session_maker=session_maker)
    cache = TieredCache(store=store, clock=clock)
    await cache.set("short", 1, ttl=10)
    await cache.set("long", 2, ttl=1000)
    clock.advance(11)

    assert await cache.sweep() == 1
    assert await cache.cleanup_persistent() == 1
    assert len(cache.memory) == 1
    assert await store.find("short") is None


@pytest.mark.asyncio
async def test_background_sweeper_runs_and_stops(clock: FakeClock) -> None:
    cache = TieredCache(clock=clock, sweep_interval=0.01)
    await cache.set("short", 1, ttl=1)
    clock.advance(2)

    await cache.initialize()
    await asyncio.sleep(0.05)
    assert len(cache.memory) == 0

    await cache.shutdown()


class ForeignFaultStore(PersistentStore):
    """Store whose driver raises its own exception types; reads still work."""

    def __init__(self, now: float):
        self.now = now
        self.touches = 0

    async def initialize(self):
        raise RuntimeError("driver not loaded")

    async def find(self, key):
        return StoredEntry(key=key, data='"stored"', expires_at=self.now + 60, created_at=self.now)

    async def touch(self, key, accessed_at):
        self.touches += 1
        raise RuntimeError("write conflict")

    async def _fail(self, *args, **kwargs):
        raise RuntimeError("write conflict")

    upsert = delete = count_and_aggregate = _fail

    async def delete_many(self, **kwargs):
        return await self._fail()


@pytest.mark.asyncio
async def test_foreign_store_errors_never_fail_cache_calls(clock: FakeClock) -> None:
    store = ForeignFaultStore(clock.now())
    cache = TieredCache(store=store, clock=clock)

    await cache.initialize(start_sweeper=False)
    await cache.set("k", "v", ttl=60)
    assert await cache.get("other") == "stored"
    await cache.delete("k")
    await cache.clear()
    assert (await cache.stats()).persistent_entries == 0

    await cache.drain()
    assert store.touches == 1
    await cache.shutdown()


@pytest.mark.asyncio
async def test_malformed_json_rows_are_misses(tmp_path, clock: FakeClock) -> None:
    path = tmp_path / "cache.json"
    path.write_text('{"entries": {"k": {"expires_at": 9e12}}}', encoding="utf-8")
    cache = TieredCache(store=JsonFileCacheStore(path), clock=clock)

    await cache.initialize(start_sweeper=False)

    assert await cache.get("k") is None
    await cache.set("k", "fresh", ttl=60)
    assert await cache.get("k") == "fresh"


@pytest.mark.asyncio
async def test_expired_row_cleanup_does_not_remove_a_fresh_write(clock: FakeClock, session_maker) -> None:
    store = SQLCacheStore(session_maker=session_maker)
    await store.upsert(
        StoredEntry(key="k", data='"stale"', expires_at=clock.now() - 1, created_at=clock.now() - 100)
    )
    cache = TieredCache(store=store, clock=clock)

    assert await cache.get("k") is None
    await cache.set("k", "fresh", ttl=60)
    await cache.drain()

    assert (await store.find("k")).data == '"fresh"'
