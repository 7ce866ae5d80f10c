# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Two-tier cache: in-process LRU in front of a persistent store.

The memory tier holds live values; only the persistent tier sees JSON.
Persistent-tier failures are logged and never fail a cache call, so the
cache keeps working on the memory tier alone while the durable tier is
down.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Set

from ..clock import TimeSource
from ..core.constants import (
    DEFAULT_MAX_MEMORY_ENTRIES,
    DEFAULT_SWEEP_INTERVAL,
    LIB_LOGGER_NAME,
    NAMESPACE_SEPARATOR,
)
from .memory import CacheEntry, MemoryTier
from .storage.base import PersistentStore, StoredEntry

lib_logger = logging.getLogger(LIB_LOGGER_NAME)


@dataclass(frozen=True)
class CacheStats:
    memory_entries: int
    persistent_entries: int
    total_size: int
    hit_rate_estimate: int  # Percent
    hits: int
    misses: int
    evictions: int


def make_key(key: str, namespace: Optional[str] = None) -> str:
    """Full cache key, ``namespace:key`` when a namespace is given."""
    return f"{namespace}{NAMESPACE_SEPARATOR}{key}" if namespace else key


class TieredCache:
    """
    Cache facade over ``MemoryTier`` and an optional ``PersistentStore``.

    Example:
        cache = TieredCache(store=SQLCacheStore(database_url=url))
        await cache.initialize()

        await cache.set("abc", {"title": "..."}, ttl=3600, tags=["video"], namespace="upstream")
        value = await cache.get("abc", namespace="upstream")

        await cache.shutdown()
    """

    def __init__(
        self,
        store: Optional[PersistentStore] = None,
        clock: Optional[TimeSource] = None,
        max_memory_entries: int = DEFAULT_MAX_MEMORY_ENTRIES,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        dumps: Callable[[Any], str] = json.dumps,
        loads: Callable[[str], Any] = json.loads,
    ):
        self._store = store
        self._clock = clock or TimeSource()
        self._memory = MemoryTier(max_memory_entries)
        self._sweep_interval = sweep_interval
        self._dumps = dumps
        self._loads = loads

        self._sweep_task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()
        self._hits = 0
        self._misses = 0

    @property
    def memory(self) -> MemoryTier:
        return self._memory

    @property
    def store(self) -> Optional[PersistentStore]:
        return self._store

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def initialize(self, start_sweeper: bool = True) -> None:
        """Prepare the persistent tier and start the expiry sweeper."""
        if self._store is not None:
            try:
                await self._store.initialize()
            except Exception as e:
                lib_logger.error(f"Persistent cache tier unavailable, continuing in memory only: {e}")
        if start_sweeper:
            self.start_sweeper()

    def start_sweeper(self) -> None:
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="cache-sweeper")

    async def stop_sweeper(self) -> None:
        if self._sweep_task is None:
            return
        self._sweep_task.cancel()
        try:
            await self._sweep_task
        except asyncio.CancelledError:
            pass
        self._sweep_task = None

    async def shutdown(self) -> None:
        """Stop the sweeper, drain side writes and close the store."""
        await self.stop_sweeper()
        await self.drain()
        if self._store is not None:
            try:
                await self._store.close()
            except Exception as e:
                lib_logger.warning(f"Failed to close persistent cache tier: {e}")

    async def drain(self) -> None:
        """Wait for pending fire-and-forget writes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def get(self, key: str, namespace: Optional[str] = None) -> Optional[Any]:
        """
        Return the cached value for ``key``, or None.

        Checks the memory tier, then the persistent tier. Persistent hits
        are promoted into memory.
        """
        full_key = make_key(key, namespace)
        now = self._clock.now()

        entry = self._memory.get(full_key, now)
        if entry is not None:
            self._hits += 1
            return entry.payload

        stored = await self._find_persistent(full_key)
        if stored is not None:
            if stored.expires_at > now:
                try:
                    payload = self._loads(stored.data)
                except (TypeError, ValueError) as e:
                    lib_logger.warning(f"Discarding undecodable cache row '{full_key}': {e}")
                    self._spawn(self._delete_persistent(full_key))
                else:
                    promoted = CacheEntry(
                        key=full_key,
                        payload=payload,
                        expires_at=stored.expires_at,
                        created_at=now,
                        tags=stored.tags,
                    )
                    promoted.touch(now)
                    self._memory.put(promoted)
                    self._spawn(self._touch_persistent(full_key, now))
                    self._hits += 1
                    return payload
            else:
                self._spawn(self._delete_persistent(full_key, expired_before=now))

        self._misses += 1
        return None

    async def set(
        self,
        key: str,
        value: Any,
        ttl: float,
        tags: Optional[Iterable[str]] = None,
        namespace: Optional[str] = None,
    ) -> None:
        """
        Store ``value`` for ``ttl`` seconds in both tiers.

        Raises:
            ValueError: If ``ttl`` is not positive
        """
        if ttl <= 0:
            raise ValueError(f"Cache TTL must be positive, got {ttl}")

        full_key = make_key(key, namespace)
        now = self._clock.now()
        tag_set = frozenset(tags or ())
        entry = CacheEntry(
            key=full_key,
            payload=value,
            expires_at=now + ttl,
            created_at=now,
            tags=tag_set,
        )
        evicted = self._memory.put(entry)
        if evicted is not None:
            lib_logger.debug(f"Evicted least recently used cache entry '{evicted}'")

        if self._store is None:
            return
        try:
            data = self._dumps(value)
        except (TypeError, ValueError) as e:
            lib_logger.warning(f"Cache value for '{full_key}' is not serializable, memory tier only: {e}")
            return
        try:
            await self._store.upsert(
                StoredEntry(
                    key=full_key,
                    data=data,
                    expires_at=entry.expires_at,
                    tags=tag_set,
                    created_at=now,
                    last_accessed_at=now,
                )
            )
        except Exception as e:
            lib_logger.error(f"Error writing to persistent cache: {e}")

    async def delete(self, key: str, namespace: Optional[str] = None) -> None:
        """Remove ``key`` from both tiers. Missing keys are ignored."""
        full_key = make_key(key, namespace)
        self._memory.delete(full_key)
        await self._delete_persistent(full_key)

    async def invalidate_by_tags(self, tags: Iterable[str]) -> int:
        """
        Remove every entry carrying at least one of ``tags``.

        Returns:
            Number of memory-tier entries removed
        """
        tag_list = [tag for tag in tags if tag]
        if not tag_list:
            return 0

        removed = self._memory.delete_tagged(tag_list)
        if self._store is not None:
            try:
                await self._store.delete_many(tags=tag_list)
            except Exception as e:
                lib_logger.error(f"Error invalidating cache by tags {tag_list}: {e}")
        lib_logger.info(f"Invalidated cache tags {tag_list} ({removed} in memory)")
        return removed

    async def clear(self, namespace: Optional[str] = None) -> None:
        """Remove all entries, or only those under ``namespace``."""
        if namespace:
            prefix = f"{namespace}{NAMESPACE_SEPARATOR}"
            self._memory.delete_prefix(prefix)
            if self._store is not None:
                try:
                    await self._store.delete_many(prefix=prefix)
                except Exception as e:
                    lib_logger.error(f"Error clearing cache namespace '{namespace}': {e}")
            return

        self._memory.clear()
        if self._store is not None:
            try:
                await self._store.delete_many(delete_all=True)
            except Exception as e:
                lib_logger.error(f"Error clearing persistent cache: {e}")

    async def stats(self) -> CacheStats:
        memory_entries = len(self._memory)
        persistent_entries = 0
        if self._store is not None:
            try:
                persistent_entries, _ = await self._store.count_and_aggregate()
            except Exception as e:
                lib_logger.error(f"Error getting persistent cache stats: {e}")

        lookups = self._hits + self._misses
        hit_rate = round(self._hits / lookups * 100) if lookups else 0
        return CacheStats(
            memory_entries=memory_entries,
            persistent_entries=persistent_entries,
            total_size=memory_entries + persistent_entries,
            hit_rate_estimate=hit_rate,
            hits=self._hits,
            misses=self._misses,
            evictions=self._memory.evictions,
        )

    # =========================================================================
    # EXPIRY
    # =========================================================================

    async def sweep(self) -> int:
        """Remove expired memory entries. Returns how many were removed."""
        removed = self._memory.purge_expired(self._clock.now())
        if removed:
            lib_logger.debug(f"Cache sweep removed {removed} expired memory entries")
        return removed

    async def cleanup_persistent(self) -> int:
        """Delete expired persistent rows. Returns how many were removed."""
        if self._store is None:
            return 0
        try:
            return await self._store.delete_many(expired_before=self._clock.now())
        except Exception as e:
            lib_logger.error(f"Error cleaning up persistent cache: {e}")
            return 0

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                await self.sweep()
                await self.cleanup_persistent()
            except Exception as e:
                lib_logger.error(f"Cache sweep failed: {e}")

    # =========================================================================
    # PERSISTENT TIER HELPERS
    # =========================================================================

    async def _find_persistent(self, full_key: str) -> Optional[StoredEntry]:
        if self._store is None:
            return None
        try:
            return await self._store.find(full_key)
        except Exception as e:
            lib_logger.error(f"Error reading from persistent cache: {e}")
            return None

    async def _touch_persistent(self, full_key: str, now: float) -> None:
        try:
            await self._store.touch(full_key, now)
        except Exception as e:
            lib_logger.warning(f"Ignoring access stats update failure for '{full_key}': {e}")

    async def _delete_persistent(
        self, full_key: str, expired_before: Optional[float] = None
    ) -> None:
        if self._store is None:
            return
        try:
            await self._store.delete(full_key, expired_before=expired_before)
        except Exception as e:
            lib_logger.warning(f"Ignoring persistent cache delete failure for '{full_key}': {e}")

    def _spawn(self, coro) -> None:
        """Run a best-effort side write without blocking the caller."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
