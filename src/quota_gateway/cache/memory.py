# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
In-process cache tier.

A bounded LRU map of live values. Nothing here awaits, so a plain
``threading.Lock`` makes it safe for threads and coroutines alike.
"""

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Generic, Iterable, List, Optional, TypeVar

from ..core.constants import DEFAULT_MAX_MEMORY_ENTRIES

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """One cached value with its expiry and bookkeeping."""

    key: str  # Full, namespaced key
    payload: T
    expires_at: float
    created_at: float
    tags: FrozenSet[str] = field(default_factory=frozenset)
    last_accessed_at: float = 0.0
    access_count: int = 0

    def __post_init__(self):
        if self.expires_at <= self.created_at:
            raise ValueError(
                f"Cache entry '{self.key}' must expire after it is created"
            )
        if not self.last_accessed_at:
            self.last_accessed_at = self.created_at

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at

    def touch(self, now: float) -> None:
        self.last_accessed_at = now
        self.access_count += 1


class MemoryTier:
    """
    LRU-bounded map of cache entries.

    The ``OrderedDict`` is kept in access order: every hit moves the entry to
    the end, so the first item is always the least recently accessed one.
    """

    def __init__(self, max_entries: int = DEFAULT_MAX_MEMORY_ENTRIES):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str, now: float) -> Optional[CacheEntry]:
        """
        Return the live entry for ``key`` and mark it as accessed.

        An expired entry is removed and reported as a miss.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if entry.is_expired(now):
                del self._entries[key]
                return None
            entry.touch(now)
            self._entries.move_to_end(key)
            return entry

    def peek(self, key: str) -> Optional[CacheEntry]:
        """Return the entry without touching access stats or expiry."""
        with self._lock:
            return self._entries.get(key)

    def put(self, entry: CacheEntry) -> Optional[str]:
        """
        Insert or replace an entry.

        When inserting a new key at capacity, the least recently accessed
        entry is evicted first.

        Returns:
            The evicted key, if any
        """
        evicted = None
        with self._lock:
            if entry.key in self._entries:
                del self._entries[entry.key]
            elif len(self._entries) >= self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                self.evictions += 1
            self._entries[entry.key] = entry
        return evicted

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def delete_where(self, predicate: Callable[[CacheEntry], bool]) -> int:
        with self._lock:
            doomed = [key for key, entry in self._entries.items() if predicate(entry)]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def delete_tagged(self, tags: Iterable[str]) -> int:
        wanted = frozenset(tags)
        return self.delete_where(lambda entry: not wanted.isdisjoint(entry.tags))

    def delete_prefix(self, prefix: str) -> int:
        return self.delete_where(lambda entry: entry.key.startswith(prefix))

    def purge_expired(self, now: float) -> int:
        return self.delete_where(lambda entry: entry.is_expired(now))

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        return count

    def keys(self) -> List[str]:
        """Keys from least to most recently accessed."""
        with self._lock:
            return list(self._entries.keys())

    def total_access_count(self) -> int:
        with self._lock:
            return sum(entry.access_count for entry in self._entries.values())
