# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Persistent cache tier contract.

Stores are dumb durable key-value tables. Values arrive already
serialized as JSON text; the tiered cache owns (de)serialization. Any
failure is raised as ``CacheBackendError`` and handled by the caller.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Tuple


@dataclass
class StoredEntry:
    """A row of the persistent tier."""

    key: str
    data: str  # JSON text
    expires_at: float
    tags: FrozenSet[str] = field(default_factory=frozenset)
    created_at: float = 0.0
    access_count: int = 0
    last_accessed_at: float = 0.0


def encode_tags(tags: Iterable[str]) -> Optional[str]:
    """Comma-joined tag column, bracketed so that substring search is exact."""
    cleaned = sorted({tag.strip() for tag in tags if tag and tag.strip()})
    if not cleaned:
        return None
    return "," + ",".join(cleaned) + ","


def decode_tags(raw: Optional[str]) -> FrozenSet[str]:
    if not raw:
        return frozenset()
    return frozenset(tag for tag in raw.split(",") if tag)


class PersistentStore(ABC):
    """Interface for the durable cache tier."""

    async def initialize(self) -> None:
        """Create tables or files. Default: nothing to do."""
        return None

    @abstractmethod
    async def upsert(self, entry: StoredEntry) -> None:
        """Insert or replace the row for ``entry.key``; resets access stats."""

    @abstractmethod
    async def find(self, key: str) -> Optional[StoredEntry]:
        """Return the row for ``key`` (expired or not), or None."""

    @abstractmethod
    async def touch(self, key: str, accessed_at: float) -> None:
        """Increment the access count and set the last access time."""

    @abstractmethod
    async def delete(self, key: str, expired_before: Optional[float] = None) -> bool:
        """
        Delete one row. Returns False if it did not exist.

        With ``expired_before``, only a row with ``expires_at <= expired_before``
        is deleted, so a row rewritten since it was read survives.
        """

    @abstractmethod
    async def delete_many(
        self,
        *,
        tags: Optional[Iterable[str]] = None,
        prefix: Optional[str] = None,
        expired_before: Optional[float] = None,
        delete_all: bool = False,
    ) -> int:
        """
        Delete rows matching any given criterion.

        Args:
            tags: Rows carrying at least one of these tags
            prefix: Rows whose key starts with this prefix
            expired_before: Rows with ``expires_at <= expired_before``
            delete_all: Every row

        Returns:
            Number of rows deleted
        """

    @abstractmethod
    async def count_and_aggregate(self) -> Tuple[int, int]:
        """Return ``(row_count, total_access_count)``."""

    async def close(self) -> None:
        return None
