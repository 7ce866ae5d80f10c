# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
JSON-file persistent cache tier.

For deployments without a database. The whole table is kept in memory and
rewritten atomically (temp file, then rename) after each mutation. Access
statistics are only flushed with the next structural write or on close.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import aiofiles
from filelock import FileLock

from ...core.constants import LIB_LOGGER_NAME
from ...core.errors import CacheBackendError
from .base import PersistentStore, StoredEntry

lib_logger = logging.getLogger(LIB_LOGGER_NAME)


class JsonFileCacheStore(PersistentStore):
    """
    Stores cache rows in a single JSON document.

    Features:
    - Async file I/O with aiofiles
    - Atomic writes (write to temp, then rename)
    - Cross-process safety with filelock
    """

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, file_path: Union[str, Path]):
        self.file_path = Path(file_path)
        self.file_lock = FileLock(f"{self.file_path}.lock")
        self._rows: Dict[str, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()
        self._loaded = False
        self._dirty = False

    async def initialize(self) -> None:
        async with self._lock:
            await self._load()

    async def _load(self) -> None:
        self._loaded = True
        if not self.file_path.exists():
            lib_logger.info(f"No cache file found at {self.file_path}, starting fresh")
            self._rows = {}
            return
        try:
            async with aiofiles.open(self.file_path, "r", encoding="utf-8") as f:
                content = await f.read()
        except OSError as e:
            raise CacheBackendError(f"Failed to read cache file {self.file_path}: {e}") from e

        if not content.strip():
            self._rows = {}
            return
        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            lib_logger.error(f"Failed to parse cache file {self.file_path}: {e}; starting fresh")
            self._rows = {}
            return
        entries = data.get("entries") if isinstance(data, dict) else None
        if not isinstance(entries, dict):
            lib_logger.error(f"Cache file {self.file_path} has no entries table; starting fresh")
            self._rows = {}
            return

        self._rows = {key: row for key, row in entries.items() if self._is_valid_row(row)}
        skipped = len(entries) - len(self._rows)
        if skipped:
            lib_logger.warning(f"Skipped {skipped} malformed cache rows in {self.file_path}")
        lib_logger.info(f"Loaded {len(self._rows)} cache entries from {self.file_path}")

    @staticmethod
    def _is_valid_row(row: Any) -> bool:
        if not isinstance(row, dict) or not isinstance(row.get("data"), str):
            return False
        expires_at = row.get("expires_at")
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return False
        return isinstance(row.get("tags") or [], list)

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self._load()

    async def _save(self) -> None:
        """Write the table atomically. Caller holds ``self._lock``."""
        data = {
            "schema_version": self.CURRENT_SCHEMA_VERSION,
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "entries": self._rows,
        }
        temp_path = self.file_path.with_suffix(".tmp")
        try:
            self.file_path.parent.mkdir(parents=True, exist_ok=True)
            with self.file_lock:
                async with aiofiles.open(temp_path, "w", encoding="utf-8") as f:
                    await f.write(json.dumps(data, indent=2))
                temp_path.replace(self.file_path)
        except OSError as e:
            raise CacheBackendError(f"Failed to write cache file {self.file_path}: {e}") from e
        self._dirty = False

    @staticmethod
    def _to_entry(key: str, row: Dict[str, Any]) -> StoredEntry:
        return StoredEntry(
            key=key,
            data=row["data"],
            expires_at=row["expires_at"],
            tags=frozenset(row.get("tags") or ()),
            created_at=row.get("created_at", 0.0),
            access_count=row.get("access_count", 0),
            last_accessed_at=row.get("last_accessed", 0.0),
        )

    async def upsert(self, entry: StoredEntry) -> None:
        async with self._lock:
            await self._ensure_loaded()
            self._rows[entry.key] = {
                "data": entry.data,
                "expires_at": entry.expires_at,
                "tags": sorted(entry.tags),
                "created_at": entry.created_at,
                "access_count": 0,
                "last_accessed": entry.created_at,
            }
            await self._save()

    async def find(self, key: str) -> Optional[StoredEntry]:
        async with self._lock:
            await self._ensure_loaded()
            row = self._rows.get(key)
            return self._to_entry(key, row) if row is not None else None

    async def touch(self, key: str, accessed_at: float) -> None:
        async with self._lock:
            await self._ensure_loaded()
            row = self._rows.get(key)
            if row is None:
                return
            row["access_count"] = row.get("access_count", 0) + 1
            row["last_accessed"] = accessed_at
            self._dirty = True

    async def delete(self, key: str, expired_before: Optional[float] = None) -> bool:
        async with self._lock:
            await self._ensure_loaded()
            row = self._rows.get(key)
            if row is None:
                return False
            if expired_before is not None and row["expires_at"] > expired_before:
                return False
            del self._rows[key]
            await self._save()
            return True

    async def delete_many(
        self,
        *,
        tags: Optional[Iterable[str]] = None,
        prefix: Optional[str] = None,
        expired_before: Optional[float] = None,
        delete_all: bool = False,
    ) -> int:
        wanted = frozenset(tags or ())

        def matches(key: str, row: Dict[str, Any]) -> bool:
            if delete_all:
                return True
            if wanted and not wanted.isdisjoint(row.get("tags") or ()):
                return True
            if prefix is not None and key.startswith(prefix):
                return True
            return expired_before is not None and row["expires_at"] <= expired_before

        async with self._lock:
            await self._ensure_loaded()
            doomed = [key for key, row in self._rows.items() if matches(key, row)]
            for key in doomed:
                del self._rows[key]
            if doomed:
                await self._save()
        return len(doomed)

    async def count_and_aggregate(self) -> Tuple[int, int]:
        async with self._lock:
            await self._ensure_loaded()
            accesses = sum(row.get("access_count", 0) for row in self._rows.values())
            return len(self._rows), accesses

    async def close(self) -> None:
        async with self._lock:
            if self._dirty:
                await self._save()
