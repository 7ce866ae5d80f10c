# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .base import PersistentStore, StoredEntry
from .json_store import JsonFileCacheStore
from .sql_store import SQLCacheStore

__all__ = ["JsonFileCacheStore", "PersistentStore", "SQLCacheStore", "StoredEntry"]
