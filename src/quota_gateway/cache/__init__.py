# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .memory import CacheEntry, MemoryTier
from .presets import CACHE_PRESETS, DEFAULT_POLICY, CachePolicy, build_presets
from .tiered import CacheStats, TieredCache, make_key

__all__ = [
    "CACHE_PRESETS",
    "DEFAULT_POLICY",
    "CacheEntry",
    "CachePolicy",
    "CacheStats",
    "MemoryTier",
    "TieredCache",
    "build_presets",
    "make_key",
]
