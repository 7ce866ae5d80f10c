# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Cache policies per kind of upstream data.
"""

from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple


@dataclass(frozen=True)
class CachePolicy:
    """TTL, tags and namespace applied to one kind of cached data."""

    ttl: int  # Seconds
    tags: Tuple[str, ...] = field(default_factory=tuple)
    namespace: Optional[str] = None


HOUR = 60 * 60

CACHE_PRESETS: Dict[str, CachePolicy] = {
    "video": CachePolicy(ttl=24 * HOUR, tags=("upstream", "video"), namespace="upstream"),
    "search": CachePolicy(ttl=HOUR, tags=("upstream", "search"), namespace="upstream"),
    "trending": CachePolicy(ttl=HOUR // 2, tags=("upstream", "trending"), namespace="upstream"),
    "comments": CachePolicy(ttl=6 * HOUR, tags=("upstream", "comments"), namespace="upstream"),
    "channel": CachePolicy(ttl=12 * HOUR, tags=("upstream", "channel"), namespace="upstream"),
    "playlist": CachePolicy(ttl=12 * HOUR, tags=("upstream", "playlist"), namespace="upstream"),
    "ai": CachePolicy(ttl=7 * 24 * HOUR, tags=("ai",), namespace="ai"),
}

DEFAULT_POLICY = CachePolicy(ttl=HOUR, tags=("upstream",), namespace="upstream")


def build_presets(ttl_overrides: Optional[Mapping[str, int]] = None) -> Dict[str, CachePolicy]:
    """Copy of ``CACHE_PRESETS`` with configured TTL overrides applied."""
    presets = dict(CACHE_PRESETS)
    for name, ttl in (ttl_overrides or {}).items():
        base = presets.get(name, DEFAULT_POLICY)
        presets[name] = replace(base, ttl=int(ttl))
    return presets
