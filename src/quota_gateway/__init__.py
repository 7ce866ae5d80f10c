# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .cache import CachePolicy, TieredCache
from .cache.storage import JsonFileCacheStore, SQLCacheStore
from .clock import TimeSource
from .config import GatewayConfig, load_config
from .core.errors import (
    CacheBackendError,
    ConfigurationError,
    CredentialUnavailable,
    FallbackNotFound,
    GatewayError,
    NoCredentialAvailable,
    QuotaExhausted,
    RateLimited,
    TransientNetworkError,
    UpstreamError,
)
from .credentials import CredentialPool, SelectionPolicy
from .dispatcher import Dispatcher
from .fallback import (
    FallbackQuery,
    FallbackSource,
    NullFallbackSource,
    SQLRecordSource,
    StaticRecordSource,
)
from .gateway import QuotaGateway, request_cache_key
from .providers import HttpUpstreamProvider, UpstreamProvider

__all__ = [
    "QuotaGateway",
    "GatewayConfig",
    "load_config",
    "request_cache_key",
    "TimeSource",
    # Components
    "CachePolicy",
    "CredentialPool",
    "Dispatcher",
    "SelectionPolicy",
    "TieredCache",
    "JsonFileCacheStore",
    "SQLCacheStore",
    "FallbackQuery",
    "FallbackSource",
    "NullFallbackSource",
    "SQLRecordSource",
    "StaticRecordSource",
    "HttpUpstreamProvider",
    "UpstreamProvider",
    # Errors
    "CacheBackendError",
    "ConfigurationError",
    "CredentialUnavailable",
    "FallbackNotFound",
    "GatewayError",
    "NoCredentialAvailable",
    "QuotaExhausted",
    "RateLimited",
    "TransientNetworkError",
    "UpstreamError",
]
