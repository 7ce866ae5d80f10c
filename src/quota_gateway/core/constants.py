# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Constants and default values for the quota gateway.

All tunable defaults live here so that config loading, the credential
pool, the dispatcher and the cache share a single import point.
"""

# =============================================================================
# CREDENTIAL POOL
# =============================================================================

DEFAULT_QUOTA_LIMIT_PER_CREDENTIAL = 10000
DEFAULT_RATE_LIMIT_PER_MINUTE = 100
RATE_WINDOW_SECONDS = 60

# Credentials with this many consecutive failures sit out a cooldown window
FAILURE_COOLDOWN_THRESHOLD = 3
FAILURE_COOLDOWN_SECONDS = 5 * 60

# Credentials with this many consecutive failures are deactivated until reset
FAILURE_DEACTIVATION_THRESHOLD = 5

DEFAULT_RESET_TIMEZONE = "America/Los_Angeles"
DEFAULT_RESET_HOUR = 0

# =============================================================================
# DISPATCH
# =============================================================================

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_UPSTREAM_TIMEOUT = 15.0
DEFAULT_OPERATION_COST = 1

# Provider-defined quota costs per operation
DEFAULT_QUOTA_COSTS = {
    "search": 100,
    "video": 1,
    "channel": 1,
    "playlist": 1,
    "comments": 1,
}

DEFAULT_UPSTREAM_BASE_URL = "https://www.googleapis.com/youtube/v3"
DEFAULT_CREDENTIAL_PARAM = "key"

# =============================================================================
# CACHE
# =============================================================================

DEFAULT_MAX_MEMORY_ENTRIES = 1000
DEFAULT_SWEEP_INTERVAL = 5 * 60
DEFAULT_CACHE_DATABASE_URL = "sqlite+aiosqlite:///data/cache.db"
DEFAULT_CACHE_JSON_PATH = "data/cache.json"

NAMESPACE_SEPARATOR = ":"

# =============================================================================
# ENVIRONMENT
# =============================================================================

ENV_PREFIX_CREDENTIAL = "UPSTREAM_API_KEY_"
ENV_LEGACY_CREDENTIAL = "UPSTREAM_API_KEY"
PLACEHOLDER_PREFIX = "your_"

# Logging
LIB_LOGGER_NAME = "quota_gateway"
FAILURE_LOGGER_NAME = "quota_gateway.failures"
