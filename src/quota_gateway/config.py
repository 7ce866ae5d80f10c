# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Gateway configuration.

``load_config()`` reads the environment (after loading a ``.env`` file)
into a ``GatewayConfig``. Components never read the environment
themselves; they are handed the config object at construction time.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from .core.constants import (
    DEFAULT_CACHE_DATABASE_URL,
    DEFAULT_CACHE_JSON_PATH,
    DEFAULT_CREDENTIAL_PARAM,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_MEMORY_ENTRIES,
    DEFAULT_OPERATION_COST,
    DEFAULT_QUOTA_COSTS,
    DEFAULT_QUOTA_LIMIT_PER_CREDENTIAL,
    DEFAULT_RATE_LIMIT_PER_MINUTE,
    DEFAULT_RESET_HOUR,
    DEFAULT_RESET_TIMEZONE,
    DEFAULT_SWEEP_INTERVAL,
    DEFAULT_UPSTREAM_BASE_URL,
    DEFAULT_UPSTREAM_TIMEOUT,
    ENV_LEGACY_CREDENTIAL,
    ENV_PREFIX_CREDENTIAL,
    LIB_LOGGER_NAME,
    PLACEHOLDER_PREFIX,
)
from .core.errors import ConfigurationError
from .credentials.types import SelectionPolicy

lib_logger = logging.getLogger(LIB_LOGGER_NAME)

CACHE_BACKENDS = ("sql", "json", "none")

_CREDENTIAL_ENV_RE = re.compile(rf"^{ENV_PREFIX_CREDENTIAL}(\d+)$")


@dataclass
class GatewayConfig:
    """
    Complete configuration for the gateway.

    Combines credential pool, dispatch and cache settings.
    """

    # Credentials
    credentials: List[str] = field(default_factory=list)
    quota_limit_per_credential: int = DEFAULT_QUOTA_LIMIT_PER_CREDENTIAL
    rate_limit_per_minute: int = DEFAULT_RATE_LIMIT_PER_MINUTE
    selection_policy: SelectionPolicy = SelectionPolicy.ROUND_ROBIN
    reset_timezone: str = DEFAULT_RESET_TIMEZONE
    reset_hour: int = DEFAULT_RESET_HOUR

    # Dispatch
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    upstream_timeout: float = DEFAULT_UPSTREAM_TIMEOUT
    upstream_base_url: str = DEFAULT_UPSTREAM_BASE_URL
    credential_param: str = DEFAULT_CREDENTIAL_PARAM
    quota_costs: Dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_QUOTA_COSTS)
    )
    default_operation_cost: int = DEFAULT_OPERATION_COST

    # Cache
    cache_max_memory_entries: int = DEFAULT_MAX_MEMORY_ENTRIES
    cache_sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    cache_backend: str = "sql"
    cache_database_url: str = DEFAULT_CACHE_DATABASE_URL
    cache_json_path: str = DEFAULT_CACHE_JSON_PATH
    cache_ttls: Dict[str, int] = field(default_factory=dict)

    def cost_of(self, operation: str) -> int:
        """Quota cost of an operation, from the configured cost table."""
        return self.quota_costs.get(operation, self.default_operation_cost)

    def validate(self) -> "GatewayConfig":
        """
        Check limits and enumerations.

        Returns:
            self, to allow chaining

        Raises:
            ConfigurationError: If any setting is out of range
        """
        problems: List[str] = []
        if self.quota_limit_per_credential <= 0:
            problems.append("quota_limit_per_credential must be positive")
        if self.rate_limit_per_minute <= 0:
            problems.append("rate_limit_per_minute must be positive")
        if self.max_attempts <= 0:
            problems.append("max_attempts must be positive")
        if self.upstream_timeout <= 0:
            problems.append("upstream_timeout must be positive")
        if self.cache_max_memory_entries <= 0:
            problems.append("cache_max_memory_entries must be positive")
        if self.cache_sweep_interval <= 0:
            problems.append("cache_sweep_interval must be positive")
        if not 0 <= self.reset_hour <= 23:
            problems.append("reset_hour must be within 0-23")
        try:
            ZoneInfo(self.reset_timezone)
        except (ZoneInfoNotFoundError, ValueError):
            problems.append(f"reset_timezone '{self.reset_timezone}' is not a known time zone")
        if self.cache_backend not in CACHE_BACKENDS:
            problems.append(
                f"cache_backend must be one of {', '.join(CACHE_BACKENDS)}"
            )
        for operation, cost in self.quota_costs.items():
            if cost < 0:
                problems.append(f"quota cost for '{operation}' must not be negative")

        if problems:
            raise ConfigurationError("Invalid gateway config: " + "; ".join(problems))

        if not self.credentials:
            lib_logger.warning(
                "No upstream credentials configured; every request will use the fallback source."
            )
        return self


# =============================================================================
# ENVIRONMENT LOADING
# =============================================================================


def _is_placeholder(value: str) -> bool:
    return value.strip().lower().startswith(PLACEHOLDER_PREFIX)


def _get_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        lib_logger.warning(f"Invalid integer for {name}: {raw!r}, using {default}")
        return default


def _get_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        lib_logger.warning(f"Invalid number for {name}: {raw!r}, using {default}")
        return default


def _get_json_int_map(env: Mapping[str, str], name: str) -> Dict[str, int]:
    raw = env.get(name)
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"{name} must be a JSON object: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError(f"{name} must be a JSON object, got {type(data).__name__}")
    try:
        return {str(key): int(value) for key, value in data.items()}
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"{name} values must be integers: {e}") from e


def load_credentials(env: Mapping[str, str]) -> List[str]:
    """
    Collect credentials from numbered ``UPSTREAM_API_KEY_<n>`` variables.

    Numbered keys are returned in numeric order. If none are set, the legacy
    single ``UPSTREAM_API_KEY`` is used. Placeholder values and duplicates
    are skipped.
    """
    numbered = []
    for name, value in env.items():
        match = _CREDENTIAL_ENV_RE.match(name)
        if match and value and not _is_placeholder(value):
            numbered.append((int(match.group(1)), value.strip()))
    numbered.sort()

    credentials: List[str] = []
    for _, value in numbered:
        if value not in credentials:
            credentials.append(value)

    if not credentials:
        legacy = env.get(ENV_LEGACY_CREDENTIAL, "")
        if legacy and not _is_placeholder(legacy):
            credentials.append(legacy.strip())

    return credentials


def _parse_policy(raw: Optional[str]) -> SelectionPolicy:
    if not raw:
        return SelectionPolicy.ROUND_ROBIN
    value = raw.strip().lower().replace("-", "_")
    if value in {"least_used", "least_quota_used"}:
        return SelectionPolicy.LEAST_USED
    if value in {"round_robin", "rotation"}:
        return SelectionPolicy.ROUND_ROBIN
    raise ConfigurationError(
        f"Unknown selection policy {raw!r}; expected round_robin or least_used"
    )


def load_config(
    env: Optional[Mapping[str, str]] = None,
    dotenv_path: Optional[str] = None,
) -> GatewayConfig:
    """
    Build a validated ``GatewayConfig``.

    Args:
        env: Mapping to read instead of ``os.environ``. When given, no
            ``.env`` file is loaded.
        dotenv_path: Explicit ``.env`` file to load into ``os.environ``

    Returns:
        Validated configuration
    """
    if env is None:
        load_dotenv(dotenv_path)
        env = os.environ

    quota_costs = dict(DEFAULT_QUOTA_COSTS)
    quota_costs.update(_get_json_int_map(env, "QUOTA_COSTS"))

    config = GatewayConfig(
        credentials=load_credentials(env),
        quota_limit_per_credential=_get_int(
            env, "UPSTREAM_API_QUOTA_PER_KEY", DEFAULT_QUOTA_LIMIT_PER_CREDENTIAL
        ),
        rate_limit_per_minute=_get_int(
            env, "UPSTREAM_API_RATE_LIMIT_PER_KEY", DEFAULT_RATE_LIMIT_PER_MINUTE
        ),
        selection_policy=_parse_policy(env.get("UPSTREAM_API_ROTATION")),
        reset_timezone=env.get("QUOTA_RESET_TIMEZONE") or DEFAULT_RESET_TIMEZONE,
        reset_hour=_get_int(env, "QUOTA_RESET_HOUR", DEFAULT_RESET_HOUR),
        max_attempts=_get_int(env, "UPSTREAM_API_RETRY_COUNT", DEFAULT_MAX_ATTEMPTS),
        upstream_timeout=_get_float(
            env, "UPSTREAM_TIMEOUT_SECONDS", DEFAULT_UPSTREAM_TIMEOUT
        ),
        upstream_base_url=env.get("UPSTREAM_BASE_URL") or DEFAULT_UPSTREAM_BASE_URL,
        credential_param=env.get("UPSTREAM_CREDENTIAL_PARAM") or DEFAULT_CREDENTIAL_PARAM,
        quota_costs=quota_costs,
        cache_max_memory_entries=_get_int(
            env, "CACHE_MAX_MEMORY_ENTRIES", DEFAULT_MAX_MEMORY_ENTRIES
        ),
        cache_sweep_interval=_get_float(
            env, "CACHE_SWEEP_INTERVAL_SECONDS", DEFAULT_SWEEP_INTERVAL
        ),
        cache_backend=(env.get("CACHE_BACKEND") or "sql").strip().lower(),
        cache_database_url=(
            env.get("CACHE_DATABASE_URL")
            or env.get("DATABASE_URL")
            or DEFAULT_CACHE_DATABASE_URL
        ),
        cache_json_path=env.get("CACHE_JSON_PATH") or DEFAULT_CACHE_JSON_PATH,
        cache_ttls=_get_json_int_map(env, "CACHE_TTLS"),
    )
    return config.validate()
