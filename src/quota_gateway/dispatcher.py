# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Request execution with credential failover.

The ``Dispatcher`` is a bounded retry loop with three terminal outcomes:
success, exhausted credentials, or a non-retryable upstream error. Quota
and rate errors shift load to another credential; they are never retried
on the credential that produced them.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional, Set

from .core.constants import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_OPERATION_COST,
    DEFAULT_QUOTA_COSTS,
    DEFAULT_UPSTREAM_TIMEOUT,
    LIB_LOGGER_NAME,
)
from .core.errors import (
    ClassifiedError,
    CredentialUnavailable,
    NoCredentialAvailable,
    QuotaExhausted,
    classify_error,
    to_gateway_error,
)
from .credentials.pool import CredentialPool
from .failure_logger import log_failure
from .providers.provider_interface import UpstreamProvider

if TYPE_CHECKING:
    from .config import GatewayConfig

lib_logger = logging.getLogger(LIB_LOGGER_NAME)


class Dispatcher:
    """
    Executes upstream operations with credentials from a ``CredentialPool``.

    This class handles:
    - Credential selection per attempt
    - Per-call timeouts
    - Error classification and failover
    - Recording outcomes back into the pool
    """

    def __init__(
        self,
        pool: CredentialPool,
        provider: UpstreamProvider,
        quota_costs: Optional[Dict[str, int]] = None,
        default_cost: int = DEFAULT_OPERATION_COST,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        timeout: float = DEFAULT_UPSTREAM_TIMEOUT,
    ):
        """
        Initialize Dispatcher.

        Args:
            pool: Credential pool to draw credentials from
            provider: Upstream provider performing the network call
            quota_costs: Operation name -> quota cost
            default_cost: Cost of operations missing from ``quota_costs``
            max_attempts: Default attempt budget per request
            timeout: Per-call timeout in seconds
        """
        self._pool = pool
        self._provider = provider
        self._quota_costs = (
            dict(quota_costs) if quota_costs is not None else dict(DEFAULT_QUOTA_COSTS)
        )
        self._default_cost = default_cost
        self._max_attempts = max_attempts
        self._timeout = timeout

    @classmethod
    def from_config(
        cls,
        config: "GatewayConfig",
        pool: CredentialPool,
        provider: UpstreamProvider,
    ) -> "Dispatcher":
        return cls(
            pool=pool,
            provider=provider,
            quota_costs=config.quota_costs,
            default_cost=config.default_operation_cost,
            max_attempts=config.max_attempts,
            timeout=config.upstream_timeout,
        )

    @property
    def pool(self) -> CredentialPool:
        return self._pool

    @property
    def provider(self) -> UpstreamProvider:
        return self._provider

    def cost_of(self, operation: str) -> int:
        return self._quota_costs.get(operation, self._default_cost)

    async def execute(
        self,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        cost: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> Any:
        """
        Run ``operation`` against the upstream, failing over between credentials.

        Args:
            operation: Operation name understood by the provider
            params: Operation parameters
            cost: Quota cost override (defaults to the cost table)
            max_attempts: Attempt budget override

        Returns:
            The provider's result

        Raises:
            QuotaExhausted: No untried credential has quota left for this cost;
                the last failed attempt, if any, is chained as the cause
            CredentialUnavailable: No active credential at all
            RateLimited: Last attempt was rate limited and the attempt budget ran out
            TransientNetworkError: Last attempt timed out or failed to connect
            UpstreamError: Non-retryable upstream failure
        """
        cost = self.cost_of(operation) if cost is None else cost
        attempts = max_attempts or self._max_attempts
        params = params or {}

        tried: Set[int] = set()
        last_exception: Optional[Exception] = None
        last_classified: Optional[ClassifiedError] = None

        for attempt in range(attempts):
            credential = await self._pool.select_credential(cost, exclude=tried)
            if credential is None:
                if last_exception is not None:
                    lib_logger.warning(
                        f"No untried credential left for {operation} after {attempt} attempts"
                    )
                raise await self._no_credential_error(
                    operation, cost, tried=len(tried)
                ) from last_exception

            tried.add(credential.index)
            lib_logger.info(
                f"Attempting {operation} with credential {credential.masked} "
                f"(Attempt {attempt + 1}/{attempts}, cost {cost})"
            )

            try:
                result = await asyncio.wait_for(
                    self._provider.invoke(credential.identity, operation, params),
                    timeout=self._timeout,
                )
            except asyncio.CancelledError:
                await self._pool.release(credential, cost)
                raise
            except Exception as e:
                last_exception = e
                last_classified = classify_error(e)
                log_failure(
                    credential=credential.identity,
                    operation=operation,
                    attempt=attempt + 1,
                    error=e,
                    error_kind=last_classified.kind.value,
                    params=params,
                )
                await self._pool.record_failure(credential, last_classified.kind, cost)

                if not last_classified.is_retryable:
                    lib_logger.info(
                        f"Non-retryable {last_classified.kind.value} error for {operation} "
                        f"(status: {last_classified.status_code}); not rotating"
                    )
                    break

                lib_logger.info(
                    f"Rotating from {credential.masked} after {last_classified.kind.value}"
                )
                continue

            await self._pool.record_success(credential, cost)
            return result

        error = to_gateway_error(last_classified)
        raise error from last_exception

    async def _no_credential_error(
        self, operation: str, cost: int, tried: int = 0
    ) -> NoCredentialAvailable:
        stats = await self._pool.availability_stats(cost)
        blocked = stats["blocked_by"]
        if stats["total"] == 0 or blocked.get("inactive", 0) == stats["total"]:
            lib_logger.error(
                f"No active credentials for {operation} "
                f"({stats['total']} configured, {blocked.get('inactive', 0)} disabled)"
            )
            return CredentialUnavailable(
                f"No active credentials available for {operation}"
            )

        blocked_str = ", ".join(f"{name}:{count}" for name, count in blocked.items() if count)
        if tried:
            blocked_str = ", ".join(filter(None, [blocked_str, f"tried:{tried}"]))
        lib_logger.warning(
            f"All credentials exhausted for {operation} at cost {cost} ({blocked_str})"
        )
        return QuotaExhausted(
            f"No credential has quota left for {operation} (cost {cost}; {blocked_str})"
        )
