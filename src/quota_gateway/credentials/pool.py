# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential pool with per-credential quota, rate and health accounting.

Selection, quota resets and outcome recording all happen under a single
asyncio lock, so a reset can never interleave with a selection. A selected
credential holds its cost and one rate slot until the outcome is recorded,
so concurrent requests cannot overspend either limit.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Set

from ..clock import TimeSource
from ..core.constants import (
    DEFAULT_QUOTA_LIMIT_PER_CREDENTIAL,
    DEFAULT_RATE_LIMIT_PER_MINUTE,
    FAILURE_COOLDOWN_SECONDS,
    FAILURE_COOLDOWN_THRESHOLD,
    FAILURE_DEACTIVATION_THRESHOLD,
    LIB_LOGGER_NAME,
    RATE_WINDOW_SECONDS,
)
from ..core.errors import ErrorKind
from .strategies import build_strategy
from .types import BlockReason, CredentialRecord, SelectionPolicy

if TYPE_CHECKING:
    from ..config import GatewayConfig

lib_logger = logging.getLogger(LIB_LOGGER_NAME)


class CredentialPool:
    """
    Tracks every configured credential and hands out the best eligible one.

    Example:
        pool = CredentialPool(quota_limit=10000, rate_limit_per_minute=100)
        await pool.initialize(["key-a", "key-b"])

        credential = await pool.select_credential(cost=100)
        if credential is not None:
            ...
            await pool.record_success(credential, cost=100)

    Every selection must end in ``record_success``, ``record_failure`` or
    ``release`` with the same cost.
    """

    def __init__(
        self,
        quota_limit: int = DEFAULT_QUOTA_LIMIT_PER_CREDENTIAL,
        rate_limit_per_minute: int = DEFAULT_RATE_LIMIT_PER_MINUTE,
        policy: SelectionPolicy = SelectionPolicy.ROUND_ROBIN,
        clock: Optional[TimeSource] = None,
    ):
        """
        Initialize the pool.

        Args:
            quota_limit: Daily quota units per credential
            rate_limit_per_minute: Requests per credential per rate window
            policy: Selection policy among eligible credentials
            clock: Time source (defaults to the wall clock)
        """
        self.quota_limit = quota_limit
        self.rate_limit_per_minute = rate_limit_per_minute
        self.policy = policy
        self._clock = clock or TimeSource()
        self._strategy = build_strategy(policy)
        self._records: List[CredentialRecord] = []
        self._lock = asyncio.Lock()
        self._initialized = False

    @classmethod
    def from_config(
        cls, config: "GatewayConfig", clock: Optional[TimeSource] = None
    ) -> "CredentialPool":
        return cls(
            quota_limit=config.quota_limit_per_credential,
            rate_limit_per_minute=config.rate_limit_per_minute,
            policy=config.selection_policy,
            clock=clock
            or TimeSource(config.reset_timezone, config.reset_hour),
        )

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def records(self) -> List[CredentialRecord]:
        """Registered credentials in registration order."""
        return list(self._records)

    def __len__(self) -> int:
        return len(self._records)

    async def initialize(self, credentials: Sequence[str]) -> None:
        """
        Register credentials. Calling it again replaces the pool contents.

        Args:
            credentials: Credential secrets, in priority order
        """
        async with self._lock:
            now = self._clock.now()
            reset_at = self._clock.next_reset_at(now)
            self._records = [
                CredentialRecord(
                    identity=identity,
                    index=index,
                    quota_reset_at=reset_at,
                    rate_window_reset_at=now + RATE_WINDOW_SECONDS,
                )
                for index, identity in enumerate(credentials)
            ]
            self._strategy.reset()
            self._initialized = True

        lib_logger.info(
            f"Initialized credential pool with {len(self._records)} credentials "
            f"(quota {self.quota_limit}/day, {self.rate_limit_per_minute} req/min, "
            f"policy: {self.policy.value})"
        )

    # =========================================================================
    # SELECTION
    # =========================================================================

    async def select_credential(
        self, cost: int, exclude: Optional[Set[int]] = None
    ) -> Optional[CredentialRecord]:
        """
        Select the best eligible credential and reserve ``cost`` units on it.

        Args:
            cost: Quota units the request will consume
            exclude: Registration indices to skip, e.g. credentials already
                tried for the current request

        Returns:
            The selected credential, or None if none is eligible
        """
        async with self._lock:
            now = self._clock.now()
            self._refresh_locked(now)

            available = [
                record
                for record in self._records
                if self._block_reason(record, cost, now) is None
                and (not exclude or record.index not in exclude)
            ]
            if not available:
                lib_logger.debug(
                    f"No credential available for cost {cost} "
                    f"(all {len(self._records)} blocked)"
                )
                return None

            selected = self._strategy.select(available)
            if selected is not None:
                selected.reserved_quota += cost
                selected.in_flight += 1
                lib_logger.debug(
                    f"Selected credential {selected.masked} for cost {cost} "
                    f"(from {len(available)} available, quota {selected.quota_used}/{self.quota_limit}, "
                    f"reserved {selected.reserved_quota})"
                )
            return selected

    def _refresh_locked(self, now: float) -> None:
        """Apply daily quota resets and rate window rollovers. Caller holds the lock."""
        for record in self._records:
            if now >= record.quota_reset_at:
                was_inactive = not record.is_active
                self._reset_record(record, now)
                lib_logger.info(
                    f"Daily quota reset for credential {record.masked}"
                    + (" (reactivated)" if was_inactive else "")
                )
            elif now >= record.rate_window_reset_at:
                record.request_count = 0
                record.rate_window_reset_at = now + RATE_WINDOW_SECONDS

    def _block_reason(
        self, record: CredentialRecord, cost: int, now: float
    ) -> Optional[BlockReason]:
        if not record.is_active:
            return BlockReason.INACTIVE
        if (
            record.failure_count >= FAILURE_COOLDOWN_THRESHOLD
            and record.last_failure_at is not None
            and now - record.last_failure_at < FAILURE_COOLDOWN_SECONDS
        ):
            return BlockReason.COOLDOWN
        if record.quota_used + record.reserved_quota + cost > self.quota_limit:
            return BlockReason.QUOTA
        if record.request_count + record.in_flight >= self.rate_limit_per_minute:
            return BlockReason.RATE_LIMIT
        return None

    # =========================================================================
    # OUTCOME RECORDING
    # =========================================================================

    async def record_success(self, credential: CredentialRecord, cost: int) -> None:
        """Charge ``cost`` to the credential and clear its failure streak."""
        async with self._lock:
            self._release_locked(credential, cost)
            credential.quota_used += cost
            credential.request_count += 1
            credential.failure_count = 0
            credential.total_requests += 1

        lib_logger.debug(
            f"Credential {credential.masked} usage - quota: {credential.quota_used}/{self.quota_limit}, "
            f"requests this window: {credential.request_count}"
        )

    async def record_failure(
        self, credential: CredentialRecord, error_kind: ErrorKind, cost: int = 0
    ) -> None:
        """
        Record a failed attempt and drop its reservation.

        Quota exhaustion pins ``quota_used`` at the limit so the credential
        is skipped until its next reset. Repeated failures deactivate it.
        """
        async with self._lock:
            self._release_locked(credential, cost)
            credential.failure_count += 1
            credential.total_failures += 1
            credential.last_failure_at = self._clock.now()

            if error_kind == ErrorKind.QUOTA_EXHAUSTED:
                credential.quota_used = self.quota_limit

            if (
                credential.failure_count >= FAILURE_DEACTIVATION_THRESHOLD
                and credential.is_active
            ):
                credential.is_active = False
                lib_logger.warning(
                    f"Credential {credential.masked} disabled after "
                    f"{credential.failure_count} consecutive failures"
                )

        lib_logger.info(
            f"Recorded {error_kind.value} failure for credential {credential.masked} "
            f"(consecutive failures: {credential.failure_count})"
        )

    async def release(self, credential: CredentialRecord, cost: int) -> None:
        """Drop a reservation whose request never produced an outcome."""
        async with self._lock:
            self._release_locked(credential, cost)

    def _release_locked(self, credential: CredentialRecord, cost: int) -> None:
        credential.reserved_quota = max(0, credential.reserved_quota - cost)
        credential.in_flight = max(0, credential.in_flight - 1)

    # =========================================================================
    # STATUS & MAINTENANCE
    # =========================================================================

    async def availability_stats(self, cost: int = 0) -> Dict[str, Any]:
        """
        Count credentials by the first rule blocking them.

        Useful for status reporting and for telling "over quota" apart
        from "nothing active at all".
        """
        async with self._lock:
            now = self._clock.now()
            self._refresh_locked(now)
            blocked_by = {reason.value: 0 for reason in BlockReason}
            available = 0
            for record in self._records:
                reason = self._block_reason(record, cost, now)
                if reason is None:
                    available += 1
                else:
                    blocked_by[reason.value] += 1

        return {
            "total": len(self._records),
            "available": available,
            "blocked": len(self._records) - available,
            "blocked_by": blocked_by,
            "policy": self.policy.value,
        }

    async def quota_info(self) -> Dict[str, Any]:
        """Aggregate and per-credential quota usage."""
        async with self._lock:
            now = self._clock.now()
            self._refresh_locked(now)
            total_limit = len(self._records) * self.quota_limit
            total_used = sum(r.quota_used for r in self._records)
            key_details = [
                {
                    "key_id": r.key_id,
                    "used": r.quota_used,
                    "limit": self.quota_limit,
                    "remaining": max(0, self.quota_limit - r.quota_used),
                    "reserved": r.reserved_quota,
                    "requests_this_minute": r.request_count,
                    "in_flight": r.in_flight,
                    "is_active": r.is_active,
                    "failure_count": r.failure_count,
                    "reset_at": r.quota_reset_at,
                }
                for r in self._records
            ]

        return {
            "total_used": total_used,
            "total_limit": total_limit,
            "total_remaining": max(0, total_limit - total_used),
            "reset_at": self._clock.next_reset_at(now),
            "key_details": key_details,
        }

    async def reset_quotas(self) -> None:
        """Manually reset and reactivate every credential."""
        async with self._lock:
            now = self._clock.now()
            for record in self._records:
                self._reset_record(record, now)
        lib_logger.info(f"All {len(self._records)} credential quotas reset")

    async def reactivate(self, key_id: str) -> bool:
        """
        Manually reactivate one credential without touching its quota.

        Args:
            key_id: Display id such as ``key_2``

        Returns:
            True if a credential with that id exists
        """
        async with self._lock:
            for record in self._records:
                if record.key_id == key_id:
                    record.is_active = True
                    record.failure_count = 0
                    record.last_failure_at = None
                    lib_logger.info(f"Credential {record.masked} manually reactivated")
                    return True
        return False

    def _reset_record(self, record: CredentialRecord, now: float) -> None:
        record.quota_used = 0
        record.request_count = 0
        record.failure_count = 0
        record.last_failure_at = None
        record.is_active = True
        record.quota_reset_at = self._clock.next_reset_at(now)
        record.rate_window_reset_at = now + RATE_WINDOW_SECONDS
