# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Type definitions for the credential pool.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..core.errors import mask_credential


class SelectionPolicy(str, Enum):
    """How an eligible credential is chosen."""

    ROUND_ROBIN = "round_robin"  # Cycle through eligible credentials
    LEAST_USED = "least_used"  # Lowest quota_used first


class BlockReason(str, Enum):
    """Why a credential was not eligible for a request."""

    INACTIVE = "inactive"
    COOLDOWN = "cooldown"
    QUOTA = "quota"
    RATE_LIMIT = "rate_limit"


@dataclass
class CredentialRecord:
    """
    Accounting state for one credential.

    Created once per configured credential and mutated on every dispatch
    attempt. Only the credential pool should write to these fields.
    """

    identity: str  # The secret itself; log via ``masked``
    index: int  # Registration order, used for tie-breaks and display ids
    quota_reset_at: float
    rate_window_reset_at: float
    quota_used: int = 0
    request_count: int = 0  # Calls within the current rate window
    is_active: bool = True
    failure_count: int = 0  # Consecutive failures
    last_failure_at: Optional[float] = None

    # Held by selected requests until their outcome is recorded
    reserved_quota: int = 0
    in_flight: int = 0

    # Lifetime counters, informational only
    total_requests: int = 0
    total_failures: int = 0

    @property
    def key_id(self) -> str:
        """Display id that does not reveal the secret."""
        return f"key_{self.index + 1}"

    @property
    def masked(self) -> str:
        return mask_credential(self.identity)

    def __repr__(self) -> str:
        return (
            f"CredentialRecord({self.key_id}, {self.masked}, quota_used={self.quota_used}, "
            f"request_count={self.request_count}, in_flight={self.in_flight}, "
            f"is_active={self.is_active}, "
            f"failure_count={self.failure_count})"
        )
