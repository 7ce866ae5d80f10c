# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Credential selection strategies.

Strategies only choose among credentials that already passed every
eligibility check; they never look at limits themselves.
"""

from typing import List, Optional

from .types import CredentialRecord, SelectionPolicy


class RoundRobinStrategy:
    """
    Cycle through credentials in registration order.

    Remembers the last credential handed out and picks the first eligible
    credential registered after it, wrapping around. Ineligible credentials
    are skipped without disturbing the rotation order of the others.
    """

    def __init__(self):
        self._last_index: int = -1

    @property
    def name(self) -> str:
        return "round_robin"

    def select(self, candidates: List[CredentialRecord]) -> Optional[CredentialRecord]:
        if not candidates:
            return None

        ordered = sorted(candidates, key=lambda c: c.index)
        selected = next(
            (c for c in ordered if c.index > self._last_index),
            ordered[0],
        )
        self._last_index = selected.index
        return selected

    def reset(self) -> None:
        self._last_index = -1


class LeastUsedStrategy:
    """
    Pick the credential with the lowest quota consumption.

    Ties go to the lowest failure count, then to the first registered.
    """

    @property
    def name(self) -> str:
        return "least_used"

    def select(self, candidates: List[CredentialRecord]) -> Optional[CredentialRecord]:
        if not candidates:
            return None
        return min(candidates, key=lambda c: (c.quota_used, c.failure_count, c.index))

    def reset(self) -> None:
        pass


def build_strategy(policy: SelectionPolicy):
    if policy == SelectionPolicy.LEAST_USED:
        return LeastUsedStrategy()
    return RoundRobinStrategy()
