# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

from .pool import CredentialPool
from .strategies import LeastUsedStrategy, RoundRobinStrategy
from .types import BlockReason, CredentialRecord, SelectionPolicy

__all__ = [
    "BlockReason",
    "CredentialPool",
    "CredentialRecord",
    "LeastUsedStrategy",
    "RoundRobinStrategy",
    "SelectionPolicy",
]
