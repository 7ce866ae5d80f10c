# SPDX-License-Identifier: LGPL-3.0-only
# Copyright (c) 2026 Mirrowel

"""
Time source used by the credential pool and the cache.

All instants are POSIX timestamps (float seconds), like ``time.time()``.
The daily quota boundary is computed in a configurable time zone because
providers reset quotas on their own local midnight, not on UTC.
"""

import time
from datetime import datetime, timedelta
from datetime import time as dt_time
from typing import Optional
from zoneinfo import ZoneInfo

from .core.constants import DEFAULT_RESET_HOUR, DEFAULT_RESET_TIMEZONE


class TimeSource:
    """Wall clock plus the daily quota reset schedule."""

    def __init__(
        self,
        reset_timezone: str = DEFAULT_RESET_TIMEZONE,
        reset_hour: int = DEFAULT_RESET_HOUR,
    ):
        if not 0 <= reset_hour <= 23:
            raise ValueError(f"reset_hour must be within 0-23, got {reset_hour}")
        self.reset_timezone = reset_timezone
        self.reset_hour = reset_hour
        self._tz = ZoneInfo(reset_timezone)

    def now(self) -> float:
        """Current time as a POSIX timestamp."""
        return time.time()

    def next_reset_at(self, after: Optional[float] = None) -> float:
        """
        Next daily quota boundary strictly after ``after`` (default: now).

        Args:
            after: Reference timestamp

        Returns:
            Timestamp of the next ``reset_hour:00`` in ``reset_timezone``
        """
        reference = self.now() if after is None else after
        local_now = datetime.fromtimestamp(reference, tz=self._tz)
        boundary = datetime.combine(
            local_now.date(), dt_time(hour=self.reset_hour), tzinfo=self._tz
        )
        if boundary.timestamp() <= reference:
            boundary = datetime.combine(
                local_now.date() + timedelta(days=1),
                dt_time(hour=self.reset_hour),
                tzinfo=self._tz,
            )
        return boundary.timestamp()
