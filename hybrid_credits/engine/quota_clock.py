"""Daily quota boundary computation.

The quota day is the calendar date in the device's time zone (or a
configured one). Resets are applied lazily on every read instead of by a
background timer: a record whose quota_day is not today comes back with
quota_used = 0.

Usage:
    clock = QuotaClock()
    record = clock.reset_if_needed(record)

    # Deterministic tests
    clock = QuotaClock(clock=VirtualClock(), tz=timezone.utc)
"""

from __future__ import annotations

import logging
import time
from datetime import date, datetime, timezone, tzinfo
from typing import Any, Protocol
from zoneinfo import ZoneInfo

from .models import BalanceRecord

logger = logging.getLogger(__name__)


class ClockProtocol(Protocol):
    """Protocol for clock implementations (VirtualClock or RealClock)."""

    def time(self) -> float:
        """Get current time in seconds since the epoch."""
        ...


class QuotaClock:
    """Computes the current quota day and resets stale records.

    Attributes:
        clock: Optional clock for time operations (for testing with VirtualClock)
        tz: Time zone of the quota day, None for system local time
    """

    def __init__(self, clock: Any = None, tz: tzinfo | None = None) -> None:
        self.clock = clock
        self.tz = tz

    @classmethod
    def from_timezone_name(cls, name: str | None, clock: Any = None) -> QuotaClock:
        """Build from an IANA zone name as found in config."""
        return cls(clock=clock, tz=ZoneInfo(name) if name else None)

    def now_timestamp(self) -> float:
        """Get current time. Uses injected clock if available."""
        if self.clock is not None:
            result: float = self.clock.time()
            return result
        return time.time()

    def now(self) -> datetime:
        """Current instant as an aware UTC datetime."""
        return datetime.fromtimestamp(self.now_timestamp(), tz=timezone.utc)

    def current_quota_day(self) -> date:
        """Calendar date in the quota time zone."""
        ts = self.now_timestamp()
        if self.tz is None:
            # Naive fromtimestamp uses the process local time zone
            return datetime.fromtimestamp(ts).date()
        return datetime.fromtimestamp(ts, tz=self.tz).date()

    def reset_if_needed(self, record: BalanceRecord) -> BalanceRecord:
        """Return record with the quota counter reset if its day has passed.

        Idempotent within a day: once reset, quota_day is today and later
        calls return the record unchanged.
        """
        today = self.current_quota_day()
        if record.quota_day == today:
            return record
        logger.debug(
            "Quota day rolled for %s: %s -> %s (used %d reset to 0)",
            record.identity.key,
            record.quota_day,
            today,
            record.quota_used,
        )
        return record.evolve(quota_used=0, quota_day=today)
