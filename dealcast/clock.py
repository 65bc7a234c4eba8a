"""Clock capability.

Quota counters are keyed by calendar day; components receive a clock instead of
reading the system time so day rollover can be driven from tests.
"""

from datetime import datetime, time, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock in a fixed timezone (UTC unless configured)."""

    def __init__(self, tz: str = "UTC"):
        self.tz = timezone.utc if tz.upper() == "UTC" else ZoneInfo(tz)

    def now(self) -> datetime:
        return datetime.now(self.tz)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, at: datetime):
        self._at = at

    def now(self) -> datetime:
        return self._at

    def advance(self, **kwargs: float) -> None:
        self._at = self._at + timedelta(**kwargs)


def day_key(clock: Clock) -> str:
    """Calendar day (YYYY-MM-DD) used for quota counters."""
    return clock.now().date().isoformat()


def seconds_until_end_of_day(clock: Clock) -> int:
    """Seconds remaining until the next local midnight (at least 1)."""
    now = clock.now()
    next_midnight = datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)
    return max(1, int((next_midnight - now).total_seconds()))
