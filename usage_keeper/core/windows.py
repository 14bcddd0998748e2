"""
Time window calculation.

Fixed 5-hour usage blocks aligned to hours {0, 5, 10, 15, 20} of the local
day, plus the daily and trailing 7-day calendar windows used by analytics.
All functions are pure.

Stored instants are timezone-aware UTC; windows are naive local wall-clock
time. Aware instants are converted with to_local before any comparison.
"""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional

from .errors import InvalidTimeError

BLOCK_HOURS = (0, 5, 10, 15, 20)
BLOCK_LENGTH = timedelta(hours=5)
WEEK_DAYS = 7


def to_utc(instant: Optional[datetime]) -> Optional[datetime]:
    """Aware UTC form of an instant; naive values are read as local time."""
    if instant is None:
        return None
    return instant.astimezone(timezone.utc)


def to_local(instant: Optional[datetime]) -> Optional[datetime]:
    """Naive local wall-clock form of an instant; naive values pass through."""
    if instant is None or instant.tzinfo is None:
        return instant
    return instant.astimezone().replace(tzinfo=None)


@dataclass(frozen=True)
class Window:
    """Half-open instant range [start, end)."""
    start: datetime
    end: datetime

    def __post_init__(self):
        """Validate window is logical."""
        if self.start > self.end:
            raise ValueError("window start must not be after window end")

    def contains(self, instant: datetime) -> bool:
        return self.start <= to_local(instant) < self.end


@dataclass(frozen=True)
class BlockWindow:
    """The 5-hour block containing a reference instant."""
    block_start: datetime
    block_end: datetime
    time_remaining: timedelta

    def as_window(self) -> Window:
        return Window(self.block_start, self.block_end)


def _require_instant(value: Any) -> datetime:
    if value is None:
        raise InvalidTimeError("instant is required, got None")
    if not isinstance(value, datetime):
        raise InvalidTimeError(f"instant must be a datetime, got {type(value).__name__}")
    return to_local(value)


def _require_date(value: Any) -> date:
    if value is None:
        raise InvalidTimeError("date is required, got None")
    if isinstance(value, datetime):
        return value.date()
    if not isinstance(value, date):
        raise InvalidTimeError(f"date must be a date, got {type(value).__name__}")
    return value


def block_start_for(instant: datetime) -> datetime:
    """Start of the block containing the instant.

    An instant exactly on a boundary belongs to the block starting there.
    """
    instant = _require_instant(instant)
    start_hour = max(h for h in BLOCK_HOURS if h <= instant.hour)
    return instant.replace(hour=start_hour, minute=0, second=0, microsecond=0)


def block_window(instant: datetime) -> BlockWindow:
    """Return the block window containing the instant.

    The 20:00 block ends at 01:00 on the next calendar date.

    Raises:
        InvalidTimeError: If instant is None or not a datetime
    """
    start = block_start_for(instant)
    end = start + BLOCK_LENGTH
    return BlockWindow(block_start=start, block_end=end, time_remaining=end - to_local(instant))


def daily_window(day: date) -> Window:
    """Window covering one calendar day, [midnight, next midnight)."""
    day = _require_date(day)
    start = datetime.combine(day, time(0))
    return Window(start, start + timedelta(days=1))


def weekly_window(reference: date) -> Window:
    """Trailing 7-day window: reference - 6 days through reference, inclusive."""
    reference = _require_date(reference)
    start = datetime.combine(reference - timedelta(days=WEEK_DAYS - 1), time(0))
    end = datetime.combine(reference + timedelta(days=1), time(0))
    return Window(start, end)
