"""
Usage analytics over the history store.

Aggregates records over a window against a limit, grades usage against
warn/critical thresholds, groups block-level records into 5-hour blocks,
finds gaps in daily activity, and computes interpolated quartiles.
"""

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Union

from .windows import Window, block_start_for, BLOCK_LENGTH
from usage_keeper.storage.models import CollectionRun, UsageRecord

Number = Union[int, float, Decimal]

MAX_DISPLAY_PERCENTAGE = 100
DEFAULT_WARN_THRESHOLD = 0.75
DEFAULT_CRITICAL_THRESHOLD = 0.90


class Metric(Enum):
    """Quantity being summed."""
    COST = "cost"
    TOKENS = "tokens"


class UsageStatus(Enum):
    """Usage grade against warn/critical thresholds."""
    OK = "ok"
    WARN = "warn"
    CRITICAL = "critical"


@dataclass(frozen=True)
class UsageSummary:
    """Usage within one window against a limit.

    percentage saturates at 100; over_limit tells whether used exceeds the
    limit, and usage_ratio() gives the unsaturated figure.
    """
    used: Number
    limit: Number
    percentage: int
    breakdown: Dict[str, Number]
    metric: Metric = Metric.COST

    @property
    def over_limit(self) -> bool:
        return self.used > self.limit


@dataclass(frozen=True)
class BlockUsage:
    """Token usage of one 5-hour block."""
    block_start: datetime
    block_end: datetime
    total_tokens: int
    usage_pct: int
    status: UsageStatus

    @property
    def block_date(self) -> date:
        return self.block_start.date()

    @property
    def block_hour(self) -> int:
        return self.block_start.hour


@dataclass(frozen=True)
class Gap:
    """A maximal run of calendar days with no recorded activity."""
    gap_start: date
    gap_end: date
    gap_days: int


@dataclass(frozen=True)
class Quartiles:
    p25: float
    p50: float
    p75: float


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def _validate(used: Number, limit: Number) -> None:
    if used is None:
        raise ValueError("used is required")
    if limit is None:
        raise ValueError("limit is required")
    if isinstance(used, bool) or not isinstance(used, (int, float, Decimal)):
        raise ValueError("used must be numeric")
    if isinstance(limit, bool) or not isinstance(limit, (int, float, Decimal)):
        raise ValueError("limit must be numeric")
    if used < 0:
        raise ValueError("used cannot be negative")
    if limit <= 0:
        raise ValueError("limit must be positive")


def usage_ratio(used: Number, limit: Number) -> float:
    """Raw used/limit ratio, not saturated."""
    _validate(used, limit)
    return float(_to_decimal(used) / _to_decimal(limit))


def usage_percentage(used: Number, limit: Number) -> int:
    """Percentage of limit used, rounded half-up and capped at 100.

    Raises:
        ValueError: If used is negative or limit is not positive
    """
    _validate(used, limit)
    raw = _to_decimal(used) * 100 / _to_decimal(limit)
    rounded = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return min(rounded, MAX_DISPLAY_PERCENTAGE)


def usage_status(
    percentage: Number,
    warn_threshold: float = DEFAULT_WARN_THRESHOLD,
    critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD
) -> UsageStatus:
    """Grade a percentage against fractional warn/critical thresholds."""
    # Compare as fractions: 0.9 * 100 is 90.00000000000001 in float
    fraction = float(percentage) / 100
    if fraction >= critical_threshold:
        return UsageStatus.CRITICAL
    if fraction >= warn_threshold:
        return UsageStatus.WARN
    return UsageStatus.OK


def record_value(record: UsageRecord, metric: Metric) -> Number:
    """The metric's value for one record; missing values count as zero."""
    if metric == Metric.COST:
        return record.total_cost or Decimal("0")
    return record.total_tokens or 0


def aggregate(
    records: Iterable[UsageRecord],
    window: Window,
    limit: Number,
    metric: Metric = Metric.COST,
    projects: Optional[Sequence[str]] = None
) -> UsageSummary:
    """Sum usage of records falling in the window, across all matching projects.

    Args:
        records: Usage records (any view)
        window: Half-open window the record's date/timestamp must fall in
        limit: Limit the usage is measured against
        metric: Whether to sum cost or tokens
        projects: Optional project names to restrict to

    Returns:
        UsageSummary with a per-project breakdown
    """
    wanted = set(projects) if projects else None
    zero: Number = Decimal("0") if metric == Metric.COST else 0
    breakdown: Dict[str, Number] = defaultdict(lambda: zero)
    used = zero
    for record in records:
        instant = record.instant
        if instant is None or not window.contains(instant):
            continue
        if wanted is not None and record.project not in wanted:
            continue
        value = record_value(record, metric)
        used += value
        breakdown[record.project or ""] += value

    return UsageSummary(
        used=used,
        limit=limit,
        percentage=usage_percentage(used, limit),
        breakdown=dict(breakdown),
        metric=metric,
    )


def block_history(
    records: Iterable[UsageRecord],
    limit: int,
    now: Optional[datetime] = None,
    days: int = 7,
    warn_threshold: float = DEFAULT_WARN_THRESHOLD,
    critical_threshold: float = DEFAULT_CRITICAL_THRESHOLD
) -> List[BlockUsage]:
    """Group timestamped records into 5-hour blocks, newest first.

    Only blocks starting within the last `days` days of `now` are kept.
    """
    now = now or datetime.now()
    cutoff = now - timedelta(days=days)
    totals: Dict[datetime, int] = defaultdict(int)
    for record in records:
        if record.timestamp is None or record.instant < cutoff:
            continue
        totals[block_start_for(record.instant)] += record.total_tokens or 0

    history = []
    for start in sorted(totals, reverse=True):
        pct = usage_percentage(totals[start], limit)
        history.append(BlockUsage(
            block_start=start,
            block_end=start + BLOCK_LENGTH,
            total_tokens=totals[start],
            usage_pct=pct,
            status=usage_status(pct, warn_threshold, critical_threshold),
        ))
    return history


def activity_dates(records: Iterable[UsageRecord]) -> List[date]:
    """Sorted distinct calendar dates that have at least one record."""
    return sorted({r.instant.date() for r in records if r.instant is not None})


def detect_gaps(dates: Iterable[date]) -> List[Gap]:
    """Find runs of days with no activity between the first and last date.

    Args:
        dates: Calendar dates with recorded activity (duplicates allowed)

    Returns:
        Gaps in chronological order; empty for contiguous history
    """
    ordered = sorted(set(dates))
    gaps = []
    for previous, current in zip(ordered, ordered[1:]):
        missing = (current - previous).days - 1
        if missing > 0:
            gaps.append(Gap(
                gap_start=previous + timedelta(days=1),
                gap_end=current - timedelta(days=1),
                gap_days=missing,
            ))
    return gaps


def percentile(values: Sequence[Number], pct: float) -> float:
    """Compute a percentile using linear interpolation between order statistics.

    Same definition as numpy.percentile's default ("type 7"), so results are
    reproducible.

    Args:
        values: Numeric values
        pct: Percentile to compute (0-100)

    Returns:
        Interpolated percentile value
    """
    if not values:
        raise ValueError("Values list cannot be empty")

    if pct < 0 or pct > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(float(v) for v in values)
    n = len(sorted_values)

    # 0-indexed position between order statistics
    position = (pct / 100.0) * (n - 1)

    lower_index = int(position)
    upper_index = min(lower_index + 1, n - 1)
    fraction = position - lower_index

    lower_value = sorted_values[lower_index]
    upper_value = sorted_values[upper_index]

    return lower_value + fraction * (upper_value - lower_value)


def quartiles(values: Sequence[Number]) -> Quartiles:
    """25th, 50th and 75th percentiles."""
    return Quartiles(
        p25=percentile(values, 25),
        p50=percentile(values, 50),
        p75=percentile(values, 75),
    )


def run_duration_quartiles(runs: Iterable[CollectionRun]) -> Optional[Quartiles]:
    """Quartiles of collection run durations in seconds, None without runs."""
    durations = [run.duration_seconds for run in runs]
    if not durations:
        return None
    return quartiles(durations)
