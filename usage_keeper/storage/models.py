"""
Data models for storage layer.

Defines usage records, the views they come from, and collection runs.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import FrozenSet, Optional, Tuple

from usage_keeper.core.windows import to_local, to_utc


class View(Enum):
    """Upstream view that produced a record. Also the record's data source."""
    DAILY = "daily"
    SESSION = "session"
    BLOCKS = "blocks"


@dataclass(frozen=True)
class UsageRecord:
    """One project's consumption for one day, one block, or one session.

    Records are superseded in place by newer observations of the same
    identity and are never hard-deleted.
    """
    data_source: View
    collected_at: datetime
    project: Optional[str] = None
    date: Optional[date] = None
    timestamp: Optional[datetime] = None
    session_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_tokens: int = 0
    total_cost: Decimal = Decimal("0")
    models_used: FrozenSet[str] = field(default_factory=frozenset)

    def __post_init__(self):
        """Validate token counts, cost and the total-tokens invariant.

        The timestamp is held as aware UTC so identities stay distinct across
        daylight-saving transitions.
        """
        object.__setattr__(self, "timestamp", to_utc(self.timestamp))
        for name in ("input_tokens", "output_tokens", "cache_creation_tokens",
                     "cache_read_tokens", "total_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")
        if self.total_cost < 0:
            raise ValueError("total_cost cannot be negative")
        if self.component_tokens and self.total_tokens != self.component_tokens:
            raise ValueError(
                f"total_tokens {self.total_tokens} does not match "
                f"component sum {self.component_tokens}"
            )
        if self.data_source == View.DAILY and self.date is None:
            raise ValueError("daily records require a date")
        if self.data_source == View.BLOCKS and self.timestamp is None:
            raise ValueError("block records require a timestamp")

    @property
    def component_tokens(self) -> int:
        """Sum of the four token components."""
        return (self.input_tokens + self.output_tokens
                + self.cache_creation_tokens + self.cache_read_tokens)

    @property
    def instant(self) -> Optional[datetime]:
        """Local wall-clock time the record describes (midnight for daily records)."""
        if self.timestamp is not None:
            return to_local(self.timestamp)
        if self.date is not None:
            return datetime(self.date.year, self.date.month, self.date.day)
        return None

    @property
    def identity(self) -> Tuple:
        """Uniqueness key within the history store."""
        if self.data_source == View.DAILY:
            return (self.date, self.project, self.data_source)
        if self.data_source == View.BLOCKS:
            return (self.timestamp, self.project or "", self.data_source)
        return (self.session_id, self.data_source)


@dataclass(frozen=True)
class CollectionRun:
    """Bookkeeping row written after every successful ingestion run."""
    run_id: str
    started_at: datetime
    finished_at: datetime
    records_inserted: int
    records_replaced: int
    date_range_start: Optional[date] = None
    date_range_end: Optional[date] = None
    notes: Optional[str] = None

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()
