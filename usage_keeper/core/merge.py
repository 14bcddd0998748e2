"""
Merge engine.

Reconciles a normalized snapshot against the history store. The store is
append/replace-only: a record missing from the latest snapshot has been
evicted from the upstream window, not retracted, so nothing is ever
deleted by absence.
"""

import logging
import time
from dataclasses import dataclass
from datetime import date
from typing import Callable, Optional, Sequence

from .errors import StoreBusyError
from usage_keeper.storage.models import UsageRecord
from usage_keeper.storage.repository import HistoryStore, UpsertResult

logger = logging.getLogger(__name__)

DEFAULT_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 0.5


@dataclass(frozen=True)
class MergeResult:
    """Outcome of merging one snapshot."""
    inserted: int
    replaced: int
    unchanged: int
    earliest: Optional[date] = None
    latest: Optional[date] = None

    @property
    def total(self) -> int:
        return self.inserted + self.replaced + self.unchanged


def merge_snapshot(store: HistoryStore, records: Sequence[UsageRecord]) -> MergeResult:
    """Upsert a normalized snapshot into the store.

    Idempotent: merging the same records again leaves the store content
    unchanged.

    Args:
        store: History store to write into
        records: Normalized usage records from one snapshot

    Returns:
        MergeResult with counts and the calendar range covered

    Raises:
        StoreBusyError: If the store is locked by another process
    """
    if not records:
        return MergeResult(inserted=0, replaced=0, unchanged=0)

    result: UpsertResult = store.upsert(records)
    days = [r.instant.date() for r in records if r.instant is not None]
    merged = MergeResult(
        inserted=result.inserted,
        replaced=result.replaced,
        unchanged=result.unchanged,
        earliest=min(days) if days else None,
        latest=max(days) if days else None,
    )
    logger.info(
        "Merged %d records (%d new, %d replaced, %d unchanged)",
        merged.total, merged.inserted, merged.replaced, merged.unchanged,
    )
    return merged


def merge_with_retry(
    store: HistoryStore,
    records: Sequence[UsageRecord],
    retries: int = DEFAULT_RETRIES,
    backoff: float = DEFAULT_BACKOFF_SECONDS,
    sleep: Callable[[float], None] = time.sleep
) -> MergeResult:
    """Merge, retrying StoreBusyError with exponential backoff.

    Upserts are idempotent, so a retry after a partial batch is safe.

    Raises:
        StoreBusyError: If the store is still locked after all retries
    """
    attempt = 0
    while True:
        try:
            return merge_snapshot(store, records)
        except StoreBusyError:
            if attempt >= retries:
                raise
            delay = backoff * (2 ** attempt)
            attempt += 1
            logger.warning("History store busy, retry %d/%d in %.1fs", attempt, retries, delay)
            sleep(delay)
