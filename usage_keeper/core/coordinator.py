"""
Run coordination.

Drives one ingestion run through its states under the cross-process lock:

    IDLE -> LOCKING -> FETCHING -> ARCHIVING -> NORMALIZING -> MERGING
         -> EXPORTING -> IDLE

LOCKING may end in LOCKED_OUT (another run is active; exit cleanly with no
side effects). A failure while fetching, normalizing, merging or exporting
ends in FAILED. Archival precedes merge, so a crash between the two never
loses the raw snapshot; archival failures are logged and the run continues.
"""

import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .archive import archive_snapshots, rotate_archives
from .errors import ArchivalWriteError, LockHeldError, UsageKeeperError
from .export import export_all
from .lock import RunLock
from .merge import MergeResult, merge_with_retry
from .normalizer import normalize_snapshot
from usage_keeper.config.loader import Settings
from usage_keeper.sdk.ccusage_client import CcusageClient, RawSnapshot
from usage_keeper.storage.models import CollectionRun, UsageRecord
from usage_keeper.storage.repository import HistoryStore

logger = logging.getLogger(__name__)

EXIT_CODE_OK = 0
EXIT_CODE_FAILED = 1


class RunState(Enum):
    IDLE = "idle"
    LOCKING = "locking"
    FETCHING = "fetching"
    ARCHIVING = "archiving"
    NORMALIZING = "normalizing"
    MERGING = "merging"
    EXPORTING = "exporting"
    LOCKED_OUT = "locked_out"
    FAILED = "failed"


@dataclass
class RunResult:
    """Outcome of one coordinated run."""
    state: RunState
    exit_code: int
    states: List[RunState] = field(default_factory=list)
    merged: Optional[MergeResult] = None
    archive_path: Optional[Path] = None
    exports: List[Path] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == EXIT_CODE_OK


class RunCoordinator:
    """Runs fetch, archive, normalize, merge and export once, exclusively."""

    def __init__(
        self,
        settings: Settings,
        client: Optional[CcusageClient] = None,
        store: Optional[HistoryStore] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.settings = settings
        self.client = client or CcusageClient(
            command=settings.upstream.command,
            timeout=settings.upstream.timeout_seconds,
        )
        self.store = store or HistoryStore(
            str(settings.store_path),
            timeout=settings.store_timeout_seconds,
        )
        self.clock = clock
        self._result: Optional[RunResult] = None

    def _enter(self, state: RunState) -> None:
        self._result.state = state
        self._result.states.append(state)
        logger.debug("Run state -> %s", state.value)

    def run(self) -> RunResult:
        """Execute one run and report its terminal state and exit code."""
        self._result = RunResult(state=RunState.IDLE, exit_code=EXIT_CODE_OK,
                                 states=[RunState.IDLE])
        result = self._result
        started_at = self.clock()
        logger.info("===== Starting history-preserving refresh =====")

        self._enter(RunState.LOCKING)
        lock = RunLock(self.settings.lock_path)
        try:
            lock.acquire()
        except LockHeldError as e:
            self._enter(RunState.LOCKED_OUT)
            logger.info("Another run is active (PID %d), skipping", e.pid)
            return result

        try:
            self._execute(started_at)
            self._enter(RunState.IDLE)
            logger.info("===== Refresh complete =====")
        except (UsageKeeperError, sqlite3.Error, OSError) as e:
            failed_in = result.state
            self._enter(RunState.FAILED)
            result.exit_code = EXIT_CODE_FAILED
            result.error = f"{type(e).__name__}: {e}"
            logger.error(
                "Run failed while %s: %s", failed_in.value, e,
                exc_info=True,
                extra={"data": {
                    "state": failed_in.value,
                    "error_type": type(e).__name__,
                    "error": str(e),
                    "started_at": started_at.isoformat(),
                }},
            )
        finally:
            lock.release()
        return result

    def _execute(self, started_at: datetime) -> None:
        result = self._result
        views = self.settings.upstream.views

        self._enter(RunState.FETCHING)
        snapshots: List[RawSnapshot] = [self.client.fetch(view) for view in views]

        self._enter(RunState.ARCHIVING)
        try:
            result.archive_path = archive_snapshots(
                {s.view.value: s.text for s in snapshots},
                self.settings.archive_dir,
                now=started_at,
            )
            rotate_archives(self.settings.archive_dir, self.settings.archive_retention)
        except ArchivalWriteError as e:
            logger.error("Archival failed, continuing with merge: %s", e,
                         extra={"data": {"state": RunState.ARCHIVING.value,
                                         "error_type": type(e).__name__}})

        self._enter(RunState.NORMALIZING)
        records: List[UsageRecord] = []
        for snapshot in snapshots:
            normalized = normalize_snapshot(snapshot.payload, snapshot.view, collected_at=started_at)
            logger.info("Normalized %d %s records", len(normalized), snapshot.view.value)
            records.extend(normalized)

        self._enter(RunState.MERGING)
        self.store.initialize_schema()
        result.merged = merge_with_retry(self.store, records)

        self._enter(RunState.EXPORTING)
        result.exports = export_all(self.store, views, self.settings.export_dir, now=self.clock())

        merged = result.merged
        self.store.record_run(CollectionRun(
            run_id=uuid.uuid4().hex,
            started_at=started_at,
            finished_at=self.clock(),
            records_inserted=merged.inserted,
            records_replaced=merged.replaced,
            date_range_start=merged.earliest,
            date_range_end=merged.latest,
            notes="Automated collection",
        ))
