"""
Tests for run coordination.

The upstream client is mocked; store, archive, exports and lock are real
files under a temporary directory.
"""

import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

from usage_keeper.config.loader import Settings, UpstreamConfig
from usage_keeper.core.coordinator import (
    EXIT_CODE_FAILED,
    EXIT_CODE_OK,
    RunCoordinator,
    RunState,
)
from usage_keeper.core.errors import ArchivalWriteError, FetchError
from usage_keeper.sdk.ccusage_client import RawSnapshot
from usage_keeper.storage.models import View
from usage_keeper.storage.repository import HistoryStore

PAYLOADS = {
    View.DAILY: {"projects": {"p": [
        {"date": "2026-01-01", "inputTokens": 100, "totalCost": 1.5, "modelsUsed": ["m"]},
        {"date": "2026-01-02", "inputTokens": 200, "totalCost": 2.5, "modelsUsed": None},
    ]}},
    View.SESSION: {"sessions": [
        {"sessionId": "s1", "projectPath": "p", "lastActivity": "2026-01-02", "outputTokens": 7},
    ]},
    View.BLOCKS: {"blocks": [
        {"startTime": "2026-01-02T10:00:00", "inputTokens": 50, "costUSD": 0.2},
        {"startTime": "2026-01-02T15:00:00", "isGap": True},
    ]},
}


def _fake_client(payloads=None, fail_on=None):
    payloads = payloads or PAYLOADS
    client = MagicMock()

    def fetch(view):
        if view == fail_on:
            raise FetchError(f"{view.value} fetch failed with exit code 1: boom")
        return RawSnapshot(view=view, text=json.dumps(payloads[view]), payload=payloads[view])

    client.fetch.side_effect = fetch
    return client


class TestRunCoordinator:
    """Test the run state machine end to end."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        root = Path(self.temp_dir)
        self.settings = Settings(
            store_path=root / "data" / "history.db",
            export_dir=root / "data",
            archive_dir=root / "data" / "archive",
            lock_path=root / "data" / "refresh.lock",
            log_dir=root / "logs",
            archive_retention=2,
            upstream=UpstreamConfig(views=(View.DAILY, View.SESSION, View.BLOCKS)),
        )

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _run(self, client, moment=datetime(2026, 1, 2, 12, 0)):
        return RunCoordinator(self.settings, client=client, clock=lambda: moment).run()

    def _exports(self):
        return {
            view: (self.settings.export_dir / f"ccusage_{view.value}_all.json").read_text(encoding="utf-8")
            for view in View
        }

    def test_successful_run(self):
        result = self._run(_fake_client())

        assert result.exit_code == EXIT_CODE_OK
        assert result.succeeded
        assert result.state == RunState.IDLE
        assert result.states == [
            RunState.IDLE, RunState.LOCKING, RunState.FETCHING, RunState.ARCHIVING,
            RunState.NORMALIZING, RunState.MERGING, RunState.EXPORTING, RunState.IDLE,
        ]
        assert result.merged.inserted == 4

        store = HistoryStore(str(self.settings.store_path))
        assert store.count(View.DAILY) == 2
        assert store.count(View.SESSION) == 1
        assert store.count(View.BLOCKS) == 1
        assert len(store.recent_runs()) == 1

        assert result.archive_path.name == "20260102_120000_000000"
        assert (result.archive_path / "ccusage_daily.json").exists()
        assert len(result.exports) == 3
        assert not self.settings.lock_path.exists()

    def test_archive_rotation_across_runs(self):
        for hour in (10, 11, 12):
            self._run(_fake_client(), moment=datetime(2026, 1, 2, hour, 0))
        archives = sorted(p.name for p in self.settings.archive_dir.iterdir())
        assert archives == ["20260102_110000_000000", "20260102_120000_000000"]

    def test_lock_out_exits_cleanly_without_side_effects(self):
        self.settings.lock_path.parent.mkdir(parents=True)
        self.settings.lock_path.write_text(str(os.getpid()), encoding="utf-8")
        client = _fake_client()

        result = self._run(client)

        assert result.state == RunState.LOCKED_OUT
        assert result.exit_code == EXIT_CODE_OK
        client.fetch.assert_not_called()
        assert not self.settings.store_path.exists()
        assert not self.settings.archive_dir.exists()
        assert self.settings.lock_path.read_text(encoding="utf-8") == str(os.getpid())

    def test_fetch_failure_leaves_store_and_exports_untouched(self, caplog):
        self._run(_fake_client(), moment=datetime(2026, 1, 2, 10, 0))
        store = HistoryStore(str(self.settings.store_path))
        hash_before = store.content_hash()
        exports_before = self._exports()

        changed = {
            **PAYLOADS,
            View.DAILY: {"projects": {"p": [{"date": "2026-01-02", "totalCost": 99}]}},
        }
        with caplog.at_level(logging.ERROR, logger="usage_keeper"):
            result = self._run(_fake_client(changed, fail_on=View.BLOCKS),
                               moment=datetime(2026, 1, 2, 11, 0))

        assert result.state == RunState.FAILED
        assert result.exit_code == EXIT_CODE_FAILED
        assert "FetchError" in result.error
        assert store.content_hash() == hash_before
        assert self._exports() == exports_before
        assert len(store.recent_runs()) == 1
        assert not self.settings.lock_path.exists()

        failure = [r for r in caplog.records if r.levelno == logging.ERROR][-1]
        assert failure.data["state"] == "fetching"
        assert failure.data["error_type"] == "FetchError"

    def test_archival_failure_does_not_block_merge(self):
        with patch("usage_keeper.core.coordinator.archive_snapshots",
                   side_effect=ArchivalWriteError("read-only filesystem")):
            result = self._run(_fake_client())

        assert result.exit_code == EXIT_CODE_OK
        assert result.archive_path is None
        assert HistoryStore(str(self.settings.store_path)).count(View.DAILY) == 2

    def test_malformed_snapshot_fails_before_merge(self):
        broken = {**PAYLOADS, View.SESSION: {"unexpected": 1}}
        result = self._run(_fake_client(broken))

        assert result.state == RunState.FAILED
        assert RunState.MERGING not in result.states
        assert "MalformedSnapshotError" in result.error
        assert not self.settings.store_path.exists()
        # Raw snapshot is archived before normalization
        assert len(list(self.settings.archive_dir.iterdir())) == 1
