"""
Unit tests for raw snapshot archival and rotation.
"""

import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from unittest.mock import patch

import pytest

from usage_keeper.core.archive import (
    archive_name,
    archive_snapshots,
    list_archives,
    rotate_archives,
)
from usage_keeper.core.errors import ArchivalWriteError


class TestArchiveSnapshots:
    """Test writing archive entries."""

    def test_raw_text_written_verbatim(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            raw = 'npx banner\n{"projects": {}}\n'
            entry = archive_snapshots({"daily": raw, "blocks": "[]"}, temp_dir,
                                      now=datetime(2026, 1, 10, 8, 30, 15, 123456))

            assert entry.name == "20260110_083015_123456"
            assert (entry / "ccusage_daily.json").read_text(encoding="utf-8") == raw
            assert (entry / "ccusage_blocks.json").read_text(encoding="utf-8") == "[]"

    def test_archive_names_sort_chronologically(self):
        earlier = archive_name(datetime(2026, 1, 9, 23, 59, 59))
        later = archive_name(datetime(2026, 1, 10, 0, 0, 0))
        assert earlier < later

    def test_existing_entry_is_not_overwritten(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            now = datetime(2026, 1, 10, 8, 0)
            archive_snapshots({"daily": "{}"}, temp_dir, now=now)
            with pytest.raises(ArchivalWriteError):
                archive_snapshots({"daily": "{}"}, temp_dir, now=now)

    def test_write_failure_raises_archival_error(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            with patch("pathlib.Path.write_text", side_effect=OSError("disk full")):
                with pytest.raises(ArchivalWriteError):
                    archive_snapshots({"daily": "{}"}, temp_dir, now=datetime(2026, 1, 10))


class TestRotation:
    """Test retention of the newest entries."""

    def test_fifteen_runs_keep_newest_ten(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            start = datetime(2026, 1, 1, 0, 0)
            names = []
            for run in range(15):
                entry = archive_snapshots({"daily": "{}"}, temp_dir,
                                          now=start + timedelta(hours=run))
                names.append(entry.name)
                rotate_archives(temp_dir, retention=10)

            remaining = [p.name for p in list_archives(temp_dir)]
            assert len(remaining) == 10
            assert remaining == list(reversed(names[5:]))

    def test_rotation_returns_removed(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            for day in range(1, 4):
                archive_snapshots({"daily": "{}"}, temp_dir, now=datetime(2026, 1, day))
            removed = rotate_archives(temp_dir, retention=1)
            assert [p.name for p in removed] == ["20260102_000000_000000", "20260101_000000_000000"]
            assert not any(p.exists() for p in removed)

    def test_negative_retention(self):
        with pytest.raises(ValueError):
            rotate_archives(tempfile.gettempdir(), retention=-1)

    def test_missing_root(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            missing = Path(temp_dir) / "nope"
            assert list_archives(missing) == []
            assert rotate_archives(missing) == []
