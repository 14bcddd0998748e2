"""
Tests for the upstream ccusage client.
"""

import subprocess
from unittest.mock import patch

import pytest

from usage_keeper.core.errors import FetchError, MalformedSnapshotError
from usage_keeper.sdk import CcusageClient
from usage_keeper.sdk.ccusage_client import extract_json
from usage_keeper.storage.models import View


def _completed(stdout="", stderr="", returncode=0):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def mock_run():
    """Mock the subprocess boundary."""
    with patch("usage_keeper.sdk.ccusage_client.subprocess.run") as mock:
        yield mock


class TestCcusageClient:
    """Test invocation and failure handling."""

    def test_build_args(self):
        client = CcusageClient()
        assert client.build_args(View.DAILY) == ["npx", "ccusage", "daily", "--json", "--instances"]
        assert client.build_args(View.BLOCKS)[-1] == "--breakdown"

    def test_custom_command(self):
        client = CcusageClient(command=["bunx", "ccusage@latest"])
        assert client.build_args(View.SESSION)[:3] == ["bunx", "ccusage@latest", "session"]

    def test_invalid_construction(self):
        with pytest.raises(ValueError):
            CcusageClient(command=[])
        with pytest.raises(ValueError):
            CcusageClient(timeout=0)

    def test_fetch_success(self, mock_run):
        mock_run.return_value = _completed(stdout='{"projects": {"p": []}}')
        snapshot = CcusageClient(timeout=30).fetch(View.DAILY)

        assert snapshot.view == View.DAILY
        assert snapshot.payload == {"projects": {"p": []}}
        assert snapshot.text == '{"projects": {"p": []}}'
        args, kwargs = mock_run.call_args
        assert kwargs["timeout"] == 30
        assert kwargs["capture_output"] is True

    def test_banner_is_stripped(self, mock_run):
        mock_run.return_value = _completed(stdout='Need to install ccusage@15\nOk to proceed? (y)\n[{"id": 1}]')
        snapshot = CcusageClient().fetch(View.SESSION)
        assert snapshot.payload == [{"id": 1}]
        assert snapshot.text.startswith("Need to install")

    def test_timeout_raises_fetch_error(self, mock_run):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="npx", timeout=5)
        with pytest.raises(FetchError, match="timed out"):
            CcusageClient(timeout=5).fetch(View.DAILY)

    def test_missing_executable_raises_fetch_error(self, mock_run):
        mock_run.side_effect = FileNotFoundError("npx")
        with pytest.raises(FetchError, match="could not start"):
            CcusageClient().fetch(View.DAILY)

    def test_non_zero_exit_raises_fetch_error(self, mock_run):
        mock_run.return_value = _completed(stderr="boom", returncode=2)
        with pytest.raises(FetchError, match="exit code 2"):
            CcusageClient().fetch(View.BLOCKS)

    def test_non_json_output(self, mock_run):
        mock_run.return_value = _completed(stdout="No usage data found.")
        with pytest.raises(MalformedSnapshotError):
            CcusageClient().fetch(View.DAILY)


class TestExtractJson:
    def test_prefers_first_bracket(self):
        assert extract_json('{"a": [1]}') == {"a": [1]}
        assert extract_json('noise [1, {"a": 2}]') == [1, {"a": 2}]

    def test_truncated_json(self):
        with pytest.raises(MalformedSnapshotError):
            extract_json('{"a": ')
