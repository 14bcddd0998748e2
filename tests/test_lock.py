"""
Unit tests for the cross-process run lock.
"""

import os
import tempfile
import time
from pathlib import Path
from unittest.mock import patch

import pytest

from usage_keeper.core.errors import LockHeldError
from usage_keeper.core.lock import RunLock, pid_alive


class TestPidAlive:
    def test_current_process_is_alive(self):
        assert pid_alive(os.getpid())

    def test_invalid_pid(self):
        assert not pid_alive(0)
        assert not pid_alive(-1)


class TestRunLock:
    """Test acquisition, release and stale-lock reclaim."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.lock_path = Path(self.temp_dir) / "run" / "refresh.lock"

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_acquire_writes_pid_and_release_removes(self):
        lock = RunLock(self.lock_path)
        lock.acquire()
        assert self.lock_path.read_text(encoding="utf-8") == str(os.getpid())
        lock.release()
        assert not self.lock_path.exists()

    def test_context_manager(self):
        with RunLock(self.lock_path) as lock:
            assert lock.acquired
            assert self.lock_path.exists()
        assert not self.lock_path.exists()

    def test_live_holder_raises(self):
        self.lock_path.parent.mkdir(parents=True)
        self.lock_path.write_text(str(os.getpid()), encoding="utf-8")

        with pytest.raises(LockHeldError) as exc_info:
            RunLock(self.lock_path).acquire()
        assert exc_info.value.pid == os.getpid()
        assert self.lock_path.exists()

    def test_dead_holder_is_reclaimed(self):
        self.lock_path.parent.mkdir(parents=True)
        self.lock_path.write_text("424242", encoding="utf-8")

        with patch("usage_keeper.core.lock.pid_alive", return_value=False):
            lock = RunLock(self.lock_path)
            lock.acquire()

        assert lock.acquired
        assert self.lock_path.read_text(encoding="utf-8") == str(os.getpid())
        lock.release()

    def test_lock_file_never_lacks_a_pid(self):
        seen = []
        real_link = os.link

        def link(src, dst):
            seen.append(Path(src).read_text(encoding="utf-8"))
            real_link(src, dst)

        with patch("usage_keeper.core.lock.os.link", side_effect=link):
            with RunLock(self.lock_path):
                pass

        assert seen == [str(os.getpid())]
        assert os.listdir(self.lock_path.parent) == []

    def test_lock_being_created_is_not_taken(self):
        """An empty lock file that was just created belongs to a live run."""
        self.lock_path.parent.mkdir(parents=True)
        os.close(os.open(str(self.lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY))

        with pytest.raises(LockHeldError):
            RunLock(self.lock_path).acquire()
        assert self.lock_path.exists()

    def test_old_unreadable_lock_is_reclaimed(self):
        self.lock_path.parent.mkdir(parents=True)
        self.lock_path.write_text("not-a-pid", encoding="utf-8")
        an_hour_ago = time.time() - 3600
        os.utime(self.lock_path, (an_hour_ago, an_hour_ago))

        with RunLock(self.lock_path) as lock:
            assert lock.acquired
            assert self.lock_path.read_text(encoding="utf-8") == str(os.getpid())
        assert os.listdir(self.lock_path.parent) == []

    def test_reclaim_puts_back_a_lock_taken_meanwhile(self):
        """A stale PID read earlier must not remove a lock another run now holds."""
        self.lock_path.parent.mkdir(parents=True)
        self.lock_path.write_text(str(os.getpid()), encoding="utf-8")

        with pytest.raises(LockHeldError) as exc_info:
            RunLock(self.lock_path)._reclaim(424242)

        assert exc_info.value.pid == os.getpid()
        assert self.lock_path.read_text(encoding="utf-8") == str(os.getpid())
        assert os.listdir(self.lock_path.parent) == ["refresh.lock"]

    def test_release_without_acquire_keeps_foreign_lock(self):
        self.lock_path.parent.mkdir(parents=True)
        self.lock_path.write_text(str(os.getpid()), encoding="utf-8")
        RunLock(self.lock_path).release()
        assert self.lock_path.exists()
