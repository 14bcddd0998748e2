"""
Cross-process run lock.

A PID file that never exists without its PID: the PID is written to a
private temp file which is then hard-linked into place, failing if a lock
is already there. A lock left behind by a dead process is detected through
a liveness check on the recorded PID and reclaimed.
"""

import errno
import logging
import os
import tempfile
import time
from pathlib import Path
from typing import Optional, Union

from .errors import LockHeldError

logger = logging.getLogger(__name__)

# An unreadable lock younger than this is treated as held
STALE_GRACE_SECONDS = 30.0


def pid_alive(pid: int) -> bool:
    """Return True if a process with this PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except OSError as e:
        # EPERM: exists but owned by someone else
        return e.errno == errno.EPERM
    return True


def _read_pid(path: Path) -> Optional[int]:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


class RunLock:
    """Exclusive lock guarding one ingestion run at a time.

    Usable as a context manager; release is unconditional on exit.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self.acquired = False

    def _read_pid(self) -> Optional[int]:
        return _read_pid(self.path)

    def _modified_ago(self) -> Optional[float]:
        """Seconds since the lock file changed, or None if it is gone."""
        try:
            return time.time() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def _try_create(self) -> bool:
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=str(self.path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(str(os.getpid()))
            try:
                os.link(tmp_name, str(self.path))
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(tmp_name)

    def _reclaim(self, holder: Optional[int]) -> None:
        """Remove a stale lock, unless it changed hands since it was read.

        The lock is first renamed aside, so of several runs reclaiming the
        same stale lock only one removes it. If the file moved aside no
        longer names the stale holder, a live run took the lock in between
        and it is put back.

        Raises:
            LockHeldError: If the lock was taken over before it was moved
        """
        aside = self.path.with_name(f"{self.path.name}.{os.getpid()}.stale")
        try:
            os.rename(str(self.path), str(aside))
        except FileNotFoundError:
            return
        current = _read_pid(aside)
        try:
            if current == holder:
                return
            try:
                os.link(str(aside), str(self.path))
            except FileExistsError:
                pass
        finally:
            os.unlink(str(aside))
        raise LockHeldError(f"Another run holds {self.path} (PID {current})", current or 0)

    def acquire(self) -> None:
        """Take the lock, reclaiming it from a dead holder.

        Raises:
            LockHeldError: If a live process holds the lock
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for _ in range(2):
            if self._try_create():
                self.acquired = True
                return
            holder = self._read_pid()
            if holder is not None and pid_alive(holder):
                raise LockHeldError(f"Another run holds {self.path} (PID {holder})", holder)
            if holder is None:
                age = self._modified_ago()
                if age is None:
                    continue
                if age < STALE_GRACE_SECONDS:
                    raise LockHeldError(f"{self.path} has no readable PID yet", 0)
            logger.warning("Reclaiming stale lock %s (PID %s not running)", self.path, holder)
            self._reclaim(holder)
        holder = self._read_pid() or 0
        raise LockHeldError(f"Could not acquire {self.path}", holder)

    def release(self) -> None:
        if not self.acquired:
            return
        try:
            if self._read_pid() == os.getpid():
                self.path.unlink()
        except FileNotFoundError:
            pass
        finally:
            self.acquired = False

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
