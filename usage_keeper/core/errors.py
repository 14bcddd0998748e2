"""
Error taxonomy for usage ingestion.

Field-level data irregularities are never raised; they are coerced to
defaults by the normalizer. Only structural and I/O failures surface here.
"""


class UsageKeeperError(Exception):
    """Base class for all usage-keeper errors."""


class MalformedSnapshotError(UsageKeeperError):
    """Raised when an upstream snapshot violates the top-level contract.

    Fatal for the merge of that run, but never corrupts the store.
    """


class StoreBusyError(UsageKeeperError):
    """Raised when the history store file is locked by another process.

    Retryable: callers may back off and try again, but must not proceed
    without the lock.
    """


class InvalidTimeError(UsageKeeperError, TypeError):
    """Raised when a window calculation receives a non-temporal input."""


class ArchivalWriteError(UsageKeeperError):
    """Raised when a raw snapshot cannot be written to the archive.

    Non-fatal: the coordinator logs it and continues with the merge.
    """


class FetchError(UsageKeeperError):
    """Raised when the upstream CLI fails, times out, or cannot be started."""


class LockHeldError(UsageKeeperError):
    """Raised when another live process holds the run lock."""
    def __init__(self, message: str, pid: int):
        super().__init__(message)
        self.pid = pid
