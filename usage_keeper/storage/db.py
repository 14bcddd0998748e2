"""
Database connection management.

Provides SQLite connections for the history store with a bounded busy timeout.
"""

import sqlite3
from pathlib import Path

from usage_keeper.core.errors import StoreBusyError

DEFAULT_DB_PATH = "usage_history.db"
DEFAULT_TIMEOUT_SECONDS = 5.0


def get_connection(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS
) -> sqlite3.Connection:
    """Create and return a SQLite connection in autocommit mode.

    Transactions are opened explicitly by the caller with BEGIN IMMEDIATE
    so that each upsert takes the write lock up front.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database before giving up

    Returns:
        SQLite connection with explicit transaction control

    Raises:
        StoreBusyError: If the database file is locked by another process
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    try:
        conn = sqlite3.connect(str(path), timeout=timeout, isolation_level=None)
        conn.execute(f"PRAGMA busy_timeout = {int(timeout * 1000)}")
    except sqlite3.OperationalError as e:
        raise_if_busy(e, db_path)
        raise
    return conn


def is_busy_error(error: sqlite3.OperationalError) -> bool:
    """Return True if the error means another process holds the database lock."""
    message = str(error).lower()
    return "database is locked" in message or "database is busy" in message


def raise_if_busy(error: sqlite3.OperationalError, db_path: str) -> None:
    """Translate SQLite lock contention into StoreBusyError."""
    if is_busy_error(error):
        raise StoreBusyError(f"History store is locked: {db_path}") from error
