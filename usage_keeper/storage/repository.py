"""
Repository pattern for the usage history store.

Handles the keyed upsert table per upstream view and run bookkeeping.
The store is append/replace-only: nothing here deletes a usage row.
"""

import hashlib
import json
import logging
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union

from usage_keeper.core.windows import to_utc

from .db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, get_connection, raise_if_busy
from .models import CollectionRun, UsageRecord, View

logger = logging.getLogger(__name__)

Bound = Union[date, datetime]

_TOKEN_COLUMNS = (
    "input_tokens", "output_tokens", "cache_creation_tokens",
    "cache_read_tokens", "total_tokens",
)


@dataclass(frozen=True)
class _TableSpec:
    name: str
    key: Tuple[str, ...]
    time_column: str
    columns: Tuple[str, ...]


_TABLES: Dict[View, _TableSpec] = {
    View.DAILY: _TableSpec(
        name="daily_usage",
        key=("date", "project", "data_source"),
        time_column="date",
        columns=("date", "project") + _TOKEN_COLUMNS + (
            "total_cost", "models_used", "data_source", "collected_at"),
    ),
    View.BLOCKS: _TableSpec(
        name="block_usage",
        key=("timestamp", "project", "data_source"),
        time_column="timestamp",
        columns=("timestamp", "project") + _TOKEN_COLUMNS + (
            "total_cost", "models_used", "data_source", "collected_at"),
    ),
    View.SESSION: _TableSpec(
        name="session_usage",
        key=("session_id", "data_source"),
        time_column="started_at",
        columns=("session_id", "project", "started_at", "duration_minutes") + _TOKEN_COLUMNS + (
            "total_cost", "models_used", "data_source", "collected_at"),
    ),
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS daily_usage (
        date TEXT NOT NULL,
        project TEXT NOT NULL,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
        cache_read_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        total_cost TEXT NOT NULL DEFAULT '0',
        models_used TEXT NOT NULL DEFAULT '[]',
        data_source TEXT NOT NULL,
        collected_at TEXT NOT NULL,
        PRIMARY KEY (date, project, data_source)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS block_usage (
        timestamp TEXT NOT NULL,
        project TEXT NOT NULL DEFAULT '',
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
        cache_read_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        total_cost TEXT NOT NULL DEFAULT '0',
        models_used TEXT NOT NULL DEFAULT '[]',
        data_source TEXT NOT NULL,
        collected_at TEXT NOT NULL,
        PRIMARY KEY (timestamp, project, data_source)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS session_usage (
        session_id TEXT NOT NULL,
        project TEXT,
        started_at TEXT,
        duration_minutes INTEGER,
        input_tokens INTEGER NOT NULL DEFAULT 0,
        output_tokens INTEGER NOT NULL DEFAULT 0,
        cache_creation_tokens INTEGER NOT NULL DEFAULT 0,
        cache_read_tokens INTEGER NOT NULL DEFAULT 0,
        total_tokens INTEGER NOT NULL DEFAULT 0,
        total_cost TEXT NOT NULL DEFAULT '0',
        models_used TEXT NOT NULL DEFAULT '[]',
        data_source TEXT NOT NULL,
        collected_at TEXT NOT NULL,
        PRIMARY KEY (session_id, data_source)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS collection_runs (
        run_id TEXT PRIMARY KEY,
        started_at TEXT NOT NULL,
        finished_at TEXT NOT NULL,
        records_inserted INTEGER NOT NULL,
        records_replaced INTEGER NOT NULL,
        date_range_start TEXT,
        date_range_end TEXT,
        notes TEXT
    )
    """,
)


@dataclass(frozen=True)
class UpsertResult:
    """Outcome counts of an upsert batch."""
    inserted: int = 0
    replaced: int = 0
    unchanged: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.replaced + self.unchanged

    def __add__(self, other: "UpsertResult") -> "UpsertResult":
        return UpsertResult(
            inserted=self.inserted + other.inserted,
            replaced=self.replaced + other.replaced,
            unchanged=self.unchanged + other.unchanged,
        )


def _format_instant(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


def _record_to_row(record: UsageRecord) -> Dict[str, object]:
    row: Dict[str, object] = {
        "project": record.project,
        "input_tokens": record.input_tokens,
        "output_tokens": record.output_tokens,
        "cache_creation_tokens": record.cache_creation_tokens,
        "cache_read_tokens": record.cache_read_tokens,
        "total_tokens": record.total_tokens,
        "total_cost": str(record.total_cost),
        "models_used": json.dumps(sorted(record.models_used)),
        "data_source": record.data_source.value,
        "collected_at": _format_instant(record.collected_at),
    }
    if record.data_source == View.DAILY:
        row["date"] = record.date.isoformat()
    elif record.data_source == View.BLOCKS:
        row["timestamp"] = _format_instant(record.timestamp)
        row["project"] = record.project or ""
    else:
        row["session_id"] = record.session_id
        row["started_at"] = _format_instant(record.timestamp) if record.timestamp else None
        row["duration_minutes"] = record.duration_minutes
    return row


def _row_to_record(view: View, row: sqlite3.Row) -> UsageRecord:
    kwargs = dict(
        data_source=View(row["data_source"]),
        collected_at=datetime.fromisoformat(row["collected_at"]),
        project=row["project"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        cache_creation_tokens=row["cache_creation_tokens"],
        cache_read_tokens=row["cache_read_tokens"],
        total_tokens=row["total_tokens"],
        total_cost=Decimal(row["total_cost"]),
        models_used=frozenset(json.loads(row["models_used"])),
    )
    if view == View.DAILY:
        kwargs["date"] = date.fromisoformat(row["date"])
    elif view == View.BLOCKS:
        kwargs["timestamp"] = datetime.fromisoformat(row["timestamp"])
        kwargs["project"] = row["project"] or None
    else:
        kwargs["session_id"] = row["session_id"]
        kwargs["duration_minutes"] = row["duration_minutes"]
        if row["started_at"]:
            kwargs["timestamp"] = datetime.fromisoformat(row["started_at"])
    return UsageRecord(**kwargs)


def _daily_bound(value: Bound) -> str:
    """Map a bound onto the date column: a datetime past midnight rounds up."""
    if isinstance(value, datetime):
        day = value.date()
        if value.time() != time(0):
            day += timedelta(days=1)
        return day.isoformat()
    return value.isoformat()


def _instant_bound(value: Bound) -> str:
    """Map a bound onto a UTC instant column; naive bounds are local time."""
    if not isinstance(value, datetime):
        value = datetime.combine(value, time(0))
    return _format_instant(to_utc(value))


class HistoryStore:
    """Durable, keyed history of usage records, one table per view.

    Connections are opened per operation and closed before returning, so
    the store file is never held open beyond a single call.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for a locked database before StoreBusyError
        """
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        conn = get_connection(self.db_path, self.timeout)
        conn.row_factory = sqlite3.Row
        return conn

    def initialize_schema(self) -> None:
        """Create the usage and run tables if they don't exist."""
        conn = self._connect()
        try:
            for statement in _SCHEMA:
                conn.execute(statement)
        except sqlite3.OperationalError as e:
            raise_if_busy(e, self.db_path)
            raise
        finally:
            conn.close()

    def upsert(self, records: Iterable[UsageRecord]) -> UpsertResult:
        """Insert or replace each record, keyed by its identity.

        Every record is written in its own transaction, so an interrupted
        batch leaves each row either fully old or fully new. An incoming
        observation older than the stored one is left unapplied.

        Args:
            records: Normalized usage records (any mix of views)

        Returns:
            Counts of inserted, replaced and unchanged rows

        Raises:
            StoreBusyError: If another process holds the database lock
        """
        inserted = replaced = unchanged = 0
        conn = self._connect()
        try:
            for record in records:
                outcome = self._upsert_one(conn, record)
                if outcome == "inserted":
                    inserted += 1
                elif outcome == "replaced":
                    replaced += 1
                else:
                    unchanged += 1
        finally:
            conn.close()
        return UpsertResult(inserted=inserted, replaced=replaced, unchanged=unchanged)

    def _upsert_one(self, conn: sqlite3.Connection, record: UsageRecord) -> str:
        table = _TABLES[record.data_source]
        row = _record_to_row(record)
        key_clause = " AND ".join(f"{column} = ?" for column in table.key)
        key_values = [row[column] for column in table.key]
        placeholders = ", ".join("?" for _ in table.columns)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                existing = conn.execute(
                    f"SELECT collected_at FROM {table.name} WHERE {key_clause}",
                    key_values,
                ).fetchone()
                if existing is not None and existing["collected_at"] > row["collected_at"]:
                    outcome = "unchanged"
                else:
                    conn.execute(
                        f"INSERT OR REPLACE INTO {table.name} ({', '.join(table.columns)}) "
                        f"VALUES ({placeholders})",
                        [row[column] for column in table.columns],
                    )
                    outcome = "inserted" if existing is None else "replaced"
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise
        except sqlite3.OperationalError as e:
            raise_if_busy(e, self.db_path)
            raise
        return outcome

    def query(
        self,
        view: View,
        start: Optional[Bound] = None,
        end: Optional[Bound] = None,
        projects: Optional[Sequence[str]] = None,
    ) -> List[UsageRecord]:
        """Return the surviving observation for each identity in range.

        Args:
            view: Which view's table to read
            start: Inclusive lower bound on the record's date or timestamp
            end: Exclusive upper bound on the record's date or timestamp
            projects: Optional project names to restrict to

        Returns:
            Usage records ordered by date/timestamp, then project
        """
        table = _TABLES[view]
        bound = _daily_bound if view == View.DAILY else _instant_bound
        conditions = []
        params: List[object] = []
        if start is not None:
            conditions.append(f"{table.time_column} >= ?")
            params.append(bound(start))
        if end is not None:
            conditions.append(f"{table.time_column} < ?")
            params.append(bound(end))
        if projects:
            conditions.append(f"project IN ({', '.join('?' for _ in projects)})")
            params.extend(projects)

        query = f"SELECT {', '.join(table.columns)} FROM {table.name}"
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += f" ORDER BY {table.time_column}, project, {table.key[0]}"

        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        except sqlite3.OperationalError as e:
            raise_if_busy(e, self.db_path)
            raise
        finally:
            conn.close()
        return [_row_to_record(view, row) for row in rows]

    def count(self, view: View) -> int:
        """Number of rows stored for a view."""
        conn = self._connect()
        try:
            return conn.execute(f"SELECT COUNT(*) FROM {_TABLES[view].name}").fetchone()[0]
        except sqlite3.OperationalError as e:
            raise_if_busy(e, self.db_path)
            raise
        finally:
            conn.close()

    def content_hash(self, view: Optional[View] = None) -> str:
        """SHA-256 over stored usage content, in key order.

        collected_at is excluded: re-observing identical values does not
        change the hash.
        """
        views = [view] if view is not None else list(View)
        digest = hashlib.sha256()
        conn = self._connect()
        try:
            for current in views:
                table = _TABLES[current]
                columns = [c for c in table.columns if c != "collected_at"]
                cursor = conn.execute(
                    f"SELECT {', '.join(columns)} FROM {table.name} "
                    f"ORDER BY {', '.join(table.key)}"
                )
                digest.update(table.name.encode("utf-8"))
                for row in cursor:
                    digest.update(json.dumps(list(row)).encode("utf-8"))
        except sqlite3.OperationalError as e:
            raise_if_busy(e, self.db_path)
            raise
        finally:
            conn.close()
        return digest.hexdigest()

    def record_run(self, run: CollectionRun) -> None:
        """Store bookkeeping for a completed collection run."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                INSERT OR REPLACE INTO collection_runs
                (run_id, started_at, finished_at, records_inserted,
                 records_replaced, date_range_start, date_range_end, notes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    _format_instant(run.started_at),
                    _format_instant(run.finished_at),
                    run.records_inserted,
                    run.records_replaced,
                    run.date_range_start.isoformat() if run.date_range_start else None,
                    run.date_range_end.isoformat() if run.date_range_end else None,
                    run.notes,
                ),
            )
            conn.execute("COMMIT")
        except sqlite3.OperationalError as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise_if_busy(e, self.db_path)
            raise
        finally:
            conn.close()

    def recent_runs(self, limit: int = 20) -> List[CollectionRun]:
        """Collection runs, newest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM collection_runs ORDER BY started_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        except sqlite3.OperationalError as e:
            raise_if_busy(e, self.db_path)
            raise
        finally:
            conn.close()
        return [
            CollectionRun(
                run_id=row["run_id"],
                started_at=datetime.fromisoformat(row["started_at"]),
                finished_at=datetime.fromisoformat(row["finished_at"]),
                records_inserted=row["records_inserted"],
                records_replaced=row["records_replaced"],
                date_range_start=date.fromisoformat(row["date_range_start"]) if row["date_range_start"] else None,
                date_range_end=date.fromisoformat(row["date_range_end"]) if row["date_range_end"] else None,
                notes=row["notes"],
            )
            for row in rows
        ]
