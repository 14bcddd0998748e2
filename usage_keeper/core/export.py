"""
Consolidated JSON export.

Regenerates one artifact per view from the whole history store, so
presentation collaborators never read raw per-run snapshots. Artifacts are
written to a temporary file and moved into place, never rewritten partially.
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

from usage_keeper.storage.models import UsageRecord, View
from usage_keeper.storage.repository import HistoryStore

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Sort key for sessions without a start time
_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def export_filename(view: View) -> str:
    return f"ccusage_{view.value}_all.json"


def _usage_row(record: UsageRecord) -> Dict[str, Any]:
    return {
        "inputTokens": record.input_tokens,
        "outputTokens": record.output_tokens,
        "cacheCreationTokens": record.cache_creation_tokens,
        "cacheReadTokens": record.cache_read_tokens,
        "totalTokens": record.total_tokens,
        "totalCost": float(record.total_cost),
        "modelsUsed": sorted(record.models_used),
        "dataSource": record.data_source.value,
    }


def _totals(records: List[UsageRecord]) -> Dict[str, Any]:
    return {
        "inputTokens": sum(r.input_tokens for r in records),
        "outputTokens": sum(r.output_tokens for r in records),
        "cacheCreationTokens": sum(r.cache_creation_tokens for r in records),
        "cacheReadTokens": sum(r.cache_read_tokens for r in records),
        "totalTokens": sum(r.total_tokens for r in records),
        "totalCost": float(sum((r.total_cost for r in records), 0)),
    }


def build_document(view: View, records: List[UsageRecord], now: datetime) -> Dict[str, Any]:
    """Build the export document for one view's complete history."""
    document: Dict[str, Any] = {}
    if view == View.SESSION:
        sessions = []
        for record in sorted(records, key=lambda r: r.timestamp or _EARLIEST, reverse=True):
            row = {
                "sessionId": record.session_id,
                "projectPath": record.project,
                "startedAt": record.timestamp.isoformat() if record.timestamp else None,
                "durationMinutes": record.duration_minutes,
            }
            row.update(_usage_row(record))
            sessions.append(row)
        document["sessions"] = sessions
    else:
        projects: Dict[str, List[Dict[str, Any]]] = {}
        for record in sorted(records, key=lambda r: r.instant, reverse=True):
            if view == View.DAILY:
                row = {"date": record.date.isoformat()}
            else:
                row = {"timestamp": record.timestamp.isoformat()}
            row.update(_usage_row(record))
            projects.setdefault(record.project or "", []).append(row)
        document["projects"] = projects
        document["dataSource"] = "preserved_history"

    document["totals"] = _totals(records)
    document["generatedAt"] = now.isoformat(timespec="seconds")
    document["recordCount"] = len(records)
    days = [r.instant.date() for r in records if r.instant is not None]
    if days:
        document["dateRange"] = {
            "earliest": min(days).isoformat(),
            "latest": max(days).isoformat(),
        }
    return document


def write_json_atomic(path: PathLike, document: Dict[str, Any]) -> Path:
    """Write JSON to a sibling temp file and rename it over the target."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.write("\n")
        os.replace(tmp_name, target)
    except Exception:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
    return target


def export_view(
    store: HistoryStore,
    view: View,
    export_dir: PathLike,
    now: Optional[datetime] = None
) -> Path:
    """Export one view's entire stored history to its artifact.

    Returns:
        Path of the written artifact
    """
    records = store.query(view)
    document = build_document(view, records, now or datetime.now())
    path = write_json_atomic(Path(export_dir) / export_filename(view), document)
    logger.info("Exported %d %s records to %s", len(records), view.value, path)
    return path


def export_all(
    store: HistoryStore,
    views: Iterable[View],
    export_dir: PathLike,
    now: Optional[datetime] = None
) -> List[Path]:
    """Export every given view; returns the artifact paths."""
    now = now or datetime.now()
    return [export_view(store, view, export_dir, now) for view in views]
