"""
Snapshot normalization.

Turns one raw upstream response into canonical usage records. The upstream
JSON is heterogeneous between runs: every "is this null, scalar or list"
decision lives in a single coercion function per field, so field-level
irregularities are absorbed here and never raised.
"""

import logging
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional

from .errors import MalformedSnapshotError
from .windows import to_utc
from usage_keeper.storage.models import UsageRecord, View

logger = logging.getLogger(__name__)

# Upstream camelCase keys, in the order they are tried.
_TOKEN_FIELDS = {
    "input_tokens": ("inputTokens",),
    "output_tokens": ("outputTokens",),
    "cache_creation_tokens": ("cacheCreationTokens", "cacheCreationInputTokens"),
    "cache_read_tokens": ("cacheReadTokens", "cacheReadInputTokens"),
}
_COST_FIELDS = ("totalCost", "costUSD", "cost")
_MODEL_FIELDS = ("modelsUsed", "models")
_SUMMARY_KEYS = {"totals", "summary", "generatedAt", "dataSource", "recordCount", "dateRange"}
# Top-level list keys of unkeyed views, never project names
_VIEW_KEYS = {"daily", "sessions", "blocks"}


def coerce_models(value: Any) -> FrozenSet[str]:
    """Coerce a "models used" field to a set of strings.

    Observed upstream shapes are null, an empty list, a single scalar, or a
    list of scalars. Nested lists are flattened; nulls and blanks dropped.
    """
    if value is None:
        return frozenset()
    if isinstance(value, (list, tuple, set, frozenset)):
        models = set()
        for item in value:
            models |= coerce_models(item)
        return frozenset(models)
    if isinstance(value, dict):
        name = value.get("modelName") or value.get("model") or value.get("name")
        return coerce_models(name)
    text = str(value).strip()
    return frozenset([text]) if text else frozenset()


def coerce_int(value: Any) -> int:
    """Coerce a token count to a non-negative int; anything unusable is 0."""
    if value is None or isinstance(value, bool):
        return 0
    try:
        number = int(Decimal(str(value)))
    except (InvalidOperation, ValueError, OverflowError):
        return 0
    return max(number, 0)


def coerce_cost(value: Any) -> Decimal:
    """Coerce a cost to a non-negative Decimal; anything unusable is 0."""
    if value is None or isinstance(value, bool):
        return Decimal("0")
    try:
        cost = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")
    if not cost.is_finite() or cost < 0:
        return Decimal("0")
    return cost


def parse_date(value: Any) -> Optional[date]:
    """Parse a calendar date; returns None when the value is unusable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    for fmt in ("%b %d, %Y", "%Y/%m/%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    return None


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an instant into aware UTC; returns None when unusable.

    The upstream emits UTC with a trailing "Z". Naive values are read as
    local time. Local wall-clock time repeats an hour when daylight saving
    ends, so it is never used as an identity.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    return to_utc(parsed)


def _first(entry: Mapping[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        if key in entry and entry[key] is not None:
            return entry[key]
    return None


def _usage_fields(entry: Mapping[str, Any]) -> Dict[str, Any]:
    """Extract token counts, cost and models from one upstream entry."""
    sources = [entry]
    nested = entry.get("tokenCounts")
    if isinstance(nested, Mapping):
        sources.append(nested)

    fields: Dict[str, Any] = {}
    for name, keys in _TOKEN_FIELDS.items():
        fields[name] = coerce_int(next(
            (v for v in (_first(s, keys) for s in sources) if v is not None), None
        ))
    component_sum = sum(fields.values())
    fields["total_tokens"] = component_sum if component_sum else coerce_int(entry.get("totalTokens"))
    fields["total_cost"] = coerce_cost(_first(entry, _COST_FIELDS))
    fields["models_used"] = coerce_models(_first(entry, _MODEL_FIELDS))
    return fields


def _project_mapping(payload: Any) -> Optional[Mapping[str, Any]]:
    if not isinstance(payload, Mapping):
        return None
    projects = payload.get("projects")
    if isinstance(projects, Mapping):
        return projects
    candidates = {k: v for k, v in payload.items() if k not in _SUMMARY_KEYS}
    if candidates and all(isinstance(v, list) for v in candidates.values()):
        if _VIEW_KEYS & set(candidates):
            return None
        return candidates
    return None


def _flat_list(payload: Any, key: str) -> Optional[List[Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, Mapping) and isinstance(payload.get(key), list):
        return payload[key]
    return None


def _entries(rows: Any, where: str) -> List[Mapping[str, Any]]:
    if rows is None:
        return []
    if isinstance(rows, Mapping):
        rows = [rows]
    if not isinstance(rows, list):
        logger.warning("Ignoring non-list entries under %s", where)
        return []
    kept = []
    for row in rows:
        if isinstance(row, Mapping):
            kept.append(row)
        else:
            logger.warning("Ignoring non-object entry under %s: %r", where, row)
    return kept


def _daily_record(entry, project, collected_at) -> Optional[UsageRecord]:
    day = parse_date(entry.get("date"))
    if day is None:
        logger.warning("Skipping daily entry for %s with unusable date %r",
                       project, entry.get("date"))
        return None
    return UsageRecord(
        data_source=View.DAILY,
        collected_at=collected_at,
        project=project,
        date=day,
        **_usage_fields(entry),
    )


def _block_record(entry, project, collected_at) -> Optional[UsageRecord]:
    if entry.get("isGap"):
        return None
    instant = parse_timestamp(_first(entry, ("timestamp", "startTime")))
    if instant is None:
        logger.warning("Skipping block entry with unusable timestamp %r",
                       _first(entry, ("timestamp", "startTime")))
        return None
    if project is None:
        project = _first(entry, ("project", "projectPath", "projectId"))
    return UsageRecord(
        data_source=View.BLOCKS,
        collected_at=collected_at,
        project=str(project) if project else None,
        timestamp=instant,
        **_usage_fields(entry),
    )


def session_key(entry: Mapping[str, Any], collected_at: datetime, index: int) -> str:
    """Identity of a session entry.

    The upstream session id is not always present or stable. Fall back to
    project plus last activity, and finally to an append-only key bound to
    this collection.
    """
    session_id = _first(entry, ("sessionId", "id"))
    if session_id not in (None, ""):
        return str(session_id)
    project = _first(entry, ("projectPath", "projectId", "project"))
    activity = _first(entry, ("lastActivity", "startedAt", "timestamp"))
    if project and activity:
        return f"{project}@{activity}"
    return f"collected@{collected_at.isoformat(timespec='microseconds')}#{index}"


def _session_record(entry, index, collected_at) -> UsageRecord:
    project = _first(entry, ("projectPath", "projectId", "project"))
    instant = parse_timestamp(_first(entry, ("startedAt", "lastActivity", "timestamp")))
    duration = entry.get("durationMinutes")
    return UsageRecord(
        data_source=View.SESSION,
        collected_at=collected_at,
        project=str(project) if project else None,
        timestamp=instant,
        session_id=session_key(entry, collected_at, index),
        duration_minutes=coerce_int(duration) if duration is not None else None,
        **_usage_fields(entry),
    )


def normalize_snapshot(
    payload: Any,
    view: View,
    collected_at: Optional[datetime] = None
) -> List[UsageRecord]:
    """Normalize one parsed upstream response into usage records.

    Args:
        payload: Parsed JSON from the upstream CLI
        view: Which upstream view produced the payload
        collected_at: Capture instant stamped on every record (defaults to now)

    Returns:
        Usage records in upstream order, skipping entries without a usable
        date or timestamp

    Raises:
        MalformedSnapshotError: If the top-level shape is neither a
            project-keyed mapping nor a flat list for the view
    """
    collected_at = collected_at or datetime.now()
    records: List[UsageRecord] = []

    if view == View.SESSION:
        sessions = _flat_list(payload, "sessions")
        if sessions is None:
            raise MalformedSnapshotError(
                f"session snapshot must be a list or contain 'sessions', got {type(payload).__name__}"
            )
        for index, entry in enumerate(_entries(sessions, "sessions")):
            records.append(_session_record(entry, index, collected_at))
        return records

    projects = _project_mapping(payload)
    if projects is not None:
        build = _daily_record if view == View.DAILY else _block_record
        for project, rows in projects.items():
            for entry in _entries(rows, f"project {project!r}"):
                record = build(entry, str(project), collected_at)
                if record is not None:
                    records.append(record)
        return records

    if view == View.BLOCKS:
        blocks = _flat_list(payload, "blocks")
        if blocks is not None:
            for entry in _entries(blocks, "blocks"):
                record = _block_record(entry, None, collected_at)
                if record is not None:
                    records.append(record)
            return records

    if view == View.DAILY and isinstance(payload, Mapping) and "daily" in payload:
        raise MalformedSnapshotError(
            "daily snapshot has no per-project breakdown; fetch it with --instances"
        )

    raise MalformedSnapshotError(
        f"{view.value} snapshot must be a project-keyed mapping, got {type(payload).__name__}"
    )
