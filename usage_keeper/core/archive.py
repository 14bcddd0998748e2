"""
Raw snapshot archival.

Keeps rotating, point-in-time copies of upstream responses as a recovery
fallback independent of the history store.
"""

import logging
import shutil
from datetime import datetime
from pathlib import Path
from typing import List, Mapping, Optional, Union

from .errors import ArchivalWriteError

logger = logging.getLogger(__name__)

DEFAULT_RETENTION = 10
ARCHIVE_NAME_FORMAT = "%Y%m%d_%H%M%S_%f"

PathLike = Union[str, Path]


def archive_name(moment: datetime) -> str:
    """Sortable directory name for an archive entry."""
    return moment.strftime(ARCHIVE_NAME_FORMAT)


def archive_snapshots(
    snapshots: Mapping[str, str],
    archive_root: PathLike,
    now: Optional[datetime] = None
) -> Path:
    """Write raw snapshot texts verbatim into a new timestamped directory.

    Args:
        snapshots: View name to raw upstream text
        archive_root: Directory holding one subdirectory per run
        now: Timestamp naming the entry (defaults to now)

    Returns:
        Path of the new archive entry

    Raises:
        ArchivalWriteError: If the entry cannot be written
    """
    entry = Path(archive_root) / archive_name(now or datetime.now())
    try:
        entry.mkdir(parents=True, exist_ok=False)
        for view, text in snapshots.items():
            (entry / f"ccusage_{view}.json").write_text(text, encoding="utf-8")
    except OSError as e:
        raise ArchivalWriteError(f"Failed to archive snapshots to {entry}: {e}") from e
    logger.info("Archived %d snapshot(s) to %s", len(snapshots), entry)
    return entry


def list_archives(archive_root: PathLike) -> List[Path]:
    """Archive entries, newest first."""
    root = Path(archive_root)
    if not root.is_dir():
        return []
    return sorted((p for p in root.iterdir() if p.is_dir()), key=lambda p: p.name, reverse=True)


def rotate_archives(archive_root: PathLike, retention: int = DEFAULT_RETENTION) -> List[Path]:
    """Delete every archive entry beyond the `retention` newest.

    Returns:
        Paths of the removed entries

    Raises:
        ValueError: If retention is negative
        ArchivalWriteError: If an old entry cannot be removed
    """
    if retention < 0:
        raise ValueError("retention cannot be negative")
    removed = []
    for entry in list_archives(archive_root)[retention:]:
        try:
            shutil.rmtree(entry)
        except OSError as e:
            raise ArchivalWriteError(f"Failed to remove old archive {entry}: {e}") from e
        logger.info("Removed old archive: %s", entry.name)
        removed.append(entry)
    return removed
