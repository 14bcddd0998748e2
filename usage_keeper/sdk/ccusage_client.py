"""
Upstream ccusage client.

Invokes the external accounting CLI once per view and returns its raw and
parsed JSON output. Every invocation has a bounded timeout.
"""

import json
import logging
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, Sequence

from ..core.errors import FetchError, MalformedSnapshotError
from ..storage.models import View

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = ("npx", "ccusage")
DEFAULT_TIMEOUT_SECONDS = 120.0


@dataclass(frozen=True)
class RawSnapshot:
    """One upstream response: verbatim text plus its decoded JSON."""
    view: View
    text: str
    payload: Any
    fetched_at: datetime = field(default_factory=datetime.now)


def extract_json(text: str) -> Any:
    """Decode upstream output, discarding any banner before the JSON body.

    Raises:
        MalformedSnapshotError: If no JSON document can be decoded
    """
    starts = [i for i in (text.find("{"), text.find("[")) if i >= 0]
    if not starts:
        raise MalformedSnapshotError("upstream output contains no JSON document")
    try:
        return json.loads(text[min(starts):])
    except json.JSONDecodeError as e:
        raise MalformedSnapshotError(f"upstream output is not valid JSON: {e}") from e


class CcusageClient:
    """Runs `ccusage <view> --json --instances` as a subprocess.

    Failures are loud: a non-zero exit, a timeout, or a missing executable
    raises FetchError rather than yielding an empty snapshot.
    """

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS
    ):
        """Initialize the client.

        Args:
            command: Executable prefix (defaults to `npx ccusage`)
            timeout: Seconds before an invocation is abandoned

        Raises:
            ValueError: If command is empty or timeout is not positive
        """
        command = list(command) if command is not None else list(DEFAULT_COMMAND)
        if not command:
            raise ValueError("command is required and cannot be empty")
        if timeout <= 0:
            raise ValueError("timeout must be > 0")
        self.command = command
        self.timeout = timeout

    def build_args(self, view: View) -> List[str]:
        args = self.command + [view.value, "--json", "--instances"]
        if view == View.BLOCKS:
            args.append("--breakdown")
        return args

    def fetch(self, view: View) -> RawSnapshot:
        """Fetch one view.

        Raises:
            FetchError: If the command fails, times out, or cannot start
            MalformedSnapshotError: If its output is not JSON
        """
        args = self.build_args(view)
        logger.info("Fetching %s data: %s", view.value, " ".join(args))
        try:
            completed = subprocess.run(
                args,
                capture_output=True,
                text=True,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise FetchError(f"{view.value} fetch timed out after {self.timeout:.0f}s") from e
        except OSError as e:
            raise FetchError(f"{view.value} fetch could not start: {e}") from e

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip()
            raise FetchError(
                f"{view.value} fetch failed with exit code {completed.returncode}: {stderr[:500]}"
            )

        text = completed.stdout or ""
        return RawSnapshot(view=view, text=text, payload=extract_json(text))
