"""
Logging setup for ingestion runs.

Each run logs to the console, to a human-readable run log, and to a separate
error log whose records are JSON lines for the scheduler's alerting.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Union

RUN_LOG_NAME = "refresh.log"
ERROR_LOG_NAME = "errors.log"

_HANDLER_MARKER = "_usage_keeper_handler"


class JSONFormatter(logging.Formatter):
    """
    Formatter that outputs one JSON object per LogRecord.
    """
    def format(self, record: logging.LogRecord) -> str:
        log_record: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "name": record.name,
            "message": record.getMessage(),
        }

        # Structured fields passed via extra={"data": ...}
        if hasattr(record, "data"):
            log_record["data"] = record.data  # type: ignore[attr-defined]

        if record.exc_info:
            log_record["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_record, default=str)


def setup_run_logging(log_dir: Union[str, Path], level: int = logging.INFO) -> Path:
    """Configure the package logger for one run.

    Safe to call repeatedly: handlers installed by a previous call are
    replaced rather than duplicated.

    Args:
        log_dir: Directory for the run log and error log
        level: Minimum level for console and run log

    Returns:
        Path of the run log file
    """
    logs_dir = Path(log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("usage_keeper")
    logger.setLevel(level)
    for handler in list(logger.handlers):
        if getattr(handler, _HANDLER_MARKER, False):
            logger.removeHandler(handler)
            handler.close()

    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(formatter)

    run_log_path = logs_dir / RUN_LOG_NAME
    file_handler = logging.FileHandler(run_log_path, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)

    error_handler = logging.FileHandler(logs_dir / ERROR_LOG_NAME, encoding="utf-8")
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(JSONFormatter())

    for handler in (stream_handler, file_handler, error_handler):
        setattr(handler, _HANDLER_MARKER, True)
        logger.addHandler(handler)

    return run_log_path
