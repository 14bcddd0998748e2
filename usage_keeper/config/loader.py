"""
Configuration management and loading.

Run settings (file locations, retention, upstream invocation) come from an
optional YAML file; usage limits and thresholds come from environment
variables with documented defaults.
"""

import logging
import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from usage_keeper.storage.models import View

logger = logging.getLogger(__name__)

DEFAULT_VIEWS = (View.DAILY, View.SESSION, View.BLOCKS)

# Environment variable -> (field, default, type)
LIMIT_ENV_VARS = {
    "LLM_DAILY_LIMIT": ("daily_cost", 30.0, float),
    "LLM_DAILY_TOKEN_LIMIT": ("daily_tokens", 500000, int),
    "LLM_WEEKLY_LIMIT": ("weekly_cost", 120.0, float),
    "LLM_BLOCK_LIMIT_TOKENS": ("block_tokens", 88000, int),
    "LLM_WARN_THRESHOLD": ("warn_threshold", 0.75, float),
    "LLM_CRITICAL_THRESHOLD": ("critical_threshold", 0.90, float),
}


@dataclass(frozen=True)
class UsageLimits:
    """Limits and warn/critical thresholds for usage analytics."""
    daily_cost: float = 30.0
    daily_tokens: int = 500000
    weekly_cost: float = 120.0
    block_tokens: int = 88000
    warn_threshold: float = 0.75
    critical_threshold: float = 0.90

    def __post_init__(self):
        """Validate limits are positive and thresholds are ordered fractions."""
        for name in ("daily_cost", "daily_tokens", "weekly_cost", "block_tokens"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0")
        if not 0 < self.warn_threshold <= self.critical_threshold:
            raise ValueError("thresholds must satisfy 0 < warn <= critical")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "UsageLimits":
        """Read limits from environment variables.

        An absent, unparseable or out-of-range variable falls back to its
        default; it is never an error.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for var, (name, default, cast) in LIMIT_ENV_VARS.items():
            raw = environ.get(var)
            if raw is None or not raw.strip():
                values[name] = default
                continue
            try:
                number = float(raw)
                if not math.isfinite(number):
                    raise ValueError(raw)
                value = cast(number)
            except ValueError:
                logger.warning("Ignoring unparseable %s=%r, using default %s", var, raw, default)
                value = default
            if value <= 0:
                logger.warning("Ignoring non-positive %s=%r, using default %s", var, raw, default)
                value = default
            values[name] = value
        try:
            return cls(**values)
        except ValueError as e:
            logger.warning("Invalid threshold combination (%s), using default thresholds", e)
            values["warn_threshold"] = cls.warn_threshold
            values["critical_threshold"] = cls.critical_threshold
            return cls(**values)


@dataclass(frozen=True)
class UpstreamConfig:
    """How to invoke the upstream accounting CLI."""
    command: Tuple[str, ...] = ("npx", "ccusage")
    timeout_seconds: float = 120.0
    views: Tuple[View, ...] = DEFAULT_VIEWS

    def __post_init__(self):
        """Validate upstream values."""
        if not self.command:
            raise ValueError("upstream command cannot be empty")
        if self.timeout_seconds <= 0:
            raise ValueError("upstream timeout_seconds must be > 0")
        if not self.views:
            raise ValueError("upstream views cannot be empty")


@dataclass(frozen=True)
class Settings:
    """Complete run configuration."""
    store_path: Path = Path("data/usage_history.db")
    export_dir: Path = Path("data")
    archive_dir: Path = Path("data/archive")
    lock_path: Path = Path("data/refresh.lock")
    log_dir: Path = Path("logs")
    archive_retention: int = 10
    store_timeout_seconds: float = 5.0
    upstream: UpstreamConfig = field(default_factory=UpstreamConfig)

    def __post_init__(self):
        """Validate numeric settings."""
        if self.archive_retention < 1:
            raise ValueError("archive retention must be >= 1")
        if self.store_timeout_seconds <= 0:
            raise ValueError("store timeout_seconds must be > 0")


_ALLOWED = {
    "paths": {"store", "export_dir", "archive_dir", "lock_file", "log_dir"},
    "archive": {"retention"},
    "store": {"timeout_seconds"},
    "upstream": {"command", "timeout_seconds", "views"},
}


def _section(raw: Dict, name: str) -> Dict:
    data = raw.get(name, {}) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")
    unknown = set(data.keys()) - _ALLOWED[name]
    if unknown:
        raise ValueError(f"Unknown {name} keys: {unknown}")
    return data


def _positive_number(value, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return float(value)


def _parse_upstream(data: Dict) -> UpstreamConfig:
    defaults = UpstreamConfig()
    command = data.get("command", list(defaults.command))
    if isinstance(command, str):
        command = command.split()
    if not isinstance(command, list) or not all(isinstance(part, str) for part in command):
        raise ValueError("'upstream.command' must be a string or list of strings")

    timeout = defaults.timeout_seconds
    if "timeout_seconds" in data:
        timeout = _positive_number(data["timeout_seconds"], "upstream.timeout_seconds")

    views = defaults.views
    if "views" in data:
        raw_views = data["views"]
        if not isinstance(raw_views, list):
            raise ValueError("'upstream.views' must be a list")
        try:
            views = tuple(View(str(v).lower()) for v in raw_views)
        except ValueError:
            valid = [view.value for view in View]
            raise ValueError(f"'upstream.views' entries must be one of: {valid}")

    return UpstreamConfig(command=tuple(command), timeout_seconds=timeout, views=views)


def load_settings(path: Optional[str] = None) -> Settings:
    """Load and validate run settings from a YAML file.

    Without a path, returns the defaults. Strict validation rejects unknown
    keys so a typo never silently falls back to a default location.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated Settings object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    if path is None:
        return Settings()

    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Settings file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        return Settings()
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - set(_ALLOWED)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    defaults = Settings()
    paths = _section(raw_config, "paths")
    archive = _section(raw_config, "archive")
    store = _section(raw_config, "store")
    upstream = _section(raw_config, "upstream")

    retention = archive.get("retention", defaults.archive_retention)
    if isinstance(retention, bool) or not isinstance(retention, int) or retention < 1:
        raise ValueError("'archive.retention' must be an integer >= 1")

    store_timeout = defaults.store_timeout_seconds
    if "timeout_seconds" in store:
        store_timeout = _positive_number(store["timeout_seconds"], "store.timeout_seconds")

    return Settings(
        store_path=Path(paths.get("store", defaults.store_path)),
        export_dir=Path(paths.get("export_dir", defaults.export_dir)),
        archive_dir=Path(paths.get("archive_dir", defaults.archive_dir)),
        lock_path=Path(paths.get("lock_file", defaults.lock_path)),
        log_dir=Path(paths.get("log_dir", defaults.log_dir)),
        archive_retention=retention,
        store_timeout_seconds=store_timeout,
        upstream=_parse_upstream(upstream),
    )
