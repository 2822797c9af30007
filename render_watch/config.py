"""Configuration management for Render Watch.

Stores and retrieves settings from a JSON config file in the
platform-appropriate application data directory.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from render_watch.platform_utils import (
    get_config_dir as _platform_config_dir,
)
from render_watch.platform_utils import (
    get_log_path as _platform_log_path,
)

logger = logging.getLogger(__name__)

# Frame number extraction strategies
STRATEGY_FIRST = "first"  # first contiguous digit run in the filename
STRATEGY_LAST = "last"    # last contiguous digit run in the filename
FRAME_NUMBER_STRATEGIES = (STRATEGY_FIRST, STRATEGY_LAST)

DEFAULT_EXTENSIONS = ["png", "jpg", "jpeg", "tif", "tiff", "exr", "hdr", "dpx"]

DEFAULT_CONFIG: dict[str, Any] = {
    "watch_directory": "",  # blank = ./render_output under the working directory
    "default_total_frames": 120,
    "file_extensions": list(DEFAULT_EXTENSIONS),
    "exclude_patterns": [".*"],  # Glob patterns to exclude (hidden files by default)
    "frame_number_strategy": STRATEGY_FIRST,
    # ---- stability / reconciliation ----
    "stable_time_seconds": 2.0,  # quiet period before a file counts as written
    "stability_poll_seconds": 0.1,
    "reconcile_interval_seconds": 5.0,
    "reconcile_epsilon_seconds": 0.1,
    # ---- server ----
    "host": "0.0.0.0",
    "port": 3000,
    "client_queue_size": 32,  # per-viewer backlog before old snapshots are dropped
    # ---- logging ----
    "log_level": "INFO",
    "max_log_size_mb": 10,  # rotate log when it exceeds this size
    "log_backup_count": 3,  # number of rotated log files to keep
}


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    return get_config_dir() / "config.json"


def get_log_path() -> Path:
    """Return the path to the log file."""
    return _platform_log_path()


class Config:
    """Configuration manager backed by a JSON file."""

    def __init__(self, path: Path | None = None, persist: bool = True):
        """Load config from *path*, falling back to the platform default.

        With ``persist=False`` the file is never written, which is what
        tests and one-off command line runs want.
        """
        self._path = path or get_config_path()
        self._persist = persist
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        self.load()

    # ---- persistence ----

    def load(self) -> None:
        """Load configuration from disk, applying defaults for missing keys."""
        if self._path.exists():
            try:
                with open(self._path, encoding="utf-8") as fh:
                    stored = json.load(fh)
                # Merge stored values over defaults so new keys get defaults
                self._data = {**DEFAULT_CONFIG, **stored}
                logger.info("Configuration loaded from %s", self._path)
            except (json.JSONDecodeError, OSError) as exc:
                logger.warning("Could not read config (%s); using defaults.", exc)
                self._data = dict(DEFAULT_CONFIG)
        else:
            self._data = dict(DEFAULT_CONFIG)
            if self._persist:
                self.save()
                logger.info("Created default configuration at %s", self._path)

    def save(self) -> None:
        """Persist the current configuration to disk."""
        if not self._persist:
            return
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(self._path, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, indent=2)
            logger.info("Configuration saved.")
        except OSError as exc:
            logger.error("Failed to save configuration: %s", exc)

    # ---- watch target ----

    @property
    def watch_directory(self) -> str:
        """Return the directory watched at startup."""
        value = self._data.get("watch_directory") or ""
        return value or str(Path.cwd() / "render_output")

    @watch_directory.setter
    def watch_directory(self, value: str) -> None:
        self._data["watch_directory"] = value.strip()

    @property
    def default_total_frames(self) -> int:
        """Return the total frame count used when no manual total is set."""
        return int(self._data.get("default_total_frames", 120))

    @default_total_frames.setter
    def default_total_frames(self, value: int) -> None:
        """Set the default total (minimum 1)."""
        self._data["default_total_frames"] = max(1, int(value))

    # ---- detection ----

    @property
    def file_extensions(self) -> list[str]:
        """Return the allowlist of frame file extensions."""
        return self._data.get("file_extensions") or list(DEFAULT_EXTENSIONS)

    @file_extensions.setter
    def file_extensions(self, value: list[str]) -> None:
        """Set allowed file extensions, normalising to lowercase."""
        self._data["file_extensions"] = [
            ext.lower().strip().lstrip(".") for ext in value if ext.strip()
        ]

    @property
    def exclude_patterns(self) -> list[str]:
        """Return glob patterns used to skip files."""
        return self._data.get("exclude_patterns", [])

    @exclude_patterns.setter
    def exclude_patterns(self, value: list[str]) -> None:
        self._data["exclude_patterns"] = [p.strip() for p in value if p.strip()]

    @property
    def frame_number_strategy(self) -> str:
        """Return the digit-run extraction strategy; unknown values read as first."""
        value = str(self._data.get("frame_number_strategy") or STRATEGY_FIRST).strip().lower()
        if value not in FRAME_NUMBER_STRATEGIES:
            logger.warning("Unknown frame_number_strategy %r; using %r", value, STRATEGY_FIRST)
            return STRATEGY_FIRST
        return value

    @frame_number_strategy.setter
    def frame_number_strategy(self, value: str) -> None:
        """Set the digit-run extraction strategy."""
        value = value.strip().lower()
        if value not in FRAME_NUMBER_STRATEGIES:
            value = STRATEGY_FIRST
        self._data["frame_number_strategy"] = value

    # ---- stability / reconciliation ----

    @property
    def stable_time(self) -> float:
        """Return the stability quiet period in seconds."""
        return float(self._data.get("stable_time_seconds", 2.0))

    @stable_time.setter
    def stable_time(self, value: float) -> None:
        """Set the stability quiet period (minimum 0 s)."""
        self._data["stable_time_seconds"] = max(0.0, float(value))

    @property
    def stability_poll(self) -> float:
        """Return how often pending files are re-checked, in seconds."""
        return float(self._data.get("stability_poll_seconds", 0.1))

    @stability_poll.setter
    def stability_poll(self, value: float) -> None:
        self._data["stability_poll_seconds"] = max(0.01, float(value))

    @property
    def reconcile_interval(self) -> float:
        """Return the periodic rescan interval in seconds."""
        return float(self._data.get("reconcile_interval_seconds", 5.0))

    @reconcile_interval.setter
    def reconcile_interval(self, value: float) -> None:
        """Set the periodic rescan interval (minimum 0.5 s)."""
        self._data["reconcile_interval_seconds"] = max(0.5, float(value))

    @property
    def reconcile_epsilon(self) -> float:
        """Return the frame-time change that triggers a rescan broadcast."""
        return float(self._data.get("reconcile_epsilon_seconds", 0.1))

    @reconcile_epsilon.setter
    def reconcile_epsilon(self, value: float) -> None:
        self._data["reconcile_epsilon_seconds"] = max(0.0, float(value))

    # ---- server ----

    @property
    def host(self) -> str:
        """Return the bind address."""
        return self._data.get("host", "0.0.0.0")

    @host.setter
    def host(self, value: str) -> None:
        self._data["host"] = value.strip() or "0.0.0.0"

    @property
    def port(self) -> int:
        """Return the bind port; the ``PORT`` environment variable wins."""
        env_port = os.environ.get("PORT")
        if env_port and env_port.isdigit():
            return int(env_port)
        return int(self._data.get("port", 3000))

    @port.setter
    def port(self, value: int) -> None:
        self._data["port"] = int(value)

    @property
    def client_queue_size(self) -> int:
        """Return the per-viewer outbound queue size."""
        return int(self._data.get("client_queue_size", 32))

    @client_queue_size.setter
    def client_queue_size(self, value: int) -> None:
        """Set the per-viewer outbound queue size (minimum 1)."""
        self._data["client_queue_size"] = max(1, int(value))

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return self._data.get("log_level", "INFO")

    @log_level.setter
    def log_level(self, value: str) -> None:
        """Set the logging level name."""
        self._data["log_level"] = value

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return int(self._data.get("max_log_size_mb", 10))

    @max_log_size_mb.setter
    def max_log_size_mb(self, value: int) -> None:
        """Set the maximum log file size in MB (minimum 1)."""
        self._data["max_log_size_mb"] = max(1, int(value))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return int(self._data.get("log_backup_count", 3))

    @log_backup_count.setter
    def log_backup_count(self, value: int) -> None:
        """Set the number of rotated log backups to keep."""
        self._data["log_backup_count"] = max(0, int(value))
