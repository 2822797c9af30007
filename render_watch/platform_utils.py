"""
Cross-platform utilities for Render Watch.

Centralises all OS-detection logic so every other module can import
a single canonical set of helpers rather than scattering ``sys.platform``
checks throughout the codebase.
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

# ---- platform flags ----------------------------------------------------

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"
IS_LINUX: bool = sys.platform.startswith("linux")

_APP_DIR_NAME = "RenderWatch"

# ---- directories -------------------------------------------------------


def get_config_dir() -> Path:
    """
    Return the application config directory, created if needed.

    - Windows : ``%APPDATA%\\RenderWatch``
    - macOS   : ``~/Library/Application Support/RenderWatch``
    - Linux   : ``$XDG_CONFIG_HOME/RenderWatch`` (default ``~/.config``)
    """
    if IS_WINDOWS:
        base = os.environ.get("APPDATA", str(Path.home()))
    elif IS_MACOS:
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))

    config_dir = Path(base) / _APP_DIR_NAME
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_log_path() -> Path:
    """Return the path to the log file (inside the config directory)."""
    return get_config_dir() / "render_watch.log"


def platform_name() -> str:
    """Return the short platform identifier reported to viewers.

    Mirrors the values render tools usually report (``win32``,
    ``darwin``, ``linux``).
    """
    if IS_LINUX:
        return "linux"
    return sys.platform


# ---- file metadata -----------------------------------------------------


def creation_time(st: os.stat_result) -> float:
    """Return the creation time of a stat result in epoch seconds.

    ``st_birthtime`` exists on macOS, BSD and recent Windows builds.
    Elsewhere the modification time is the best available stand-in.
    """
    birth = getattr(st, "st_birthtime", None)
    if birth:
        return float(birth)
    return float(st.st_mtime)
