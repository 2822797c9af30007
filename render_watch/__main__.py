"""Entry point for Render Watch.

Usage:
    python -m render_watch                     Watch the configured folder
    python -m render_watch --dir PATH          Watch PATH instead
    python -m render_watch --total 240         Default total frame count
    python -m render_watch --port 8080         Listen on another port
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence
from pathlib import Path

from render_watch import __app_name__, __version__


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="render-watch",
        description="Watch a render output folder and stream progress to viewers.",
    )
    p.add_argument("--dir", dest="directory", help="Folder the renderer writes frames into.")
    p.add_argument("--total", type=int, help="Default total frame count.")
    p.add_argument("--host", help="Bind host.")
    p.add_argument("--port", type=int, help="Bind port (the PORT env var also works).")
    p.add_argument("--config", type=Path, help="Config file (default: platform config dir).")
    p.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR.")
    p.add_argument(
        "--no-save",
        action="store_true",
        help="Do not write the config file back to disk.",
    )
    p.add_argument("--version", action="version", version=f"{__app_name__} {__version__}")
    return p


def main(argv: Sequence[str] | None = None) -> int:
    """Parse arguments, apply them over the stored config and serve."""
    from render_watch.config import Config
    from render_watch.service import run, setup_logging

    args = build_parser().parse_args(argv)
    config = Config(args.config, persist=not args.no_save)
    if args.directory:
        config.watch_directory = args.directory
    if args.total is not None:
        config.default_total_frames = args.total
    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.log_level:
        config.log_level = args.log_level

    setup_logging(config)
    run(config)
    return 0


if __name__ == "__main__":
    sys.exit(main())
