"""
Headless runner for Render Watch.

Sets up logging, builds the FastAPI app and serves it with uvicorn
until interrupted:

    python -m render_watch --dir ./render_output --port 3000
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path

from render_watch.config import Config, get_log_path

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(config: Config, log_path: Path | None = None) -> None:
    """Configure rotating file log and stderr handler."""
    log_path = log_path or get_log_path()
    level = getattr(logging, config.log_level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    fmt = logging.Formatter(LOG_FORMAT)

    # Rotating file handler
    max_bytes = config.max_log_size_mb * 1024 * 1024
    try:
        fh = logging.handlers.RotatingFileHandler(
            str(log_path),
            maxBytes=max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        fh = None
        print(f"Could not open log file {log_path}: {exc}", file=sys.stderr)
    if fh is not None:
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root_logger.addHandler(fh)

    # Stderr handler
    sh = logging.StreamHandler(sys.stderr)
    sh.setLevel(level)
    sh.setFormatter(fmt)
    root_logger.addHandler(sh)


def run(config: Config) -> None:
    """Serve Render Watch in the foreground until SIGINT/SIGTERM."""
    import uvicorn

    from render_watch.server import create_app

    app = create_app(config)
    logger.info("Serving on http://%s:%d", config.host, config.port)
    # uvicorn installs its own SIGINT/SIGTERM handling and runs the
    # app lifespan, which starts and stops the progress store.
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        log_config=None,
    )
    logger.info("Render Watch stopped.")
