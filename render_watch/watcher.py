"""File system watcher for Render Watch.

Uses the watchdog library to monitor the render output folder for new
or modified frame files, then holds them until their size has stopped
changing before handing them on.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from watchdog.events import (
    FileCreatedEvent,
    FileModifiedEvent,
    FileMovedEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer

from render_watch.detector import FrameDetector

logger = logging.getLogger(__name__)


class _StabilityTracker:
    """Tracks files until they have been stable (unchanged) for a given duration."""

    def __init__(
        self,
        stable_seconds: float,
        on_stable: Callable[[Path], None],
        poll_seconds: float = 0.1,
    ):
        self._stable_seconds = stable_seconds
        self._poll_seconds = poll_seconds
        self._on_stable = on_stable
        # file_path -> (last_change_time, last_size)
        self._pending = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._poll, daemon=True, name="StabilityTracker"
        )

    @property
    def stable_seconds(self) -> float:
        return self._stable_seconds

    def start(self) -> None:
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._poll, daemon=True, name="StabilityTracker"
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()

    def track(self, path: Path) -> None:
        """Register or update a file for stability tracking."""
        if not path.is_file():
            return
        try:
            stat = path.stat()
        except OSError:
            return
        with self._lock:
            self._pending[path] = (time.monotonic(), stat.st_size)
        logger.debug("Tracking %s (size=%d)", path, stat.st_size)

    @property
    def pending_files(self) -> list[str]:
        with self._lock:
            return [str(p) for p in self._pending]

    def check(self) -> list[Path]:
        """Run one stability pass and return the files that just settled."""
        stable = []  # type: list[Path]
        now = time.monotonic()
        with self._lock:
            for path, (last_seen, last_size) in list(self._pending.items()):
                try:
                    current_size = path.stat().st_size
                except OSError:
                    # File vanished, drop it
                    del self._pending[path]
                    continue
                if current_size != last_size:
                    # Still being written
                    self._pending[path] = (now, current_size)
                elif now - last_seen >= self._stable_seconds:
                    stable.append(path)
            for p in stable:
                del self._pending[p]

        for p in stable:
            logger.debug("File stable: %s", p)
            try:
                self._on_stable(p)
            except Exception:
                logger.exception("Error in on_stable callback for %s", p)
        return stable

    def _poll(self) -> None:
        """Periodically check if tracked files have stabilised."""
        while not self._stop.is_set():
            self.check()
            self._stop.wait(timeout=self._poll_seconds)


class FrameFileHandler(FileSystemEventHandler):
    """Watchdog handler that feeds candidate frame files into the stability tracker."""

    def __init__(self, tracker: _StabilityTracker, detector: FrameDetector):
        super().__init__()
        self._tracker = tracker
        self._detector = detector

    def _should_track(self, path: str) -> bool:
        name = os.path.basename(path)
        if not self._detector.is_candidate(name):
            logger.debug("Ignoring %s (not a frame candidate)", name)
            return False
        return True

    def on_created(self, event: FileCreatedEvent) -> None:  # type: ignore[override]
        """Handle a new file creation event."""
        if event.is_directory:
            return
        if self._should_track(event.src_path):
            self._tracker.track(Path(event.src_path))

    def on_modified(self, event: FileModifiedEvent) -> None:  # type: ignore[override]
        """Handle a file modification event."""
        if event.is_directory:
            return
        if self._should_track(event.src_path):
            self._tracker.track(Path(event.src_path))

    def on_moved(self, event: FileMovedEvent) -> None:  # type: ignore[override]
        """Renderers often write a temp file and rename it into place."""
        if event.is_directory:
            return
        if self._should_track(event.dest_path):
            self._tracker.track(Path(event.dest_path))


class FrameWatcher:
    """High-level watcher that combines watchdog + stability tracking.

    ``on_frame_ready`` receives each frame file once it has stopped
    growing for ``stable_seconds``. ``on_ready`` fires once the
    observer is scheduled, which is the point where the caller should
    take its initial inventory of the folder.

    Usage:
        watcher = FrameWatcher(folder, detector, on_frame_ready, on_ready=scan)
        watcher.start()
        ...
        watcher.stop()
    """

    def __init__(
        self,
        folder: str | Path,
        detector: FrameDetector,
        on_frame_ready: Callable[[Path], None],
        on_ready: Callable[[], None] | None = None,
        stable_seconds: float = 2.0,
        poll_seconds: float = 0.1,
    ):
        self.folder = str(folder)
        self._on_ready = on_ready
        self._tracker = _StabilityTracker(stable_seconds, on_frame_ready, poll_seconds)
        self._handler = FrameFileHandler(self._tracker, detector)
        self._observer: Any | None = None

    # ---- lifecycle ----

    def start(self) -> None:
        """Start watching the folder and signal that it is ready."""
        if not os.path.isdir(self.folder):
            logger.error("Watch folder does not exist: %s", self.folder)
            raise FileNotFoundError(f"Watch folder does not exist: {self.folder}")

        observer = Observer()
        observer.schedule(self._handler, self.folder, recursive=False)
        observer.start()
        self._observer = observer
        self._tracker.start()
        logger.info(
            "Watching '%s' (stable=%.1fs)",
            self.folder,
            self._tracker.stable_seconds,
        )

        if self._on_ready is not None:
            try:
                self._on_ready()
            except Exception:
                logger.exception("Error in on_ready callback for %s", self.folder)

    def stop(self) -> None:
        """Stop watching and release resources."""
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=5)
            self._observer = None
        self._tracker.stop()
        pending = self._tracker.pending_files
        if pending:
            logger.info(
                "Watcher for '%s' stopped with %d file(s) still settling: %s",
                self.folder,
                len(pending),
                ", ".join(os.path.basename(p) for p in pending),
            )
        logger.info("Watcher stopped for '%s'.", self.folder)

    @property
    def is_running(self) -> bool:
        """Return whether the watcher is currently active."""
        return self._observer is not None and self._observer.is_alive()
