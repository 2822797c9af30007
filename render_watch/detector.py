"""Frame sequence detection for Render Watch.

Decides which files in the watch folder are frames of the render,
pulls the frame number out of the filename and stats valid frames for
their creation time. Both the directory scan and the single-file path
used for watcher events go through :meth:`FrameDetector.classify`, so
they always agree on what counts.
"""

from __future__ import annotations

import fnmatch
import logging
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from render_watch.config import DEFAULT_EXTENSIONS, STRATEGY_FIRST, STRATEGY_LAST
from render_watch.platform_utils import creation_time

logger = logging.getLogger(__name__)

_DIGIT_RUN = re.compile(r"[0-9]+")


class RejectReason(str, Enum):
    """Why a file is not part of the frame sequence."""

    DISALLOWED_EXTENSION = "disallowed_extension"
    EXCLUDED = "excluded"
    NO_FRAME_NUMBER = "no_frame_number"


@dataclass(frozen=True)
class FrameRecord:
    """One valid frame file."""

    filename: str
    frame_number: int
    created: float = 0.0

    @property
    def sort_key(self) -> tuple[float, str]:
        # Creation time orders frames; the filename breaks ties.
        return (self.created, self.filename)


@dataclass(frozen=True)
class Rejection:
    filename: str
    reason: RejectReason


@dataclass
class ScanResult:
    """Result of one pass over the watch directory.

    ``records`` is sorted oldest first by :attr:`FrameRecord.sort_key`.
    """

    directory: Path
    records: list[FrameRecord] = field(default_factory=list)
    rejections: list[Rejection] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.records)

    @property
    def first(self) -> FrameRecord | None:
        return self.records[0] if self.records else None

    @property
    def last(self) -> FrameRecord | None:
        return self.records[-1] if self.records else None

    @property
    def previous(self) -> FrameRecord | None:
        return self.records[-2] if len(self.records) > 1 else None


class FrameDetector:
    """Classifies filenames and scans directories for frame files."""

    def __init__(
        self,
        extensions: list[str] | None = None,
        exclude_patterns: list[str] | None = None,
        strategy: str = STRATEGY_FIRST,
    ):
        if strategy not in (STRATEGY_FIRST, STRATEGY_LAST):
            raise ValueError(f"Unknown frame number strategy: {strategy!r}")
        self._extensions = {
            ext.lower().lstrip(".") for ext in (extensions or DEFAULT_EXTENSIONS)
        }
        self._exclude_patterns = exclude_patterns or []
        self._strategy = strategy

    # ---- filename rules ----

    def has_allowed_extension(self, filename: str) -> bool:
        ext = os.path.splitext(filename)[1].lower().lstrip(".")
        return ext in self._extensions

    def is_excluded(self, filename: str) -> bool:
        name = filename.lower()
        return any(fnmatch.fnmatch(name, p.lower()) for p in self._exclude_patterns)

    def is_candidate(self, filename: str) -> bool:
        """Return True when a file is worth watching for stability."""
        return self.has_allowed_extension(filename) and not self.is_excluded(filename)

    def frame_number(self, filename: str) -> int | None:
        """Return the frame number encoded in *filename*, or None."""
        stem = os.path.splitext(filename)[0]
        runs = _DIGIT_RUN.findall(stem)
        if not runs:
            return None
        run = runs[0] if self._strategy == STRATEGY_FIRST else runs[-1]
        return int(run, 10)

    def classify(self, filename: str) -> FrameRecord | Rejection:
        """Validate *filename* without touching the filesystem."""
        if not self.has_allowed_extension(filename):
            return Rejection(filename, RejectReason.DISALLOWED_EXTENSION)
        if self.is_excluded(filename):
            return Rejection(filename, RejectReason.EXCLUDED)
        number = self.frame_number(filename)
        if number is None:
            return Rejection(filename, RejectReason.NO_FRAME_NUMBER)
        return FrameRecord(filename, number)

    def detect(self, path: Path) -> FrameRecord | Rejection:
        """Classify *path* and stat it for its creation time.

        Raises ``OSError`` if the file cannot be stat'ed.
        """
        result = self.classify(path.name)
        if isinstance(result, Rejection):
            return result
        created = creation_time(path.stat())
        return FrameRecord(result.filename, result.frame_number, created)

    # ---- directory scans ----

    def scan(self, directory: Path, log_rejections: bool = True) -> ScanResult:
        """List *directory* once and return every valid frame in it.

        Raises ``OSError`` when the directory itself cannot be read.
        A file that disappears or cannot be stat'ed mid-scan is skipped.
        """
        result = ScanResult(directory)
        with os.scandir(directory) as entries:
            for entry in entries:
                try:
                    if not entry.is_file():
                        continue
                except OSError:
                    continue
                outcome = self.classify(entry.name)
                if isinstance(outcome, Rejection):
                    result.rejections.append(outcome)
                    self._log_rejection(outcome, log_rejections)
                    continue
                try:
                    created = creation_time(entry.stat())
                except OSError as exc:
                    logger.warning("Could not stat %s: %s", entry.name, exc)
                    continue
                result.records.append(
                    FrameRecord(outcome.filename, outcome.frame_number, created)
                )

        result.records.sort(key=lambda r: r.sort_key)
        logger.debug(
            "Scanned %s: %d valid frame file(s), %d rejected",
            directory,
            result.count,
            len(result.rejections),
        )
        return result

    def count(self, directory: Path) -> int:
        """Return the authoritative number of valid frame files."""
        return self.scan(directory, log_rejections=False).count

    @staticmethod
    def _log_rejection(rejection: Rejection, loud: bool) -> None:
        if rejection.reason is RejectReason.NO_FRAME_NUMBER and loud:
            logger.warning(
                "File doesn't appear to be part of a sequence: %s",
                rejection.filename,
            )
        else:
            logger.debug("Ignoring %s (%s)", rejection.filename, rejection.reason.value)
