"""
Authoritative progress state for Render Watch.

A single :class:`ProgressStore` owns the watch directory and every
counter derived from it. Watcher events, the periodic rescan, viewer
control messages and admin requests all mutate state through the
store, one at a time under its lock. Each mutation ends by building one
immutable :class:`ProgressSnapshot` and handing it to the registered
listeners while the lock is still held, so listeners receive snapshots
in exactly the order the mutations happened.

Frames are ordered by ``(creation time, filename)``: the oldest valid
file is the first frame, the newest the last frame and the one before
it the previous frame. The filesystem is always the source of truth;
watcher events only tell the store when to look again.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from render_watch.clock import format_duration
from render_watch.config import Config
from render_watch.detector import FrameDetector, FrameRecord, Rejection, RejectReason, ScanResult
from render_watch.errors import ValidationError, WatchTargetError
from render_watch.watcher import FrameWatcher

logger = logging.getLogger(__name__)

MESSAGE_UPDATE = "update"
MESSAGE_INITIAL_STATE = "initialState"


def parse_total_frames(value: Any) -> int:
    """Return *value* as a positive frame count or raise ValidationError.

    Accepts ints and strings holding an integer. Booleans, fractional
    numbers and anything below 1 are rejected.
    """
    if isinstance(value, bool):
        raise ValidationError("Invalid total frames value")
    if isinstance(value, int):
        total = value
    elif isinstance(value, float) and value.is_integer():
        total = int(value)
    elif isinstance(value, str):
        try:
            total = int(value.strip(), 10)
        except ValueError:
            raise ValidationError("Invalid total frames value") from None
    else:
        raise ValidationError("Invalid total frames value")
    if total < 1:
        raise ValidationError("Invalid total frames value")
    return total


def _ms(timestamp: float | None) -> int:
    # 0 is the wire sentinel for "unknown"
    if timestamp is None:
        return 0
    return int(round(timestamp * 1000))


@dataclass(frozen=True)
class ProgressStats:
    """Statistics derived from a :class:`ProgressState`; None means unknown."""

    last_frame_time: float | None = None
    avg_frame_time: float | None = None
    eta: float | None = None


@dataclass
class ProgressState:
    """Mutable progress record for one watch target."""

    watch_directory: Path
    default_total_frames: int
    completed_frames: int = 0
    manual_total: int | None = None
    first_timestamp: float | None = None
    last_timestamp: float | None = None
    previous_timestamp: float | None = None

    @property
    def effective_total(self) -> int:
        if self.manual_total is not None:
            return self.manual_total
        return self.default_total_frames

    @property
    def percentage(self) -> float:
        # Deliberately unclamped: stray extra files can push this past 100.
        return self.completed_frames / self.effective_total * 100

    def stats(self) -> ProgressStats:
        last_frame_time = None
        if self.last_timestamp is not None and self.previous_timestamp is not None:
            last_frame_time = self.last_timestamp - self.previous_timestamp

        avg_frame_time = last_frame_time
        if (
            self.completed_frames > 1
            and self.first_timestamp is not None
            and self.last_timestamp is not None
        ):
            avg_frame_time = (self.last_timestamp - self.first_timestamp) / (
                self.completed_frames - 1
            )

        eta = None
        if (
            avg_frame_time is not None
            and avg_frame_time > 0
            and self.completed_frames < self.effective_total
        ):
            eta = avg_frame_time * (self.effective_total - self.completed_frames)

        return ProgressStats(last_frame_time, avg_frame_time, eta)


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable view of progress sent to viewers.

    Timestamps are epoch seconds here and epoch milliseconds on the wire.
    """

    message_type: str
    watch_directory: str
    completed_frames: int
    total_frames: int
    percentage: float
    first_timestamp: float | None
    last_timestamp: float | None
    previous_timestamp: float | None
    server_timestamp: float
    last_frame_time: float | None
    avg_frame_time: float | None
    eta: float | None

    @classmethod
    def capture(
        cls, state: ProgressState, message_type: str, server_timestamp: float
    ) -> "ProgressSnapshot":
        stats = state.stats()
        return cls(
            message_type=message_type,
            watch_directory=str(state.watch_directory),
            completed_frames=state.completed_frames,
            total_frames=state.effective_total,
            percentage=state.percentage,
            first_timestamp=state.first_timestamp,
            last_timestamp=state.last_timestamp,
            previous_timestamp=state.previous_timestamp,
            server_timestamp=server_timestamp,
            last_frame_time=stats.last_frame_time,
            avg_frame_time=stats.avg_frame_time,
            eta=stats.eta,
        )

    def to_message(self) -> dict[str, Any]:
        """Return the flat JSON-ready wire form."""
        return {
            "type": self.message_type,
            "completedFrames": self.completed_frames,
            "totalFrames": self.total_frames,
            "percentage": self.percentage,
            "firstFrameTimestamp": _ms(self.first_timestamp),
            "lastFrameTimestamp": _ms(self.last_timestamp),
            "previousFrameTimestamp": _ms(self.previous_timestamp),
            "serverTimestamp": _ms(self.server_timestamp),
            "lastFrameTime": self.last_frame_time,
            "avgFrameTime": self.avg_frame_time,
            "eta": self.eta,
            "watchDirectory": self.watch_directory,
        }


Listener = Callable[[ProgressSnapshot], None]


class ProgressStore:
    """Single owner of the watch target and its progress state.

    Usage:
        store = ProgressStore(config)
        store.add_listener(hub.publish)
        store.start()
        ...
        store.stop()

    ``use_watcher=False`` skips the watchdog observer entirely; the
    store then learns about new frames only from :meth:`reconcile` and
    explicit :meth:`record_frame` calls.
    """

    def __init__(
        self,
        config: Config,
        detector: FrameDetector | None = None,
        clock: Callable[[], float] = time.time,
        use_watcher: bool = True,
    ):
        self._config = config
        self._detector = detector or FrameDetector(
            extensions=config.file_extensions,
            exclude_patterns=config.exclude_patterns,
            strategy=config.frame_number_strategy,
        )
        self._clock = clock
        self._use_watcher = use_watcher
        self._lock = threading.RLock()
        self._listeners: list[Listener] = []
        self._state = ProgressState(
            Path(config.watch_directory).expanduser().resolve(),
            config.default_total_frames,
        )
        self._seen: set[str] = set()
        self._generation = 0
        self._version = 0
        self._ready_generation = -1
        self._watcher: FrameWatcher | None = None
        self._watch_degraded = False
        self._stop = threading.Event()
        self._reconcile_thread: threading.Thread | None = None

    # ---- listeners ----

    def add_listener(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ---- read access ----

    @property
    def detector(self) -> FrameDetector:
        return self._detector

    @property
    def generation(self) -> int:
        """Counter bumped on every watch target switch."""
        with self._lock:
            return self._generation

    @property
    def watch_directory(self) -> Path:
        with self._lock:
            return self._state.watch_directory

    @property
    def state(self) -> ProgressState:
        """Return a copy of the current state."""
        with self._lock:
            return dataclasses.replace(self._state)

    def snapshot(self, message_type: str = MESSAGE_INITIAL_STATE) -> ProgressSnapshot:
        """Build a snapshot of the current state without broadcasting it."""
        with self._lock:
            return ProgressSnapshot.capture(self._state, message_type, self._clock())

    def snapshot_to(
        self, deliver: Listener, message_type: str = MESSAGE_INITIAL_STATE
    ) -> ProgressSnapshot:
        """Build a snapshot and hand it to *deliver* in mutation order.

        *deliver* runs under the store lock, so anything it queues lands
        behind every earlier broadcast and ahead of every later one.
        """
        with self._lock:
            snap = ProgressSnapshot.capture(self._state, message_type, self._clock())
            deliver(snap)
            return snap

    # ---- lifecycle ----

    def start(self) -> None:
        """Start the periodic rescan and watch the configured directory.

        Raises WatchTargetError if the directory cannot be prepared; the
        rescan thread keeps running so a later switch can recover.
        """
        self._stop.clear()
        self._reconcile_thread = threading.Thread(
            target=self._reconcile_loop, daemon=True, name="Reconciler"
        )
        self._reconcile_thread.start()
        self.switch_watch_target(self._config.watch_directory)

    def stop(self) -> None:
        """Stop the periodic rescan and the watcher."""
        self._stop.set()
        if self._reconcile_thread is not None:
            self._reconcile_thread.join(timeout=5)
            self._reconcile_thread = None
        with self._lock:
            self._stop_watcher()
        logger.info("Progress store stopped.")

    # ---- mutations ----

    def switch_watch_target(self, path: str | os.PathLike[str]) -> Path:
        """Make *path* the watch target, creating it if needed.

        All progress for the previous target is discarded. Raises
        WatchTargetError if the directory cannot be created or read;
        state is untouched in that case.
        """
        target = _prepare_directory(path)
        with self._lock:
            self._stop_watcher()
            self._generation += 1
            generation = self._generation
            self._state = ProgressState(target, self._config.default_total_frames)
            self._seen.clear()
            logger.info("Watch target set to %s", target)

            self._start_watcher(generation)
            if self._ready_generation != generation:
                # No ready signal from a watcher: take the inventory ourselves.
                self._initial_scan_locked()
        return target

    def initial_scan(self) -> ProgressSnapshot:
        """Count the current directory in one go and seed frame timestamps."""
        with self._lock:
            return self._initial_scan_locked()

    def handle_stable_file(self, path: Path, generation: int) -> ProgressSnapshot | None:
        """Watcher callback for a file that has finished being written."""
        with self._lock:
            if generation != self._generation:
                logger.debug("Discarding event for superseded watch target: %s", path)
                return None
            try:
                outcome = self._detector.detect(path)
            except OSError as exc:
                logger.warning("Could not stat %s: %s", path, exc)
                return None
            if isinstance(outcome, Rejection):
                if outcome.reason is RejectReason.NO_FRAME_NUMBER:
                    logger.warning("Ignoring file without frame number: %s", path.name)
                return None
            return self.record_frame(outcome)

    def record_frame(self, record: FrameRecord) -> ProgressSnapshot:
        """Apply a newly completed frame and broadcast the result."""
        with self._lock:
            st = self._state
            if record.filename in self._seen:
                logger.debug("Frame file rewritten: %s", record.filename)
            else:
                self._seen.add(record.filename)
                _shift_timestamps(st, record.created)
                logger.info(
                    "New frame detected: %s (frame #%d)",
                    record.filename,
                    record.frame_number,
                )
            try:
                st.completed_frames = self._detector.count(st.watch_directory)
            except OSError as exc:
                logger.warning(
                    "Failed to count completed frames (keeping %d): %s",
                    st.completed_frames,
                    exc,
                )
            return self._publish()

    def set_manual_total(self, value: Any) -> ProgressSnapshot:
        """Override the total frame count; raises ValidationError on bad input."""
        total = parse_total_frames(value)
        with self._lock:
            old_total = self._state.effective_total
            self._state.manual_total = total
            logger.info("Total frames updated: %d -> %d (manual)", old_total, total)
            return self._publish()

    def reset_counters(self) -> ProgressSnapshot:
        """Forget all progress and recount the current directory."""
        with self._lock:
            directory = self._state.watch_directory
            logger.info("Resetting frame count for %s", directory)
            try:
                result = self._detector.scan(directory)
            except OSError as exc:
                logger.error("Failed to read directory %s: %s", directory, exc)
                return self._publish()
            self._state = ProgressState(directory, self._config.default_total_frames)
            self._seen.clear()
            self._apply_scan(result)
            logger.info("Frame count reset. Current count: %d", self._state.completed_frames)
            return self._publish()

    def reconcile(self) -> ProgressSnapshot | None:
        """Rescan the directory and fix up counters from file metadata.

        Returns the broadcast snapshot, or None when nothing material
        changed or the scan belonged to a target that has since been
        replaced.
        """
        with self._lock:
            directory = self._state.watch_directory
            generation = self._generation
            version = self._version
        try:
            result = self._detector.scan(directory, log_rejections=False)
        except OSError as exc:
            logger.warning("Periodic rescan of %s failed: %s", directory, exc)
            return None

        with self._lock:
            if generation != self._generation:
                logger.debug("Discarding rescan of superseded target %s", directory)
                return None
            if version != self._version:
                # Another mutation landed mid-scan; our listing may predate it.
                logger.debug("State changed during rescan of %s; scanning again", directory)
                try:
                    result = self._detector.scan(directory, log_rejections=False)
                except OSError as exc:
                    logger.warning("Periodic rescan of %s failed: %s", directory, exc)
                    return None
            st = self._state
            old_count = st.completed_frames
            old_last_frame_time = st.stats().last_frame_time
            self._apply_scan(result)
            new_last_frame_time = st.stats().last_frame_time

            epsilon = self._config.reconcile_epsilon
            if old_last_frame_time is None or new_last_frame_time is None:
                time_changed = old_last_frame_time != new_last_frame_time
            else:
                time_changed = abs(new_last_frame_time - old_last_frame_time) > epsilon
            if not time_changed and st.completed_frames == old_count:
                return None
            logger.info(
                "Rescan corrected progress: %d -> %d frames, last frame time %s -> %s",
                old_count,
                st.completed_frames,
                format_duration(old_last_frame_time),
                format_duration(new_last_frame_time),
            )
            return self._publish()

    # ---- internals (lock held) ----

    def _initial_scan_locked(self) -> ProgressSnapshot:
        directory = self._state.watch_directory
        try:
            result = self._detector.scan(directory)
        except OSError as exc:
            logger.error("Failed to read directory %s: %s", directory, exc)
            return self._publish()
        self._apply_scan(result)
        logger.info("Found %d existing frame files in %s", result.count, directory)
        return self._publish()

    def _apply_scan(self, result: ScanResult) -> None:
        st = self._state
        st.completed_frames = result.count
        st.first_timestamp = result.first.created if result.first else None
        st.last_timestamp = result.last.created if result.last else None
        st.previous_timestamp = result.previous.created if result.previous else None
        self._seen = {r.filename for r in result.records}

    def _publish(self, message_type: str = MESSAGE_UPDATE) -> ProgressSnapshot:
        self._version += 1
        snapshot = ProgressSnapshot.capture(self._state, message_type, self._clock())
        self._log_stats(snapshot)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Progress listener failed")
        return snapshot

    def _log_stats(self, snap: ProgressSnapshot) -> None:
        elapsed = None
        if snap.first_timestamp is not None:
            elapsed = snap.server_timestamp - snap.first_timestamp
        logger.info(
            "Frames: %d/%d (%.1f%%) | Last=%s | Avg=%s | ETA=%s | Elapsed=%s",
            snap.completed_frames,
            snap.total_frames,
            snap.percentage,
            format_duration(snap.last_frame_time),
            format_duration(snap.avg_frame_time),
            format_duration(snap.eta),
            format_duration(elapsed),
        )

    def _start_watcher(self, generation: int) -> None:
        if not self._use_watcher:
            return
        cfg = self._config
        watcher = FrameWatcher(
            self._state.watch_directory,
            self._detector,
            on_frame_ready=lambda path: self.handle_stable_file(path, generation),
            on_ready=lambda: self._on_watch_ready(generation),
            stable_seconds=cfg.stable_time,
            poll_seconds=cfg.stability_poll,
        )
        try:
            watcher.start()
        except OSError as exc:
            logger.error(
                "Could not watch %s (%s); relying on periodic rescans.",
                self._state.watch_directory,
                exc,
            )
            watcher.stop()
            self._watch_degraded = True
            return
        self._watcher = watcher
        self._watch_degraded = False

    def _on_watch_ready(self, generation: int) -> None:
        with self._lock:
            if generation != self._generation:
                return
            logger.info("Initial scan of %s starting.", self._state.watch_directory)
            self._ready_generation = generation
            self._initial_scan_locked()

    def _stop_watcher(self) -> None:
        if self._watcher is not None:
            try:
                self._watcher.stop()
            except Exception:
                logger.exception("Error stopping previous watcher")
            self._watcher = None

    # ---- periodic rescan ----

    def _reconcile_loop(self) -> None:
        while not self._stop.wait(timeout=self._config.reconcile_interval):
            try:
                self.reconcile()
            except Exception:
                logger.exception("Periodic rescan failed")
            self._check_watcher()

    def _check_watcher(self) -> None:
        with self._lock:
            watcher = self._watcher
            if watcher is None or self._watch_degraded or watcher.is_running:
                return
            self._watch_degraded = True
            logger.warning(
                "Watcher for %s stopped unexpectedly; relying on periodic rescans.",
                watcher.folder,
            )


def _shift_timestamps(st: ProgressState, created: float) -> None:
    """Slot a new frame's creation time into first / previous / last."""
    if st.last_timestamp is None or created >= st.last_timestamp:
        st.previous_timestamp = st.last_timestamp
        st.last_timestamp = created
    elif st.previous_timestamp is None or created > st.previous_timestamp:
        # Arrived out of order but is still the second newest.
        st.previous_timestamp = created
    if st.first_timestamp is None or created < st.first_timestamp:
        st.first_timestamp = created


def _prepare_directory(path: str | os.PathLike[str]) -> Path:
    raw = str(path).strip()
    if not raw:
        raise ValidationError("No directory provided")
    target = Path(raw).expanduser().resolve()
    if not target.exists():
        logger.warning("Directory does not exist, creating: %s", target)
    try:
        target.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        logger.error("Permission denied creating %s", target)
        raise WatchTargetError(str(target), WatchTargetError.PERMISSION_DENIED) from None
    except OSError as exc:
        logger.error("Could not create %s: %s", target, exc)
        raise WatchTargetError(str(target), WatchTargetError.CANNOT_CREATE) from exc
    if not os.access(target, os.R_OK | os.X_OK):
        raise WatchTargetError(str(target), WatchTargetError.PERMISSION_DENIED)
    return target
