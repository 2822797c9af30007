"""Clock reconciliation between the server and its viewers.

Every snapshot carries ``serverTimestamp``: the server's wall clock in
epoch milliseconds when the snapshot was built. A viewer records
``offset = serverTimestamp - local_now`` on receipt and from then on
reads "server now" as ``local_now + offset``, so elapsed time and time
since the last frame keep ticking between pushes even when the two
machines disagree about the time. There is no round-trip correction;
the estimate is only as good as one-way delivery latency.
"""

from __future__ import annotations

import math
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

# Multipliers of the typical frame time that mark a frame as slow / stuck.
WARNING_FACTOR = 1.5
ALERT_FACTOR = 3.0


def now_ms() -> int:
    """Return the local wall clock in epoch milliseconds."""
    return int(time.time() * 1000)


def format_duration(seconds: float | None) -> str:
    """Format *seconds* as ``"1h 2m 3s"``; unknown values read ``"N/A"``."""
    if seconds is None:
        return "N/A"
    seconds = float(seconds)
    if math.isnan(seconds) or math.isinf(seconds) or seconds < 0:
        return "N/A"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0 or hours > 0:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


class ClockOffset:
    """One-way estimate of how far the server clock is ahead of ours."""

    def __init__(self, local_clock: Callable[[], float] = now_ms):
        self._local_clock = local_clock
        self.offset_ms: float = 0.0
        self.observed = False

    def observe(self, server_timestamp_ms: float, local_ms: float | None = None) -> float:
        """Record a server timestamp as received at *local_ms* (default: now)."""
        if local_ms is None:
            local_ms = self._local_clock()
        self.offset_ms = float(server_timestamp_ms) - float(local_ms)
        self.observed = True
        return self.offset_ms

    def server_now(self, local_ms: float | None = None) -> float:
        """Return the current server time estimate in epoch milliseconds."""
        if local_ms is None:
            local_ms = self._local_clock()
        return float(local_ms) + self.offset_ms

    def elapsed_since(self, remote_ms: float, local_ms: float | None = None) -> float | None:
        """Seconds between server instant *remote_ms* and server-now.

        A zero *remote_ms* is the wire sentinel for "unknown".
        """
        if not remote_ms:
            return None
        return (self.server_now(local_ms) - float(remote_ms)) / 1000.0


class FrameStatus(str, Enum):
    NORMAL = "normal"
    WARNING = "warning"
    ALERT = "alert"


def frame_status(
    time_since_last: float | None,
    avg_frame_time: float | None,
    last_frame_time: float | None,
) -> FrameStatus:
    """Classify how overdue the frame currently rendering is."""
    if not time_since_last or not avg_frame_time or avg_frame_time <= 0:
        return FrameStatus.NORMAL
    typical = max(avg_frame_time, last_frame_time or 0.0)
    if time_since_last > typical * ALERT_FACTOR:
        return FrameStatus.ALERT
    if time_since_last > typical * WARNING_FACTOR:
        return FrameStatus.WARNING
    return FrameStatus.NORMAL


@dataclass(frozen=True)
class ViewerReading:
    """What a viewer would display at one instant."""

    elapsed: float | None
    time_since_last_frame: float | None
    last_frame_time: float | None
    avg_frame_time: float | None
    eta: float | None
    status: FrameStatus


class ViewerClock:
    """Viewer-side state: the latest snapshot plus the clock offset.

    ``apply`` is called with each decoded snapshot message; ``read``
    can then be called as often as the display refreshes.
    """

    def __init__(self, local_clock: Callable[[], float] = now_ms):
        self.offset = ClockOffset(local_clock)
        self._snapshot: dict[str, Any] = {}

    @property
    def snapshot(self) -> dict[str, Any]:
        return dict(self._snapshot)

    def apply(self, message: Mapping[str, Any], local_ms: float | None = None) -> None:
        # Each snapshot replaces the previous one wholesale; a reset on
        # the server must clear the viewer's timestamps as well.
        self._snapshot = dict(message)
        server_ts = message.get("serverTimestamp")
        if server_ts:
            self.offset.observe(server_ts, local_ms)

    def read(self, local_ms: float | None = None) -> ViewerReading:
        snap = self._snapshot
        elapsed = self.offset.elapsed_since(snap.get("firstFrameTimestamp", 0), local_ms)
        since_last = self.offset.elapsed_since(snap.get("lastFrameTimestamp", 0), local_ms)
        last_ft = snap.get("lastFrameTime")
        avg_ft = snap.get("avgFrameTime")
        return ViewerReading(
            elapsed=elapsed,
            time_since_last_frame=since_last,
            last_frame_time=last_ft,
            avg_frame_time=avg_ft,
            eta=snap.get("eta"),
            status=frame_status(since_last, avg_ft, last_ft),
        )
