"""WebSocket broadcast hub for Render Watch.

Owns the set of live viewer connections, fans progress snapshots out
to them and handles the inbound control messages:

    {"type": "setTotalFrames", "totalFrames": 240}
    {"type": "requestState"}
    {"type": "resetFrames"}

Snapshots may be published from any thread. They are handed to the
event loop with ``call_soon_threadsafe``, which runs callbacks in FIFO
order, and each connection drains its own bounded queue, so every
viewer sees snapshots in mutation order and a slow viewer only ever
loses its own oldest backlog.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from render_watch.errors import ValidationError
from render_watch.state import MESSAGE_INITIAL_STATE, ProgressSnapshot, ProgressStore

logger = logging.getLogger(__name__)

# Inbound message types
MSG_SET_TOTAL_FRAMES = "setTotalFrames"
MSG_REQUEST_STATE = "requestState"
MSG_RESET_FRAMES = "resetFrames"

# Error codes sent back to a single viewer
ERR_INVALID_FORMAT = "invalid_format"
ERR_INVALID_TOTAL = "invalid_total_frames"
ERR_UNKNOWN_TYPE = "unknown_type"


@dataclass
class Connection:
    """One live viewer."""

    websocket: WebSocket
    queue: asyncio.Queue
    connection_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    connected_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dropped: int = 0
    sender: asyncio.Task | None = None

    def offer(self, message: dict[str, Any]) -> None:
        """Queue *message*, dropping the oldest backlog entry if full.

        Must be called on the event loop thread.
        """
        if self.queue.full():
            with contextlib.suppress(asyncio.QueueEmpty):
                self.queue.get_nowait()
            self.dropped += 1
            logger.debug("Viewer %s is slow; dropped a queued update", self.connection_id)
        self.queue.put_nowait(message)


class BroadcastHub:
    """Fans progress snapshots out to every connected viewer."""

    def __init__(self, store: ProgressStore, queue_size: int = 32):
        self._store = store
        self._queue_size = max(1, queue_size)
        self._connections: dict[str, Connection] = {}
        self._loop: asyncio.AbstractEventLoop | None = None

    def attach(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the hub to the event loop its connections live on."""
        self._loop = loop

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    # ---- outbound ----

    def publish(self, snapshot: ProgressSnapshot) -> None:
        """Broadcast *snapshot* to all viewers. Safe to call from any thread."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.debug("No event loop attached; snapshot not broadcast")
            return
        message = snapshot.to_message()
        try:
            loop.call_soon_threadsafe(self._fan_out, message)
        except RuntimeError:
            # Loop shut down between the check and the call.
            logger.debug("Event loop closed; snapshot not broadcast")

    def _fan_out(self, message: dict[str, Any]) -> None:
        for conn in list(self._connections.values()):
            conn.offer(message)

    def _deliver_to(self, conn: Connection, snapshot: ProgressSnapshot) -> None:
        # Runs under the store lock, so it is ordered with publish().
        if self._loop is None:
            return
        self._loop.call_soon_threadsafe(conn.offer, snapshot.to_message())

    async def _send_current_state(self, conn: Connection) -> None:
        await asyncio.to_thread(
            self._store.snapshot_to,
            lambda snap: self._deliver_to(conn, snap),
            MESSAGE_INITIAL_STATE,
        )

    async def _pump(self, conn: Connection) -> None:
        try:
            while True:
                message = await conn.queue.get()
                await conn.websocket.send_json(message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Failed to send to viewer %s: %s", conn.connection_id, exc)
            self._connections.pop(conn.connection_id, None)

    # ---- connection lifecycle ----

    async def connect(self, websocket: WebSocket) -> Connection:
        """Accept *websocket*, register it and push the current state."""
        await websocket.accept()
        conn = Connection(websocket, asyncio.Queue(maxsize=self._queue_size))
        self._connections[conn.connection_id] = conn
        conn.sender = asyncio.create_task(self._pump(conn))
        logger.info(
            "Viewer connected: %s (%d connected)",
            conn.connection_id,
            len(self._connections),
        )
        await self._send_current_state(conn)
        return conn

    async def disconnect(self, conn: Connection) -> None:
        """Forget *conn* and stop its sender."""
        self._connections.pop(conn.connection_id, None)
        if conn.sender is not None:
            conn.sender.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await conn.sender
        connected_for = (datetime.now(timezone.utc) - conn.connected_at).total_seconds()
        logger.info(
            "Viewer disconnected: %s after %.0fs, %d update(s) dropped (%d connected)",
            conn.connection_id,
            connected_for,
            conn.dropped,
            len(self._connections),
        )

    async def close_all(self) -> None:
        for conn in list(self._connections.values()):
            await self.disconnect(conn)

    async def serve(self, websocket: WebSocket) -> None:
        """Run one viewer connection until it goes away."""
        conn = await self.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_message(conn, raw)
        except WebSocketDisconnect:
            pass
        finally:
            await self.disconnect(conn)

    # ---- inbound ----

    async def handle_message(self, conn: Connection, raw: str) -> None:
        """Apply one control message from *conn*."""
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            self._send_error(conn, ERR_INVALID_FORMAT, "Invalid JSON")
            return
        if not isinstance(message, dict):
            self._send_error(conn, ERR_INVALID_FORMAT, "Expected a JSON object")
            return

        msg_type = message.get("type")
        logger.debug("Message from %s: %s", conn.connection_id, msg_type)

        if msg_type == MSG_SET_TOTAL_FRAMES:
            try:
                await asyncio.to_thread(
                    self._store.set_manual_total, message.get("totalFrames")
                )
            except ValidationError as exc:
                logger.warning(
                    "Invalid total frames value from %s: %r",
                    conn.connection_id,
                    message.get("totalFrames"),
                )
                self._send_error(conn, ERR_INVALID_TOTAL, str(exc))
        elif msg_type == MSG_REQUEST_STATE:
            await self._send_current_state(conn)
        elif msg_type == MSG_RESET_FRAMES:
            await asyncio.to_thread(self._store.reset_counters)
        else:
            self._send_error(conn, ERR_UNKNOWN_TYPE, f"Unknown message type: {msg_type!r}")

    def _send_error(self, conn: Connection, code: str, message: str) -> None:
        conn.offer({"type": "error", "code": code, "message": message})
