"""FastAPI application for Render Watch.

Routes:
    WS   /ws  (and /)          viewer channel, see render_watch.hub
    POST /api/set-directory    switch the watch target
    POST /api/reset-frames     forget progress and recount
    POST /api/set-total-frames set the manual total
    GET  /api/server-info      working directory, platform, watch target
    GET  /api/state            current snapshot
"""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, WebSocket
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from render_watch import __app_name__, __version__
from render_watch.config import Config
from render_watch.errors import RenderWatchError, ValidationError, WatchTargetError
from render_watch.hub import BroadcastHub
from render_watch.platform_utils import platform_name
from render_watch.state import ProgressStore

logger = logging.getLogger(__name__)


class DirectoryRequest(BaseModel):
    directory: str | None = None


class TotalFramesRequest(BaseModel):
    # Validated by parse_total_frames so strings like "240" behave as
    # they always have for existing viewers.
    totalFrames: Any = None


def _failure(status_code: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, **extra},
    )


def create_app(
    config: Config | None = None,
    store: ProgressStore | None = None,
) -> FastAPI:
    """Build the application around *store* (or a new one from *config*)."""
    config = config or Config()
    store = store or ProgressStore(config)
    hub = BroadcastHub(store, queue_size=config.client_queue_size)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("%s %s starting.", __app_name__, __version__)
        hub.attach(asyncio.get_running_loop())
        store.add_listener(hub.publish)
        try:
            await asyncio.to_thread(store.start)
        except RenderWatchError as exc:
            logger.error("Could not start watching: %s", exc)
        try:
            yield
        finally:
            logger.info("Shutting down…")
            await asyncio.to_thread(store.stop)
            store.remove_listener(hub.publish)
            await hub.close_all()

    app = FastAPI(title=__app_name__, version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.store = store
    app.state.hub = hub

    @app.websocket("/ws")
    @app.websocket("/")
    async def viewer_socket(websocket: WebSocket) -> None:
        await hub.serve(websocket)

    @app.post("/api/set-directory")
    async def set_directory(request: DirectoryRequest | None = None):
        directory = ((request and request.directory) or "").strip()
        if not directory:
            return _failure(400, "No directory provided")
        try:
            resolved = await asyncio.to_thread(store.switch_watch_target, directory)
        except ValidationError as exc:
            return _failure(400, str(exc))
        except WatchTargetError as exc:
            logger.error("Failed to set directory: %s", exc)
            return _failure(500, exc.reason, directory=exc.path)
        return {"success": True, "directory": str(resolved)}

    @app.post("/api/reset-frames")
    async def reset_frames():
        snapshot = await asyncio.to_thread(store.reset_counters)
        return {"success": True, "completedFrames": snapshot.completed_frames}

    @app.post("/api/set-total-frames")
    async def set_total_frames(request: TotalFramesRequest):
        try:
            snapshot = await asyncio.to_thread(store.set_manual_total, request.totalFrames)
        except ValidationError as exc:
            logger.warning("Invalid total frames value: %r", request.totalFrames)
            return _failure(400, str(exc))
        return {"success": True, "totalFrames": snapshot.total_frames}

    @app.get("/api/server-info")
    async def server_info():
        return {
            "cwd": os.getcwd(),
            "platform": platform_name(),
            "defaultWatchDir": str(store.watch_directory),
        }

    @app.get("/api/state")
    async def current_state():
        snapshot = await asyncio.to_thread(store.snapshot)
        return snapshot.to_message()

    return app
