"""camview web service: live HLS, recordings and a status feed over WebSocket."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import asyncio
import contextlib
import logging
import time

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

import config
import stream_command
from stream_dirs import DirectoryManager
from stream_registry import (
    AlreadyActive,
    FilesystemError,
    NotFound,
    ProcessRuntimeError,
    SpawnFailure,
    StreamError,
)
from stream_session import StreamSessionManager
from stream_status import StatusPublisher


log = logging.getLogger(__name__)

_STARTED = time.monotonic()

_ERROR_STATUS: dict[type[StreamError], int] = {
    AlreadyActive: 409,
    NotFound: 404,
    SpawnFailure: 502,
    ProcessRuntimeError: 502,
    FilesystemError: 500,
}


class StartStreamRequest(BaseModel):
    source_uri: str | None = None
    options: dict[str, str] | None = None


class StartRecordingRequest(BaseModel):
    source_uri: str | None = None


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def resolve_source(camera_id: str, override: str | None = None) -> str:
    """Source URI from the request, else from the configured camera list."""
    if override:
        return override
    camera = stream_command.get_settings().get("cameras", {}).get(camera_id)
    if not camera:
        raise HTTPException(404, f"Camera {camera_id} not found")
    rtsp_url = camera.get("rtsp_url") if isinstance(camera, dict) else camera
    if not rtsp_url:
        raise HTTPException(400, f"Camera {camera_id} does not have an RTSP URL configured")
    return rtsp_url


def create_app(
    manager: StreamSessionManager | None = None,
    load_settings: Any = config.load_settings,
) -> FastAPI:
    """Build the app. Pass a manager to skip startup wiring (tests)."""
    stream_command.init(load_settings)
    dirs = manager.dirs if manager else DirectoryManager.from_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        _configure_logging(stream_command.get_settings().get("log_level", "INFO"))
        dirs.ensure_roots()
        if manager is None:
            dirs.cleanup_orphaned_live_dirs()
            publisher = StatusPublisher()
            app.state.publisher = publisher
            app.state.manager = StreamSessionManager(publisher, dirs=dirs)
        log.info("camview ready (hls=%s, recordings=%s)", dirs.hls_root, dirs.recording_root)
        try:
            yield
        finally:
            log.info("Shutting down, stopping all streams")
            await app.state.manager.shutdown()

    app = FastAPI(title="camview", lifespan=lifespan)
    if manager is not None:
        app.state.manager = manager
        app.state.publisher = manager.publisher

    # =======================================================================
    # Errors
    # =======================================================================

    @app.exception_handler(StreamError)
    async def stream_error_handler(request: Request, exc: StreamError) -> JSONResponse:
        status = _ERROR_STATUS.get(type(exc), 500)
        if status >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse({"success": False, "error": str(exc)}, status_code=status)

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse({"success": False, "error": str(exc)}, status_code=400)

    def _manager(request: Request) -> StreamSessionManager:
        return request.app.state.manager

    # =======================================================================
    # Health
    # =======================================================================

    @app.get("/api/health")
    async def health() -> dict[str, Any]:
        return {
            "status": "healthy",
            "timestamp": datetime.now(UTC).isoformat(),
            "uptime": round(time.monotonic() - _STARTED, 1),
        }

    # =======================================================================
    # Live Streams
    # =======================================================================

    @app.post("/api/stream/start/{camera_id}")
    async def start_stream(
        camera_id: str,
        request: Request,
        body: StartStreamRequest | None = None,
    ) -> dict[str, Any]:
        body = body or StartStreamRequest()
        source_uri = resolve_source(camera_id, body.source_uri)
        result = await _manager(request).start_live(camera_id, source_uri, body.options)
        log.info("Started stream for camera %s", camera_id)
        return {"success": True, **result}

    @app.post("/api/stream/stop/{camera_id}")
    async def stop_stream(camera_id: str, request: Request) -> dict[str, Any]:
        _manager(request).stop_live(camera_id)
        return {"success": True, "message": "Stream stopped"}

    @app.get("/api/stream/status")
    async def stream_status(request: Request) -> dict[str, Any]:
        active = _manager(request).list_active()
        return {"success": True, "active_streams": active, "count": len(active)}

    @app.get("/api/stream/status/{camera_id}")
    async def camera_status(camera_id: str, request: Request) -> dict[str, Any]:
        return {"success": True, **_manager(request).get_status(camera_id)}

    @app.post("/api/stream/start-all")
    async def start_all_streams(request: Request) -> dict[str, Any]:
        """Start live streams for every configured camera with an RTSP URL."""
        cameras = stream_command.get_settings().get("cameras", {})
        results: list[dict[str, Any]] = []
        for camera_id, camera in cameras.items():
            rtsp_url = camera.get("rtsp_url") if isinstance(camera, dict) else camera
            if not rtsp_url:
                continue
            try:
                await _manager(request).start_live(camera_id, rtsp_url)
                results.append({"camera_id": camera_id, "success": True})
            except (StreamError, ValueError) as e:
                log.warning("Start-all: camera %s failed: %s", camera_id, e)
                results.append({"camera_id": camera_id, "success": False, "error": str(e)})
        started = sum(1 for r in results if r["success"])
        return {
            "success": True,
            "message": f"Started {started}/{len(results)} streams",
            "results": results,
        }

    @app.post("/api/stream/stop-all")
    async def stop_all_streams(request: Request) -> dict[str, Any]:
        await _manager(request).stop_all()
        return {"success": True, "message": "All streams stopped"}

    # =======================================================================
    # Recordings
    # =======================================================================

    @app.post("/api/recordings/start/{camera_id}")
    async def start_recording(
        camera_id: str,
        request: Request,
        body: StartRecordingRequest | None = None,
    ) -> dict[str, Any]:
        body = body or StartRecordingRequest()
        source_uri = resolve_source(camera_id, body.source_uri)
        result = await _manager(request).start_recording(camera_id, source_uri)
        return {"success": True, "message": "Recording started", **result}

    @app.post("/api/recordings/stop/{camera_id}")
    async def stop_recording(camera_id: str, request: Request) -> dict[str, Any]:
        result = _manager(request).stop_recording(camera_id)
        return {"success": True, "message": "Recording stopped", **result}

    # =======================================================================
    # Settings
    # =======================================================================

    @app.get("/api/settings")
    async def get_settings() -> dict[str, Any]:
        return stream_command.get_settings()

    @app.post("/api/settings")
    async def update_settings(updates: dict[str, Any]) -> dict[str, Any]:
        return config.save_settings(updates)

    # =======================================================================
    # Status Feed
    # =======================================================================

    @app.websocket("/ws")
    async def status_feed(websocket: WebSocket) -> None:
        await websocket.accept()
        publisher: StatusPublisher = websocket.app.state.publisher
        log.info("WebSocket client connected")
        with publisher.subscribe() as sub:

            async def forward() -> None:
                async for event in sub:
                    await websocket.send_json(event.to_message())

            await websocket.send_json(
                {"type": "connected", "timestamp": datetime.now(UTC).isoformat()}
            )
            forwarder = asyncio.create_task(forward())
            try:
                # Clients don't send anything useful; receiving detects disconnects
                while True:
                    message = await websocket.receive_text()
                    log.debug("Received WebSocket message: %s", message)
            except WebSocketDisconnect:
                pass
            finally:
                forwarder.cancel()
                with contextlib.suppress(asyncio.CancelledError, WebSocketDisconnect, RuntimeError):
                    await forwarder
                log.info("WebSocket client disconnected")

    app.mount("/hls", StaticFiles(directory=dirs.hls_root, check_dir=False), name="hls")
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=3000)
