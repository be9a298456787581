from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from bletether import __version__
from bletether.autostart import ProcessWatcherControl
from bletether.config import resolve_db_path
from bletether.errors import RadioUnavailable, ScanFailure, StorageError
from bletether.models import LogEntry, event_to_dict
from bletether.runtime import build_tracker
from bletether.tracker import ConnectionTracker, WatcherControl

logger = logging.getLogger(__name__)


def _entries(entries: List[LogEntry], limit: Optional[int]) -> List[Dict[str, Any]]:
    if limit:
        entries = entries[-limit:]
    return [entry.to_dict() for entry in entries]


def _require_id(device_id: str) -> str:
    device_id = device_id.strip()
    if not device_id:
        raise HTTPException(status_code=400, detail="device_id must not be empty")
    return device_id


def get_tracker(request: Request) -> ConnectionTracker:
    return request.app.state.tracker


def create_app(
    tracker: Optional[ConnectionTracker] = None,
    *,
    db_path: Optional[Union[str, Path]] = None,
    scan_on_start: bool = False,
    watcher_control: Optional[WatcherControl] = None,
) -> FastAPI:
    """Build the HTTP front end around ``tracker``.

    Without a tracker one is built at startup over ``db_path``; pairing then
    launches the background watcher through ``watcher_control``, by default a
    child process watching the same database.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        active = tracker
        if active is None:
            control = watcher_control or ProcessWatcherControl(resolve_db_path(db_path))
            active = build_tracker(db_path, watcher_control=control)
        app.state.tracker = active
        await active.start(scan=scan_on_start)
        try:
            await active.load_all_logs()
        except StorageError as exc:
            logger.warning("Could not load stored logs: %s", exc)
        try:
            yield
        finally:
            await active.close()

    app = FastAPI(title="bletether API", version=__version__, lifespan=lifespan)

    @app.exception_handler(StorageError)
    async def _storage_error(_: Request, exc: StorageError) -> JSONResponse:
        return JSONResponse(status_code=503, content={"detail": f"storage unavailable: {exc}"})

    @app.get("/health")
    async def health(tracker: ConnectionTracker = Depends(get_tracker)):
        return {
            "status": "ok",
            "time": time.time(),
            "scanning": tracker.is_scanning,
            "paired": len(tracker.paired_ids),
        }

    @app.get("/paired")
    async def paired(tracker: ConnectionTracker = Depends(get_tracker)):
        ids = await tracker.refresh_paired()
        return {"paired": sorted(ids)}

    @app.post("/pair")
    async def pair(
        device_id: str = Query(..., description="MAC/UUID of the device"),
        name: Optional[str] = Query(None, description="Display name"),
        tracker: ConnectionTracker = Depends(get_tracker),
    ):
        device_id = _require_id(device_id)
        if not await tracker.pair(device_id, name=name):
            raise HTTPException(status_code=502, detail=f"pairing with {device_id} failed")
        return {"device_id": device_id, "paired": True, "paired_ids": sorted(tracker.paired_ids)}

    @app.post("/unpair")
    async def unpair(
        device_id: str = Query(..., description="MAC/UUID of the device"),
        tracker: ConnectionTracker = Depends(get_tracker),
    ):
        device_id = _require_id(device_id)
        if not await tracker.unpair(device_id):
            raise HTTPException(status_code=502, detail=f"unpairing {device_id} failed")
        return {"device_id": device_id, "paired": False, "paired_ids": sorted(tracker.paired_ids)}

    @app.post("/scan")
    async def start_scan(tracker: ConnectionTracker = Depends(get_tracker)):
        try:
            await tracker.ensure_scanning()
        except (RadioUnavailable, ScanFailure) as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return {"scanning": tracker.is_scanning}

    @app.delete("/scan")
    async def stop_scan(tracker: ConnectionTracker = Depends(get_tracker)):
        try:
            await tracker.stop_scan()
        except ScanFailure as exc:
            raise HTTPException(status_code=503, detail=str(exc))
        return {"scanning": tracker.is_scanning}

    @app.get("/devices")
    async def devices(tracker: ConnectionTracker = Depends(get_tracker)):
        return [
            {"device_id": event.device_id, "name": event.name, "rssi": event.rssi}
            for event in tracker.discovered_devices
        ]

    @app.get("/state")
    async def state(tracker: ConnectionTracker = Depends(get_tracker)):
        return {
            "scanning": tracker.is_scanning,
            "paired": sorted(tracker.paired_ids),
            "states": {device_id: value.value for device_id, value in tracker.states.snapshot().items()},
        }

    @app.get("/logs")
    async def all_logs(
        limit: Optional[int] = Query(None, ge=1, description="Newest N entries only"),
        tracker: ConnectionTracker = Depends(get_tracker),
    ):
        return _entries(await tracker.load_all_logs(), limit)

    @app.get("/logs/{device_id}")
    async def device_logs(
        device_id: str,
        limit: Optional[int] = Query(None, ge=1, description="Newest N entries only"),
        tracker: ConnectionTracker = Depends(get_tracker),
    ):
        device_id = _require_id(device_id)
        return _entries(await tracker.load_device_logs(device_id), limit)

    @app.delete("/logs/{device_id}")
    async def clear_logs(device_id: str, tracker: ConnectionTracker = Depends(get_tracker)):
        device_id = _require_id(device_id)
        await tracker.clear_logs(device_id)
        return {"device_id": device_id, "cleared": True}

    @app.websocket("/events")
    async def events(ws: WebSocket):
        tracker: ConnectionTracker = ws.app.state.tracker
        stream = tracker.events.stream(maxsize=1000)
        await ws.accept()

        async def _pump() -> None:
            try:
                async for event in stream:
                    await ws.send_json(event_to_dict(event))
            except (WebSocketDisconnect, RuntimeError) as exc:
                logger.debug("event stream ended: %r", exc)

        pump = asyncio.create_task(_pump())
        try:
            while True:
                message = await ws.receive()
                if message["type"] == "websocket.disconnect":
                    return
        finally:
            stream.close()
            pump.cancel()

    return app


app = create_app()


__all__ = ["app", "create_app", "get_tracker"]
