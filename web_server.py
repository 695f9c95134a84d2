"""FastAPI web server with WebSocket support for live moisture data.

Runs on the I/O thread's loop next to the telemetry client, so handlers call
the client directly. Readings are pushed to browsers the instant they arrive.
"""

import asyncio
import json
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, Field

from constants import THRESHOLD_MAX, THRESHOLD_MIN
from device_state import ConnectionState, Endpoint, moisture_status
from telemetry_client import ClientListener


# --- Browser sockets ---

class DashboardSockets:
    """Browsers subscribed on /ws. Every frame carries a type and a timestamp."""

    def __init__(self):
        self.sockets: set[WebSocket] = set()

    async def attach(self, websocket: WebSocket):
        await websocket.accept()
        self.sockets.add(websocket)

    def detach(self, websocket: WebSocket):
        self.sockets.discard(websocket)

    async def push(self, kind: str, **fields):
        """Send one JSON frame to every browser; a browser that fails is dropped."""
        if not self.sockets:
            return
        data = json.dumps({"type": kind, **fields, "timestamp": time.time()})
        for ws in list(self.sockets):
            try:
                await ws.send_text(data)
            except (RuntimeError, OSError, WebSocketDisconnect):
                self.detach(ws)


# --- FastAPI App ---

app = FastAPI(title="PlantGuardian Dashboard")
browsers = DashboardSockets()

# Reference to the telemetry client (set by plant_guardian.py at startup)
_client = None


class WebBroadcaster(ClientListener):
    """Forwards client events to every browser on /ws."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop]):
        self.loop = loop

    def _post(self, coro):
        if self.loop is None or self.loop.is_closed():
            coro.close()
            return
        asyncio.run_coroutine_threadsafe(coro, self.loop)

    def on_state_change(self, state: ConnectionState):
        self._post(broadcast_state_change(state.value, _build_state()))

    def on_sample(self, value: int):
        self._post(broadcast_sensor_data(value))

    def on_error(self, message: str):
        self._post(broadcast_state_change("error", {"message": message}))

    def on_log(self, text: str):
        self._post(broadcast_log(text))


def set_client(client, loop: Optional[asyncio.AbstractEventLoop] = None):
    """Called by plant_guardian.py to inject the TelemetryClient reference."""
    global _client
    _client = client
    if client is not None:
        client.add_listener(WebBroadcaster(loop))


@app.get("/")
async def index():
    """API info."""
    return {
        "message": "PlantGuardian Gateway API",
        "docs": "/docs",
        "endpoints": {
            "state": "GET /api/state",
            "history": "GET /api/history",
            "command": "POST /api/command",
            "config": "POST /api/config",
            "reconnect": "POST /api/reconnect",
            "disconnect": "POST /api/disconnect",
            "websocket": "ws://<host>/ws",
        },
    }


# --- WebSocket Endpoint ---

@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await browsers.attach(websocket)
    try:
        # Send initial state on connect (always, even if client not ready)
        await websocket.send_text(json.dumps({
            "type": "state",
            "data": _build_state()
        }))
        # Listen for commands from the browser
        while True:
            data = await websocket.receive_text()
            try:
                msg = json.loads(data)
            except json.JSONDecodeError:
                continue
            if not _client or not isinstance(msg, dict):
                continue
            if msg.get("type") == "command" and isinstance(msg.get("command"), dict):
                _client.send(msg["command"])
            elif msg.get("type") == "reconnect":
                _client.connect()
    except WebSocketDisconnect:
        pass
    finally:
        browsers.detach(websocket)


# --- REST API ---

@app.get("/api/state")
async def get_state():
    """Return current connection and reading state."""
    return _build_state()


@app.get("/api/history")
async def get_history():
    """Return the rolling window of readings, oldest first."""
    if not _client:
        return {"values": [], "capacity": 0}
    return {"values": _client.window.values(), "capacity": _client.window.capacity}


class CommandRequest(BaseModel):
    command: dict


@app.post("/api/command")
async def post_command(req: CommandRequest):
    """Send a JSON command to the device (dropped if not connected)."""
    if not _client:
        raise HTTPException(status_code=503, detail="Client not initialized")
    sent = _client.send(req.command)
    return {"status": "sent" if sent else "dropped", "command": req.command}


class ConfigRequest(BaseModel):
    host: Optional[str] = None
    port: Optional[int] = Field(None, ge=1, le=65535)
    threshold: Optional[int] = Field(None, ge=THRESHOLD_MIN, le=THRESHOLD_MAX)
    reconnect: bool = False


@app.post("/api/config")
async def post_config(req: ConfigRequest):
    """Update endpoint/threshold; optionally reconnect (Save & Reconnect)."""
    if not _client:
        raise HTTPException(status_code=503, detail="Client not initialized")
    endpoint = None
    if req.host is not None or req.port is not None:
        endpoint = Endpoint(
            host=req.host if req.host is not None else _client.endpoint.host,
            port=req.port if req.port is not None else _client.endpoint.port,
        )
    _client.configure(endpoint=endpoint, threshold=req.threshold)
    if req.reconnect:
        _client.connect()
    return _build_state()


@app.post("/api/reconnect")
async def post_reconnect():
    if not _client:
        raise HTTPException(status_code=503, detail="Client not initialized")
    _client.connect()
    return _build_state()


@app.post("/api/disconnect")
async def post_disconnect():
    if not _client:
        raise HTTPException(status_code=503, detail="Client not initialized")
    _client.disconnect()
    return _build_state()


# --- State Builder ---

def _build_state() -> dict:
    """Build current state dict from the client."""
    if not _client:
        return {"error": "Client not initialized"}

    latest = _client.latest
    status = moisture_status(latest, _client.threshold)
    return {
        "timestamp": time.time(),
        "state": _client.state.value,
        "connected": _client.is_connected,
        "endpoint": {
            "host": _client.endpoint.host,
            "port": _client.endpoint.port,
            "url": _client.endpoint.url,
        },
        "threshold": _client.threshold,
        "attempt": _client.attempt,
        "max_attempts": _client.retry.max_attempts,
        "latest": latest,
        "status": status,
        "needs_water": status == "NEEDS WATER",
        "samples": len(_client.window),
    }


async def serve(port: int, host: str = "0.0.0.0"):
    """Run uvicorn on the current loop until cancelled."""
    import uvicorn
    config = uvicorn.Config(app, host=host, port=port, log_level="info")
    server = uvicorn.Server(config)
    await server.serve()


# --- Broadcast Helpers (called by WebBroadcaster) ---

async def broadcast_sensor_data(value: int):
    await browsers.push("sensor_data", value=value)


async def broadcast_state_change(event: str, details: dict = None):
    """Called on state changes and connection errors."""
    await browsers.push("event", event=event, data=details or {})


async def broadcast_log(text: str):
    """Called on every client log message for console streaming."""
    await browsers.push("log", text=text)
