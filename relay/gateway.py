"""Ingress gateway — HTTP and WebSocket surface of the relay.

Device-facing (request/response):
  POST /register    {deviceId, sensors:[{sensorId}]} → {deviceId, token}
  POST /data        {token, sensorId, value}         → {ok: true}
  POST /heartbeat   {token}                          → {ok: true}

Read-only queries:
  GET  /devices
  GET  /device/{device_id}
  GET  /device/{device_id}/sensor/{sensor_id}

WebSockets:
  /ws         observers — server pushes deviceStatus / sensorData events
  /ws/device  devices — register/data/heartbeat over one persistent connection

Any binary frame on either socket is a keepalive and is answered with
:data:`KEEPALIVE_ACK`.  Errors are rendered as ``{"error": ...}``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from relay.hub import BroadcastHub, ObserverClosed, Payload
from relay.models import Result, full_update_event
from relay.monitor import LivenessMonitor
from relay.registry import DeviceRegistry

logger = logging.getLogger(__name__)

KEEPALIVE_ACK = b"\x01"

STATUS_CODES: dict[Result, int] = {
    Result.OK: 200,
    Result.MALFORMED: 400,
    Result.UNAUTHORIZED: 401,
    Result.UNKNOWN_DEVICE: 404,
    Result.UNKNOWN_SENSOR: 404,
    Result.NOT_FOUND: 404,
}

ERROR_MESSAGES: dict[Result, str] = {
    Result.MALFORMED: "Malformed request",
    Result.UNAUTHORIZED: "Invalid token",
    Result.UNKNOWN_DEVICE: "Device not found",
    Result.UNKNOWN_SENSOR: "Sensor not found",
    Result.NOT_FOUND: "Device or sensor not found",
}


@dataclass
class RelayServices:
    """Components shared by every request, stored on ``app.state.services``."""

    registry: DeviceRegistry
    hub: BroadcastHub
    monitor: LivenessMonitor


def _services(conn: Request | WebSocket) -> RelayServices:
    return conn.app.state.services


def _fail(result: Result) -> HTTPException:
    return HTTPException(status_code=STATUS_CODES[result], detail=ERROR_MESSAGES[result])


# ──────────────────────────────────────────────────────────────────
# Request models
# ──────────────────────────────────────────────────────────────────

class _Body(BaseModel):
    # Accept the camelCase names as well as the snake_case ones older
    # firmware sends.
    model_config = ConfigDict(populate_by_name=True)


class SensorSpec(_Body):
    sensor_id: str = Field(alias="sensorId", min_length=1)


class RegisterRequest(_Body):
    device_id: str = Field(alias="deviceId", min_length=1)
    sensors: list[SensorSpec] = Field(default_factory=list)


class DataRequest(_Body):
    token: str
    sensor_id: str = Field(alias="sensorId", min_length=1)
    value: float = Field(allow_inf_nan=False)

    @field_validator("value", mode="before")
    @classmethod
    def _reject_bool(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("value must be a number")
        return v


class HeartbeatRequest(_Body):
    token: str


# ──────────────────────────────────────────────────────────────────
# HTTP endpoints
# ──────────────────────────────────────────────────────────────────

router = APIRouter(tags=["relay"])


@router.get("/")
async def index():
    return {"message": "Telemetry Relay"}


@router.get("/health")
async def health(request: Request):
    services = _services(request)
    return {
        "status": "ok",
        "devices": len(services.registry),
        "observers": len(services.hub),
        "monitor_running": services.monitor.running,
    }


@router.post("/register")
async def register(req: RegisterRequest, request: Request):
    registry = _services(request).registry
    device, token = registry.register(req.device_id, [s.sensor_id for s in req.sensors])
    return {"deviceId": device.device_id, "token": token}


@router.post("/data")
async def data(req: DataRequest, request: Request):
    result = _services(request).registry.ingest_data(req.token, req.sensor_id, req.value)
    if result is not Result.OK:
        raise _fail(result)
    return {"ok": True}


@router.post("/heartbeat")
async def heartbeat(req: HeartbeatRequest, request: Request):
    result = _services(request).registry.heartbeat(req.token)
    if result is not Result.OK:
        raise _fail(result)
    return {"ok": True}


@router.get("/devices")
async def list_devices(request: Request):
    return _services(request).registry.get_all()


@router.get("/device/{device_id}")
async def get_device(device_id: str, request: Request):
    device = _services(request).registry.get_device(device_id)
    if device is None:
        raise HTTPException(status_code=404, detail="Device not found")
    return device


@router.get("/device/{device_id}/sensor/{sensor_id}")
async def get_sensor(device_id: str, sensor_id: str, request: Request):
    sensor = _services(request).registry.get_sensor(device_id, sensor_id)
    if sensor is None:
        raise _fail(Result.NOT_FOUND)
    return sensor


# ──────────────────────────────────────────────────────────────────
# Observer WebSocket
# ──────────────────────────────────────────────────────────────────

def _observer_sender(websocket: WebSocket):
    async def send(payload: Payload) -> None:
        try:
            if isinstance(payload, bytes):
                await websocket.send_bytes(payload)
            else:
                await websocket.send_text(payload)
        except (WebSocketDisconnect, RuntimeError) as exc:
            raise ObserverClosed(str(exc)) from exc

    return send


async def observer_ws_handler(websocket: WebSocket) -> None:
    """Handle an observer connection.

    Mount via ``app.add_api_websocket_route("/ws", observer_ws_handler)``.
    The socket is read-only from the server's side apart from the keepalive
    and the ``getDevices`` snapshot request.
    """
    await websocket.accept()
    services = _services(websocket)
    observer = services.hub.subscribe(_observer_sender(websocket))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            if message.get("bytes") is not None:
                logger.debug("Keepalive from observer %s", observer.observer_id)
                observer.send(KEEPALIVE_ACK)
                continue

            text = message.get("text") or ""
            try:
                request = json.loads(text)
            except ValueError:
                request = None
            if isinstance(request, dict) and request.get("type") == "getDevices":
                observer.send_event(full_update_event(services.registry.get_all()))
            else:
                logger.debug("Ignoring message from observer %s: %.200s", observer.observer_id, text)

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Error in observer WebSocket %s", observer.observer_id)
    finally:
        observer.unsubscribe()


# ──────────────────────────────────────────────────────────────────
# Device WebSocket
# ──────────────────────────────────────────────────────────────────

class DeviceConnection:
    """Tracks the device bound to one streaming connection."""

    def __init__(self, websocket: WebSocket) -> None:
        self.websocket = websocket
        self.device_id: str | None = None
        self.token: str | None = None

    async def send(self, message: dict) -> None:
        await self.websocket.send_json(message)

    async def send_error(self, result: Result, detail: str | None = None) -> None:
        await self.send({
            "type": "error",
            "error": detail or ERROR_MESSAGES[result],
            "status": STATUS_CODES[result],
        })


async def device_ws_handler(websocket: WebSocket) -> None:
    """Handle a device streaming connection.

    Mount via ``app.add_api_websocket_route("/ws/device", device_ws_handler)``.
    """
    await websocket.accept()
    registry = _services(websocket).registry
    conn = DeviceConnection(websocket)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break

            if message.get("bytes") is not None:
                await websocket.send_bytes(KEEPALIVE_ACK)
                continue

            try:
                raw = json.loads(message.get("text") or "")
            except ValueError:
                raw = None
            if not isinstance(raw, dict):
                logger.warning("Unparseable message from device %s", conn.device_id)
                await conn.send_error(Result.MALFORMED)
                continue

            await _handle_device_message(conn, registry, raw)

    except WebSocketDisconnect:
        pass
    except Exception:
        logger.exception("Error in device WebSocket for %s", conn.device_id)
    finally:
        # Only the connection holding the live token may mark the device
        # offline; a newer registration elsewhere keeps it connected.
        if conn.device_id and registry.authority.resolve(conn.token) == conn.device_id:
            registry.mark_disconnected(conn.device_id)


async def _handle_device_message(
    conn: DeviceConnection, registry: DeviceRegistry, raw: dict[str, Any],
) -> None:
    msg_type = raw.get("type", "")

    if msg_type == "register":
        try:
            req = RegisterRequest.model_validate(raw)
        except ValidationError as exc:
            await conn.send_error(Result.MALFORMED, _validation_message(exc))
            return
        device, token = registry.register(req.device_id, [s.sensor_id for s in req.sensors])
        conn.device_id, conn.token = device.device_id, token
        await conn.send({"type": "registered", "deviceId": device.device_id, "token": token})

    elif msg_type == "data":
        token = raw.get("token") or conn.token
        if not token:
            await conn.send_error(Result.UNAUTHORIZED, "Register before sending data")
            return
        try:
            req = DataRequest.model_validate({**raw, "token": token})
        except ValidationError as exc:
            await conn.send_error(Result.MALFORMED, _validation_message(exc))
            return
        result = registry.ingest_data(req.token, req.sensor_id, req.value)
        await _reply(conn, result)

    elif msg_type == "heartbeat":
        token = raw.get("token") or conn.token
        if not token:
            await conn.send_error(Result.UNAUTHORIZED, "Register before sending heartbeats")
            return
        await _reply(conn, registry.heartbeat(token))

    else:
        logger.warning("Unknown message type from device %s: %s", conn.device_id, msg_type)
        await conn.send_error(Result.MALFORMED, f"Unknown message type: {msg_type}")


async def _reply(conn: DeviceConnection, result: Result) -> None:
    if result is Result.OK:
        await conn.send({"type": "ack", "ok": True})
    else:
        await conn.send_error(result)


def _validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return ERROR_MESSAGES[Result.MALFORMED]
    first = errors[0]
    where = ".".join(str(p) for p in first.get("loc", ()))
    return f"{where}: {first.get('msg', 'invalid')}" if where else first.get("msg", "invalid")
