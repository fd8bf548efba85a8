"""Device state records, operation results and broadcast event payloads."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class Result(str, Enum):
    """Outcome of a registry or authority operation."""

    OK = "ok"
    UNAUTHORIZED = "unauthorized"
    UNKNOWN_DEVICE = "unknown_device"
    UNKNOWN_SENSOR = "unknown_sensor"
    MALFORMED = "malformed"
    NOT_FOUND = "not_found"


@dataclass
class SensorReading:
    value: float = 0
    last_updated: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "lastUpdated": self.last_updated}


@dataclass
class Device:
    """Live state of one device.

    ``token`` is kept on the record so the registry can tell, under the
    device's lock, whether a credential is still the current one. It is
    never part of :meth:`to_dict`.
    """

    device_id: str
    token: str = ""
    connected: bool = True
    last_seen: int = 0
    sensors: dict[str, SensorReading] = field(default_factory=dict)

    def copy(self) -> Device:
        return Device(
            device_id=self.device_id,
            token=self.token,
            connected=self.connected,
            last_seen=self.last_seen,
            sensors={
                sid: SensorReading(r.value, r.last_updated)
                for sid, r in self.sensors.items()
            },
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "lastSeen": self.last_seen,
            "sensors": {sid: r.to_dict() for sid, r in self.sensors.items()},
        }


# ── Events ────────────────────────────────────────────────────────


def device_status_event(device: Device) -> dict[str, Any]:
    return {
        "type": "deviceStatus",
        "deviceId": device.device_id,
        "connected": device.connected,
        "timestamp": device.last_seen,
    }


def sensor_data_event(device_id: str, sensor_id: str, reading: SensorReading) -> dict[str, Any]:
    return {
        "type": "sensorData",
        "deviceId": device_id,
        "sensorId": sensor_id,
        "value": reading.value,
        "lastUpdated": reading.last_updated,
    }


def full_update_event(devices: dict[str, dict[str, Any]]) -> dict[str, Any]:
    return {"type": "fullUpdate", "devices": devices}
