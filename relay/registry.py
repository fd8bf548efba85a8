"""In-memory device registry — the source of truth for device and sensor state.

All mutation happens here.  Each device has its own lock; the device map has
another.  State changes are turned into events and handed to the broadcast
hub while the device lock is still held, so each device's events leave in
the order its state changed.  The hub only enqueues, so nothing blocks there.

Devices are never deleted.  A device that goes quiet simply stays
``connected=False`` until it talks again.
"""

from __future__ import annotations

import logging
import math
import threading
from contextlib import nullcontext
from typing import Any, Callable, Iterable

from relay.auth import TokenAuthority
from relay.models import (
    Device,
    Result,
    SensorReading,
    device_status_event,
    now_ms,
    sensor_data_event,
)

logger = logging.getLogger(__name__)


class DeviceRegistry:
    """Owns every :class:`Device` record.

    Parameters
    ----------
    authority:
        Token issuer/resolver used for register, data and heartbeat.
    hub:
        Anything with a ``publish(event: dict)`` method.
    clock:
        Returns the current time in epoch milliseconds.
    auto_create_sensors:
        Accept data for sensors the device never registered, creating them
        on the fly, instead of rejecting with ``UNKNOWN_SENSOR``.
    """

    def __init__(
        self,
        authority: TokenAuthority,
        hub: Any,
        clock: Callable[[], int] = now_ms,
        auto_create_sensors: bool = False,
    ) -> None:
        self.authority = authority
        self.auto_create_sensors = auto_create_sensors
        self._hub = hub
        self._clock = clock
        self._lock = threading.Lock()
        self._devices: dict[str, Device] = {}
        self._device_locks: dict[str, threading.Lock] = {}

    # ── Mutations ──────────────────────────────────────────────────

    def register(self, device_id: str, sensor_ids: Iterable[str]) -> tuple[Device, str]:
        """Create or refresh *device_id*, rotate its token, add new sensors."""
        with self._device_lock(device_id, create=True):
            now = self._clock()
            with self._lock:
                device = self._devices.get(device_id)
                if device is None:
                    device = Device(device_id=device_id, connected=True, last_seen=now)
                    self._devices[device_id] = device
            device.connected = True
            device.last_seen = max(device.last_seen, now)

            token = self.authority.issue(device_id)
            device.token = token

            new_sensors: list[str] = []
            for sensor_id in sensor_ids:
                if sensor_id not in device.sensors:
                    device.sensors[sensor_id] = SensorReading()
                    new_sensors.append(sensor_id)

            snapshot = device.copy()
            logger.info(
                "Device %s registered with sensors: %s",
                device_id, ", ".join(snapshot.sensors) or "(none)",
            )
            events = [device_status_event(snapshot)]
            events += [
                sensor_data_event(device_id, sid, snapshot.sensors[sid]) for sid in new_sensors
            ]
            self._emit(events)
        return snapshot, token

    def ingest_data(self, token: str, sensor_id: str, value: float) -> Result:
        """Apply a sensor reading sent with *token*.

        Non-finite and boolean values are rejected with ``MALFORMED``.
        """
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return Result.MALFORMED
        if not math.isfinite(value):
            return Result.MALFORMED

        device_id = self.authority.resolve(token)
        if device_id is None:
            return Result.UNAUTHORIZED

        with self._device_lock(device_id):
            device = self._get(device_id)
            if device is None:
                return Result.UNKNOWN_DEVICE
            if device.token != token:
                # Re-registered between resolve and lock.
                return Result.UNAUTHORIZED

            reading = device.sensors.get(sensor_id)
            if reading is None:
                if not self.auto_create_sensors:
                    logger.warning("Data for unknown sensor %s/%s rejected", device_id, sensor_id)
                    return Result.UNKNOWN_SENSOR
                reading = device.sensors[sensor_id] = SensorReading()
                logger.info("Auto-created sensor %s on device %s", sensor_id, device_id)

            now = self._clock()
            reading.value = value
            reading.last_updated = max(reading.last_updated, now)
            events: list[dict] = []
            if self._touch(device, now):
                events.append(device_status_event(device))
            events.append(sensor_data_event(device_id, sensor_id, reading))

            logger.debug("Updated sensor %s of device %s with value %s", sensor_id, device_id, value)
            self._emit(events)
        return Result.OK

    def heartbeat(self, token: str) -> Result:
        """Refresh liveness for the device owning *token*.

        Emits nothing unless the device was marked disconnected.
        """
        device_id = self.authority.resolve(token)
        if device_id is None:
            return Result.UNAUTHORIZED

        with self._device_lock(device_id):
            device = self._get(device_id)
            if device is None:
                return Result.UNKNOWN_DEVICE
            if device.token != token:
                return Result.UNAUTHORIZED
            if self._touch(device, self._clock()):
                self._emit([device_status_event(device)])
        return Result.OK

    def mark_disconnected(self, device_id: str) -> bool:
        """Flip *device_id* to disconnected.  Returns ``True`` on a transition."""
        with self._device_lock(device_id):
            device = self._get(device_id)
            if device is None or not device.connected:
                return False
            device.connected = False
            logger.info("Device %s disconnected", device_id)
            self._emit([device_status_event(device)])
        return True

    def expire_silent(self, timeout_ms: int) -> list[str]:
        """Disconnect every connected device silent for more than *timeout_ms*."""
        expired: list[str] = []
        for device_id in self.device_ids():
            with self._device_lock(device_id):
                device = self._get(device_id)
                if device is None or not device.connected:
                    continue
                if self._clock() - device.last_seen <= timeout_ms:
                    continue
                device.connected = False
                logger.info("Device %s timed out (no message for > %d ms)", device_id, timeout_ms)
                expired.append(device_id)
                self._emit([device_status_event(device)])
        return expired

    # ── Queries ────────────────────────────────────────────────────

    def now(self) -> int:
        return self._clock()

    def device_ids(self) -> list[str]:
        with self._lock:
            return list(self._devices)

    def get_all(self) -> dict[str, dict[str, Any]]:
        """Snapshot of every device keyed by id."""
        snapshot: dict[str, dict[str, Any]] = {}
        for device_id in self.device_ids():
            with self._device_lock(device_id):
                device = self._get(device_id)
                if device is not None:
                    snapshot[device_id] = device.to_dict()
        return snapshot

    def get_device(self, device_id: str) -> dict[str, Any] | None:
        with self._device_lock(device_id):
            device = self._get(device_id)
            return device.to_dict() if device else None

    def get_sensor(self, device_id: str, sensor_id: str) -> dict[str, Any] | None:
        with self._device_lock(device_id):
            device = self._get(device_id)
            if device is None or sensor_id not in device.sensors:
                return None
            return device.sensors[sensor_id].to_dict()

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    # ── Internal ───────────────────────────────────────────────────

    def _device_lock(self, device_id: str, create: bool = False):
        """Per-device lock; a no-op context for ids that were never registered."""
        with self._lock:
            lock = self._device_locks.get(device_id)
            if lock is None:
                if not create:
                    return nullcontext()
                lock = self._device_locks[device_id] = threading.Lock()
            return lock

    def _get(self, device_id: str) -> Device | None:
        with self._lock:
            return self._devices.get(device_id)

    @staticmethod
    def _touch(device: Device, now: int) -> bool:
        """Advance ``last_seen`` and mark connected.  ``True`` if it reconnected."""
        device.last_seen = max(device.last_seen, now)
        reconnected = not device.connected
        device.connected = True
        return reconnected

    def _emit(self, events: list[dict]) -> None:
        for event in events:
            self._hub.publish(event)
