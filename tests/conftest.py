"""pytest configuration for relay tests."""

from __future__ import annotations

import threading

import pytest

from relay.auth import TokenAuthority
from relay.registry import DeviceRegistry


class FakeClock:
    """Settable epoch-millisecond clock."""

    def __init__(self, start: int = 1_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingHub:
    """Stands in for BroadcastHub and keeps every published event."""

    def __init__(self) -> None:
        self.events: list[dict] = []
        self._lock = threading.Lock()

    def publish(self, event: dict) -> int:
        with self._lock:
            self.events.append(event)
        return 1

    def of_type(self, event_type: str) -> list[dict]:
        return [e for e in self.events if e["type"] == event_type]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def hub():
    return RecordingHub()


@pytest.fixture()
def registry(hub, clock):
    return DeviceRegistry(TokenAuthority(), hub, clock=clock)
