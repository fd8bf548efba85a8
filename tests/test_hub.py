"""Tests for the broadcast hub — fan-out, ordering, overflow, failed sends."""

from __future__ import annotations

import asyncio
import json

import pytest

from relay.hub import BroadcastHub, ObserverClosed, encode_event


# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #

class Sink:
    """Collects payloads sent to one observer."""

    def __init__(self, gate: asyncio.Event | None = None) -> None:
        self.received: list = []
        self.gate = gate

    async def __call__(self, payload) -> None:
        if self.gate is not None:
            await self.gate.wait()
        self.received.append(payload)

    def values(self) -> list:
        return [json.loads(p)["value"] for p in self.received]


async def _wait_for(condition, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not condition():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def _event(value) -> dict:
    return {"type": "sensorData", "deviceId": "d1", "sensorId": "temp", "value": value, "lastUpdated": value}


# ------------------------------------------------------------------ #
# Tests
# ------------------------------------------------------------------ #

class TestEncoding:
    def test_compact_json_keeps_key_order(self):
        assert encode_event({"type": "deviceStatus", "deviceId": "d1", "connected": True, "timestamp": 5}) == (
            '{"type":"deviceStatus","deviceId":"d1","connected":true,"timestamp":5}'
        )

    @pytest.mark.parametrize("value", [float("nan"), float("inf")])
    def test_non_finite_values_refused(self, value):
        with pytest.raises(ValueError):
            encode_event(_event(value))


class TestSubscribe:
    @pytest.mark.parametrize("queue_size", [0, -1])
    def test_queue_size_must_be_positive(self, queue_size):
        with pytest.raises(ValueError):
            BroadcastHub(queue_size=queue_size)

    async def test_subscribe_and_unsubscribe(self):
        hub = BroadcastHub()
        observer = hub.subscribe(Sink())
        assert len(hub) == 1
        observer.unsubscribe()
        assert len(hub) == 0
        assert observer.closed is True

    async def test_unsubscribe_is_idempotent(self):
        hub = BroadcastHub()
        observer = hub.subscribe(Sink())
        hub.unsubscribe(observer)
        hub.unsubscribe(observer)
        assert len(hub) == 0

    async def test_send_after_unsubscribe_is_discarded(self):
        hub = BroadcastHub()
        observer = hub.subscribe(Sink())
        observer.unsubscribe()
        assert observer.send("late") is False


class TestPublish:
    async def test_fan_out_to_all(self):
        hub = BroadcastHub()
        a, b = Sink(), Sink()
        hub.subscribe(a)
        hub.subscribe(b)

        assert hub.publish(_event(1)) == 2
        await _wait_for(lambda: a.received and b.received)
        assert a.received == b.received == [encode_event(_event(1))]

    async def test_no_observers(self):
        assert BroadcastHub().publish(_event(1)) == 0

    async def test_order_preserved_per_observer(self):
        hub = BroadcastHub()
        sink = Sink()
        hub.subscribe(sink)
        for i in range(50):
            hub.publish(_event(i))
        await _wait_for(lambda: len(sink.received) == 50)
        assert sink.values() == list(range(50))

    async def test_slow_observer_does_not_block_others(self):
        hub = BroadcastHub()
        stuck = Sink(gate=asyncio.Event())
        fast = Sink()
        hub.subscribe(stuck)
        hub.subscribe(fast)

        for i in range(3):
            hub.publish(_event(i))
        await _wait_for(lambda: len(fast.received) == 3)
        assert stuck.received == []

        stuck.gate.set()
        await _wait_for(lambda: len(stuck.received) == 3)
        assert stuck.values() == [0, 1, 2]

    async def test_overflow_drops_oldest(self):
        hub = BroadcastHub(queue_size=2)
        gate = asyncio.Event()
        sink = Sink(gate=gate)
        observer = hub.subscribe(sink)

        # The pump has not run yet, so every message lands in the queue.
        for i in range(4):
            hub.publish(_event(i))
        assert observer.dropped == 2

        gate.set()
        await _wait_for(lambda: len(sink.received) == 2)
        assert sink.values() == [2, 3]

    async def test_publish_from_worker_threads(self):
        hub = BroadcastHub(queue_size=10_000)
        sink = Sink()
        observer = hub.subscribe(sink)

        def publisher(base):
            for i in range(250):
                hub.publish(_event(base + i))

        await asyncio.gather(*(asyncio.to_thread(publisher, n * 1000) for n in range(4)))
        await _wait_for(lambda: len(sink.received) == 1000, timeout=5.0)

        values = sink.values()
        for n in range(4):
            mine = [v for v in values if n * 1000 <= v < (n + 1) * 1000]
            assert mine == list(range(n * 1000, n * 1000 + 250))
        assert observer.dropped == 0


class TestFailedSends:
    async def test_closed_transport_unsubscribes(self):
        hub = BroadcastHub()

        async def closed(payload):
            raise ObserverClosed("gone")

        observer = hub.subscribe(closed)
        hub.publish(_event(1))
        await _wait_for(lambda: observer.closed)
        assert len(hub) == 0
        assert hub.publish(_event(2)) == 0

    async def test_other_errors_drop_message_only(self):
        hub = BroadcastHub()
        received = []
        calls = {"n": 0}

        async def flaky(payload):
            calls["n"] += 1
            if calls["n"] == 1:
                raise ValueError("transient")
            received.append(payload)

        observer = hub.subscribe(flaky)
        hub.publish(_event(1))
        hub.publish(_event(2))
        await _wait_for(lambda: len(received) == 1)
        assert json.loads(received[0])["value"] == 2
        assert observer.dropped == 1
        assert observer.closed is False

    async def test_disconnect_mid_publish_keeps_others_in_order(self):
        hub = BroadcastHub()
        leaving = Sink(gate=asyncio.Event())
        staying = Sink()
        leaver = hub.subscribe(leaving)
        hub.subscribe(staying)

        hub.publish(_event(1))
        await asyncio.sleep(0.01)
        leaver.unsubscribe()
        hub.publish(_event(2))
        hub.publish(_event(3))

        await _wait_for(lambda: len(staying.received) == 3)
        assert staying.values() == [1, 2, 3]
        assert leaving.received == []
        assert len(hub) == 1


@pytest.mark.parametrize("queue_size", [1, 5])
async def test_queue_bound_respected(queue_size):
    hub = BroadcastHub(queue_size=queue_size)
    observer = hub.subscribe(Sink(gate=asyncio.Event()))
    for i in range(queue_size + 3):
        hub.publish(_event(i))
    assert observer.dropped == 3
    observer.unsubscribe()
