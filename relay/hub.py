"""Broadcast hub — fans state-change events out to connected observers.

Every observer gets its own bounded outbound queue and a pump task that
drains it into the observer's transport, so one slow observer never holds
up the publisher or the others.  Events reach each observer in publish
order.  When a queue is full the oldest queued message is dropped.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
import uuid
from typing import Any, Awaitable, Callable

logger = logging.getLogger(__name__)

Payload = str | bytes
SendFunc = Callable[[Payload], Awaitable[None]]

DEFAULT_QUEUE_SIZE = 100


class ObserverClosed(ConnectionError):
    """Raised by a send function when the observer's transport is gone."""


def encode_event(event: dict[str, Any]) -> str:
    """Serialize an event to its wire form (compact JSON, key order kept)."""
    return json.dumps(event, separators=(",", ":"), allow_nan=False)


class Observer:
    """Handle for one subscribed observer."""

    def __init__(self, hub: BroadcastHub, send: SendFunc, maxsize: int) -> None:
        self.observer_id = f"obs-{uuid.uuid4().hex[:8]}"
        self.dropped = 0
        self._hub = hub
        self._send = send
        self._queue: asyncio.Queue[Payload] = asyncio.Queue(maxsize=maxsize)
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, payload: Payload) -> bool:
        """Queue *payload* for delivery.  Returns ``False`` once unsubscribed.

        Calls from outside the observer's event loop thread are handed to
        the loop with ``call_soon_threadsafe``; per-caller order is kept.
        """
        if self._closed:
            return False
        loop = self._loop
        if loop is not None and _running_loop() is not loop:
            try:
                loop.call_soon_threadsafe(self._enqueue, payload)
            except RuntimeError:
                # Loop already closed.
                return False
            return True
        self._enqueue(payload)
        return True

    def _enqueue(self, payload: Payload) -> None:
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
            logger.debug("Observer %s queue full, dropped oldest message", self.observer_id)
        self._queue.put_nowait(payload)

    def send_event(self, event: dict[str, Any]) -> bool:
        return self.send(encode_event(event))

    def unsubscribe(self) -> None:
        """Detach from the hub and stop delivery.  Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self._hub._discard(self)
        task = self._task
        self._task = None
        if task is not None and task is not _current_task():
            task.cancel()

    def _start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(self._pump())

    async def _pump(self) -> None:
        while not self._closed:
            payload = await self._queue.get()
            try:
                await self._send(payload)
            except ObserverClosed:
                logger.info("Observer %s transport closed", self.observer_id)
                self.unsubscribe()
                return
            except Exception as exc:
                self.dropped += 1
                logger.warning("Send to observer %s failed, message dropped: %s", self.observer_id, exc)


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _current_task() -> asyncio.Task | None:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class BroadcastHub:
    """Set of live observers plus best-effort publish to all of them."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        # asyncio treats maxsize <= 0 as unbounded.
        if queue_size < 1:
            raise ValueError(f"queue_size must be at least 1, got {queue_size}")
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._observers: dict[str, Observer] = {}

    def subscribe(self, send: SendFunc) -> Observer:
        """Register a new observer.  Must be called from a running event loop."""
        observer = Observer(self, send, self.queue_size)
        with self._lock:
            self._observers[observer.observer_id] = observer
        observer._start()
        logger.info("Observer connected: %s (%d total)", observer.observer_id, len(self))
        return observer

    def unsubscribe(self, observer: Observer) -> None:
        observer.unsubscribe()

    def publish(self, event: dict[str, Any]) -> int:
        """Queue *event* for every current observer.  Returns how many got it."""
        message = encode_event(event)
        with self._lock:
            observers = list(self._observers.values())
        delivered = 0
        for observer in observers:
            if observer.send(message):
                delivered += 1
        return delivered

    def _discard(self, observer: Observer) -> None:
        with self._lock:
            removed = self._observers.pop(observer.observer_id, None)
        if removed is not None:
            logger.info("Observer disconnected: %s", observer.observer_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._observers)
