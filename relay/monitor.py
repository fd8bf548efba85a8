"""Liveness monitor — periodic sweep that disconnects silent devices."""

from __future__ import annotations

import asyncio
import logging

from relay.registry import DeviceRegistry

logger = logging.getLogger(__name__)


class LivenessMonitor:
    """Marks devices disconnected after *timeout* seconds without a message.

    The sweep runs every *interval* seconds regardless of traffic.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        interval: float = 5.0,
        timeout: float = 30.0,
    ) -> None:
        if not interval > 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if not timeout > 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.registry = registry
        self.interval = interval
        self.timeout = timeout
        self._running = False
        self._task: asyncio.Task | None = None
        self._last_sweep: int | None = None

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._running:
            logger.warning("Liveness monitor is already running")
            return

        self._running = True
        self._task = asyncio.create_task(self._loop())
        logger.info(
            "Liveness monitor started (interval=%.1fs, timeout=%.1fs)",
            self.interval, self.timeout,
        )

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Liveness monitor stopped")

    def run_sweep(self) -> list[str]:
        """Run one sweep.  Returns the ids of devices that were disconnected."""
        expired = self.registry.expire_silent(int(self.timeout * 1000))
        self._last_sweep = self.registry.now()
        return expired

    @property
    def running(self) -> bool:
        return self._running

    @property
    def last_sweep(self) -> int | None:
        """Epoch-ms time of the last completed sweep, or None."""
        return self._last_sweep

    async def _loop(self) -> None:
        while self._running:
            try:
                expired = self.run_sweep()
                logger.debug(
                    "Sweep complete: %d devices tracked, %d timed out",
                    len(self.registry), len(expired),
                )
            except Exception:
                logger.exception("Liveness sweep failed")

            await asyncio.sleep(self.interval)
