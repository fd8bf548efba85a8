"""Runtime configuration for the relay, read from ``RELAY_*`` environment variables."""

from __future__ import annotations

import logging
import math
import os
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}


@dataclass
class RelayConfig:
    """Relay settings. Durations are in seconds."""

    host: str = "0.0.0.0"
    port: int = 7452

    # Liveness
    liveness_timeout: float = 30.0
    sweep_interval: float = 5.0

    # Observers
    observer_queue_size: int = 100

    # Data for a sensor the device never registered
    auto_create_sensors: bool = False

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> RelayConfig:
        env = os.environ if environ is None else environ
        defaults = cls()
        return cls(
            host=_get(env, "RELAY_HOST", defaults.host, str),
            port=_get(env, "RELAY_PORT", defaults.port, int, positive=True),
            liveness_timeout=_get(
                env, "RELAY_LIVENESS_TIMEOUT", defaults.liveness_timeout, float, positive=True,
            ),
            sweep_interval=_get(
                env, "RELAY_SWEEP_INTERVAL", defaults.sweep_interval, float, positive=True,
            ),
            observer_queue_size=_get(
                env, "RELAY_OBSERVER_QUEUE", defaults.observer_queue_size, int, positive=True,
            ),
            auto_create_sensors=_get(env, "RELAY_AUTO_CREATE_SENSORS", defaults.auto_create_sensors, _bool),
            log_level=_get(env, "RELAY_LOG_LEVEL", defaults.log_level, str).upper(),
        )


def _bool(raw: str) -> bool:
    return raw.strip().lower() in _TRUE


def _get(env, name: str, default, cast, positive: bool = False):
    raw = env.get(name, "")
    if not raw.strip():
        return default
    try:
        value = cast(raw.strip())
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %r", name, raw, default)
        return default
    # Sizes and durations must be finite and above zero; asyncio reads a
    # zero maxsize as unbounded.
    if positive and not (value > 0 and math.isfinite(value)):
        logger.warning("Ignoring out-of-range %s=%r, using %r", name, raw, default)
        return default
    return value
