"""Telemetry Relay — FastAPI application and process entry point.

Start with::

    python -m relay
    # or
    uvicorn relay.server:app --host 0.0.0.0 --port 7452
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from relay import __version__
from relay.auth import TokenAuthority
from relay.config import RelayConfig
from relay.gateway import (
    RelayServices,
    device_ws_handler,
    observer_ws_handler,
    router,
)
from relay.hub import BroadcastHub
from relay.models import now_ms
from relay.monitor import LivenessMonitor
from relay.registry import DeviceRegistry

logger = logging.getLogger(__name__)


def build_services(config: RelayConfig, clock=now_ms) -> RelayServices:
    hub = BroadcastHub(queue_size=config.observer_queue_size)
    registry = DeviceRegistry(
        TokenAuthority(),
        hub,
        clock=clock,
        auto_create_sensors=config.auto_create_sensors,
    )
    if config.auto_create_sensors:
        logger.info("Sensor auto-creation on first data is enabled")
    monitor = LivenessMonitor(
        registry,
        interval=config.sweep_interval,
        timeout=config.liveness_timeout,
    )
    return RelayServices(registry=registry, hub=hub, monitor=monitor)


def create_app(config: RelayConfig | None = None, clock=now_ms) -> FastAPI:
    """Build the relay application.  *config* defaults to :meth:`RelayConfig.from_env`."""
    config = config or RelayConfig.from_env()
    services = build_services(config, clock=clock)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.monitor.start()
        try:
            yield
        finally:
            await services.monitor.stop()

    app = FastAPI(title="Telemetry Relay", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.services = services

    app.include_router(router)
    app.add_api_websocket_route("/ws", observer_ws_handler)
    app.add_api_websocket_route("/ws/device", device_ws_handler)

    app.add_exception_handler(StarletteHTTPException, _http_error)
    app.add_exception_handler(RequestValidationError, _validation_error)
    return app


async def _http_error(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code)


async def _validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    detail = "Malformed request"
    if errors:
        first = errors[0]
        where = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        detail = f"{where}: {first.get('msg', 'invalid')}" if where else first.get("msg", detail)
    return JSONResponse({"error": detail}, status_code=400)


app = create_app()


# ──────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────

def main():
    import uvicorn
    config = app.state.config
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting Telemetry Relay on %s:%d", config.host, config.port)
    logger.info("Observer WebSocket available at ws://%s:%d/ws", config.host, config.port)
    uvicorn.run("relay.server:app", host=config.host, port=config.port, reload=False)


if __name__ == "__main__":
    main()
