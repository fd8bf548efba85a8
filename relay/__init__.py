"""Telemetry Relay — live device/sensor state fan-out.

Sensor devices register and push readings; the relay keeps the latest value
of every sensor in memory and pushes each change to connected observers.

Quickstart::

    python -m relay
    # or
    uvicorn relay.server:app --host 0.0.0.0 --port 7452
"""

__version__ = "1.0.0"
