"""Run the relay server: ``python -m relay``."""

from relay.server import main

main()
