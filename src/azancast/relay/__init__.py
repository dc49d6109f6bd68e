"""WebSocket relay server for the media transport."""

from src.azancast.relay.server import RelayCall, RelayServer, run_relay

__all__ = ["RelayCall", "RelayServer", "run_relay"]
