"""Integration test fixtures.

Provides a relay server on an ephemeral port and helpers for opening relay
client transports against it.
"""

from collections.abc import AsyncIterator

import pytest

from src.azancast.relay.server import RelayServer
from src.azancast.transport.websocket_transport import WebSocketMediaTransport


@pytest.fixture
async def relay() -> AsyncIterator[RelayServer]:
    """Relay server bound to a free port on localhost."""
    server = RelayServer(host="127.0.0.1", port=0, max_peers=10)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def transports(relay: RelayServer) -> AsyncIterator[list[WebSocketMediaTransport]]:
    """Collects transports opened by a test and destroys them afterwards."""
    opened: list[WebSocketMediaTransport] = []
    yield opened
    for transport in opened:
        await transport.destroy()


@pytest.fixture
def open_transport(relay: RelayServer, transports: list[WebSocketMediaTransport]):  # type: ignore[no-untyped-def]
    """Factory for relay client transports connected to ``relay``."""

    def factory() -> WebSocketMediaTransport:
        transport = WebSocketMediaTransport(relay.url, call_timeout_s=5.0)
        transports.append(transport)
        return transport

    return factory
