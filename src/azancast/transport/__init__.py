"""Media transports for publishing and dialing session keys.

Provides an abstraction over the transport types (in-process hub, WebSocket
relay) used by the call orchestrator.
"""

from src.azancast.transport.base import CallHandle, MediaTransport
from src.azancast.transport.local import LocalMediaTransport, LocalTransportHub
from src.azancast.transport.websocket_transport import (
    WebSocketCallHandle,
    WebSocketMediaTransport,
)

__all__ = [
    "CallHandle",
    "LocalMediaTransport",
    "LocalTransportHub",
    "MediaTransport",
    "WebSocketCallHandle",
    "WebSocketMediaTransport",
]
