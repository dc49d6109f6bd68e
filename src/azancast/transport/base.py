"""Base media transport abstraction.

Defines the interface the call orchestrator depends on: registering an
address, dialing an address, answering an inbound call and receiving the
remote stream. Negotiation details stay inside each implementation.
"""

import logging
from abc import ABC, abstractmethod
from collections.abc import Callable

from src.azancast.audio.stream import AudioStream
from src.azancast.errors import TransportError

logger = logging.getLogger(__name__)

type StreamCallback = Callable[[AudioStream], None]
type CloseCallback = Callable[[], None]


class CallHandle(ABC):
    """One call between two peers, from the local peer's point of view.

    Callbacks are plain functions invoked on the event loop; consumers only
    enqueue work from them.
    """

    def __init__(self, call_id: str, remote_id: str) -> None:
        self._call_id = call_id
        self._remote_id = remote_id
        self._stream_callbacks: list[StreamCallback] = []
        self._close_callbacks: list[CloseCallback] = []
        self._received: AudioStream | None = None
        self._closed = False

    @property
    def call_id(self) -> str:
        """Unique call identifier."""
        return self._call_id

    @property
    def remote_id(self) -> str:
        """Peer id on the other end of the call."""
        return self._remote_id

    @property
    def is_closed(self) -> bool:
        """True once either side has hung up."""
        return self._closed

    def on_stream(self, callback: StreamCallback) -> None:
        """Invoke ``callback`` with the remote stream when it arrives.

        A stream that already arrived is delivered immediately.
        """
        self._stream_callbacks.append(callback)
        if self._received is not None:
            callback(self._received)

    def on_close(self, callback: CloseCallback) -> None:
        """Invoke ``callback`` once when the call ends, from either side."""
        if self._closed:
            callback()
            return
        self._close_callbacks.append(callback)

    def _emit_stream(self, stream: AudioStream) -> None:
        self._received = stream
        for callback in list(self._stream_callbacks):
            callback(stream)

    def _mark_closed(self) -> None:
        if self._closed:
            return
        self._closed = True
        for callback in self._close_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Call close callback failed", extra={"call_id": self._call_id})
        self._close_callbacks.clear()

    @abstractmethod
    async def answer(self, stream: AudioStream | None = None) -> None:
        """Accept an inbound call, sending ``stream`` as outbound media.

        Raises:
            TransportError: If the call can no longer be answered
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """Hang up. Safe to call more than once."""
        pass


type IncomingCallCallback = Callable[[CallHandle], None]
type DisconnectCallback = Callable[[TransportError], None]


class MediaTransport(ABC):
    """Peer-to-peer call establishment collaborator."""

    def __init__(self) -> None:
        self._call_callbacks: list[IncomingCallCallback] = []
        self._disconnect_callbacks: list[DisconnectCallback] = []

    def on_call(self, callback: IncomingCallCallback) -> None:
        """Invoke ``callback`` for every inbound call request."""
        self._call_callbacks.append(callback)

    def on_disconnect(self, callback: DisconnectCallback) -> None:
        """Invoke ``callback`` when a registered transport loses its connection.

        Not invoked for ``destroy()``.
        """
        self._disconnect_callbacks.append(callback)

    def _emit_call(self, call: CallHandle) -> None:
        for callback in list(self._call_callbacks):
            callback(call)

    def _emit_disconnect(self, error: TransportError) -> None:
        for callback in list(self._disconnect_callbacks):
            callback(error)

    @abstractmethod
    async def register(self, peer_id: str | None = None) -> str:
        """Claim an address on the transport.

        Args:
            peer_id: Address to claim, or None for a fresh anonymous identity

        Returns:
            The registered peer id

        Raises:
            PeerIdTakenError: If another client holds ``peer_id``
            TransportError: If the transport cannot be reached
        """
        pass

    @abstractmethod
    async def call(self, remote_id: str, local_stream: AudioStream | None = None) -> CallHandle:
        """Dial ``remote_id``.

        Args:
            remote_id: Address to call
            local_stream: Optional outbound media (listeners send none)

        Returns:
            Handle whose ``on_stream`` fires when the remote answers

        Raises:
            PeerUnavailableError: If nobody is registered under ``remote_id``
            TransportError: If the call cannot be placed
        """
        pass

    @abstractmethod
    async def destroy(self) -> None:
        """Hang up all calls and release the registration. Idempotent."""
        pass

    @property
    @abstractmethod
    def peer_id(self) -> str | None:
        """Registered peer id, or None when unregistered."""
        pass

    @property
    @abstractmethod
    def transport_type(self) -> str:
        """Transport type identifier (e.g., 'local', 'websocket')."""
        pass
