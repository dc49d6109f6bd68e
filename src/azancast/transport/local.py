"""In-process media transport.

All peers live in one ``LocalTransportHub``; calls are wired directly
between handle pairs and media is shared through ``AudioStream.fork()``. Used
when broadcaster and listeners run in the same process, and by the tests.
"""

import logging
import uuid

from src.azancast.audio.stream import AudioStream
from src.azancast.errors import PeerIdTakenError, PeerUnavailableError, TransportError
from src.azancast.transport.base import CallHandle, MediaTransport

logger = logging.getLogger(__name__)


class LocalTransportHub:
    """Address namespace shared by every local transport."""

    def __init__(self) -> None:
        self.peers: dict[str, "LocalMediaTransport"] = {}

    def claim(self, peer_id: str, transport: "LocalMediaTransport") -> None:
        holder = self.peers.get(peer_id)
        if holder is not None and holder is not transport:
            raise PeerIdTakenError(peer_id)
        self.peers[peer_id] = transport

    def release(self, peer_id: str, transport: "LocalMediaTransport") -> None:
        if self.peers.get(peer_id) is transport:
            del self.peers[peer_id]


class LocalCallHandle(CallHandle):
    """One end of an in-process call."""

    def __init__(self, call_id: str, remote_id: str, owner: "LocalMediaTransport") -> None:
        super().__init__(call_id, remote_id)
        self._owner = owner
        self._other: "LocalCallHandle | None" = None
        self._offered: AudioStream | None = None
        self._outbound: AudioStream | None = None
        self._answered = False

    async def answer(self, stream: AudioStream | None = None) -> None:
        if self.is_closed or self._other is None:
            raise TransportError(f"Call {self.call_id} is closed")
        if self._answered:
            return
        self._answered = True

        caller = self._other
        if stream is not None:
            self._outbound = stream.fork()
            caller._emit_stream(self._outbound)
        if caller._offered is not None and caller._offered.active:
            caller._outbound = caller._offered.fork()
            self._emit_stream(caller._outbound)

    async def close(self) -> None:
        if self.is_closed:
            return
        other = self._other
        self._teardown()
        if other is not None:
            other._teardown()

    def _teardown(self) -> None:
        if self._outbound is not None:
            self._outbound.stop()
            self._outbound = None
        self._owner._calls.pop(self.call_id, None)
        self._mark_closed()


class LocalMediaTransport(MediaTransport):
    """Transport endpoint registered on a ``LocalTransportHub``."""

    def __init__(self, hub: LocalTransportHub) -> None:
        super().__init__()
        self.hub = hub
        self._peer_id: str | None = None
        self._calls: dict[str, LocalCallHandle] = {}

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def transport_type(self) -> str:
        return "local"

    async def register(self, peer_id: str | None = None) -> str:
        new_id = peer_id or f"peer-{uuid.uuid4().hex[:12]}"
        if new_id == self._peer_id:
            return new_id

        self.hub.claim(new_id, self)
        if self._peer_id is not None:
            self.hub.release(self._peer_id, self)
        self._peer_id = new_id
        logger.info("Registered on local transport", extra={"peer_id": new_id})
        return new_id

    async def call(self, remote_id: str, local_stream: AudioStream | None = None) -> CallHandle:
        if self._peer_id is None:
            await self.register()

        target = self.hub.peers.get(remote_id)
        if target is None or target is self:
            raise PeerUnavailableError(remote_id)

        call_id = f"call-{uuid.uuid4().hex[:12]}"
        outbound = LocalCallHandle(call_id, remote_id, self)
        inbound = LocalCallHandle(call_id, self._peer_id or "", target)
        outbound._other = inbound
        inbound._other = outbound
        outbound._offered = local_stream

        self._calls[call_id] = outbound
        target._calls[call_id] = inbound
        logger.debug("Local call placed", extra={"call_id": call_id, "remote_id": remote_id})

        target._emit_call(inbound)
        return outbound

    async def destroy(self) -> None:
        for call in list(self._calls.values()):
            await call.close()
        self._calls.clear()

        if self._peer_id is not None:
            self.hub.release(self._peer_id, self)
            logger.info("Left local transport", extra={"peer_id": self._peer_id})
            self._peer_id = None


default_hub = LocalTransportHub()
