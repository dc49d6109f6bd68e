"""WebSocket relay client transport.

Implements ``MediaTransport`` against the azancast relay server: peers
register an address on the relay, calls and hang-ups are routed by it, and
audio frames travel as JSON messages through it.
"""

import asyncio
import logging
import uuid
from typing import Any

import websockets
from pydantic import ValidationError
from websockets.asyncio.client import ClientConnection

from src.azancast.audio.packetizer import (
    FRAME_DURATION_MS,
    SAMPLE_RATE_HZ,
    AudioFramePacketizer,
)
from src.azancast.audio.stream import AudioStream
from src.azancast.errors import (
    ConnectionLostError,
    PeerIdTakenError,
    PeerUnavailableError,
    TransportError,
)
from src.azancast.transport.base import CallHandle, MediaTransport
from src.azancast.transport.websocket_protocol import (
    AnsweredMessage,
    AnswerMessage,
    AudioMessage,
    CallMessage,
    ErrorMessage,
    HangupMessage,
    IncomingCallMessage,
    RegisteredMessage,
    RegisterMessage,
    RingingMessage,
    relay_message_adapter,
)

logger = logging.getLogger(__name__)


class WebSocketCallHandle(CallHandle):
    """Call routed through the relay."""

    def __init__(
        self,
        call_id: str,
        remote_id: str,
        transport: "WebSocketMediaTransport",
        offered: AudioStream | None = None,
    ) -> None:
        super().__init__(call_id, remote_id)
        self._transport = transport
        self._offered = offered
        self._remote_stream: AudioStream | None = None
        self._receiver = AudioFramePacketizer()
        self._send_task: asyncio.Task[None] | None = None
        self._answered = False

    async def answer(self, stream: AudioStream | None = None) -> None:
        if self.is_closed:
            raise TransportError(f"Call {self.call_id} is closed")
        if self._answered:
            return
        self._answered = True

        await self._transport._send(AnswerMessage(call_id=self.call_id))
        if stream is not None:
            self._start_sending(stream)

    async def close(self) -> None:
        if self.is_closed:
            return
        self._teardown()
        if self._transport.is_connected:
            try:
                await self._transport._send(HangupMessage(call_id=self.call_id))
            except TransportError as e:
                logger.debug(f"Hangup not delivered: {e}")

    def _start_sending(self, stream: AudioStream) -> None:
        outbound = stream.fork()
        self._send_task = asyncio.create_task(self._send_loop(outbound))

    async def _send_loop(self, outbound: AudioStream) -> None:
        packetizer = AudioFramePacketizer()
        try:
            async for frame in outbound:
                pcm, sequence = packetizer.pack(frame)
                await self._transport._send(
                    AudioMessage(
                        call_id=self.call_id,
                        pcm=pcm,
                        sample_rate=SAMPLE_RATE_HZ,
                        frame_ms=FRAME_DURATION_MS,
                        sequence=sequence,
                    )
                )
        except TransportError as e:
            logger.warning(
                "Audio send failed, ending call",
                extra={"call_id": self.call_id, "error": str(e)},
            )
            self._teardown()
        finally:
            outbound.stop()

    def _on_answered(self) -> None:
        self._answered = True
        self._ensure_remote_stream()
        if self._offered is not None and self._offered.active:
            self._start_sending(self._offered)

    def _on_audio(self, message: AudioMessage) -> None:
        try:
            frame = self._receiver.unpack(message.pcm, message.sequence)
        except ValueError as e:
            logger.warning("Dropping invalid audio frame", extra={"call_id": self.call_id, "error": str(e)})
            return
        if frame is not None:
            self._ensure_remote_stream().push(frame)

    def _ensure_remote_stream(self) -> AudioStream:
        if self._remote_stream is None:
            self._remote_stream = AudioStream(stream_id=f"remote-{self.call_id}")
            self._emit_stream(self._remote_stream)
        return self._remote_stream

    def _teardown(self) -> None:
        if self._receiver.lost or self._receiver.late:
            logger.debug(
                "Call audio had gaps",
                extra={"call_id": self.call_id, "lost": self._receiver.lost, "late": self._receiver.late},
            )
        if self._send_task is not None:
            if self._send_task is not asyncio.current_task():
                self._send_task.cancel()
            self._send_task = None
        if self._remote_stream is not None:
            self._remote_stream.stop()
        self._transport._calls.pop(self.call_id, None)
        self._mark_closed()


class WebSocketMediaTransport(MediaTransport):
    """Client side of the relay.

    One WebSocket connection per transport; a receive loop task dispatches
    relay messages to pending requests and call handles.
    """

    def __init__(self, relay_url: str, call_timeout_s: float = 10.0) -> None:
        """Initialize relay client.

        Args:
            relay_url: Relay server URL (e.g., ws://localhost:9000)
            call_timeout_s: Seconds to wait for register/call acknowledgements
        """
        super().__init__()
        self.relay_url = relay_url
        self.call_timeout_s = call_timeout_s
        self._websocket: ClientConnection | None = None
        self._receive_task: asyncio.Task[None] | None = None
        self._peer_id: str | None = None
        self._calls: dict[str, WebSocketCallHandle] = {}
        self._pending_register: asyncio.Future[str] | None = None
        self._pending_calls: dict[str, asyncio.Future[None]] = {}
        self._send_lock = asyncio.Lock()

    @property
    def peer_id(self) -> str | None:
        return self._peer_id

    @property
    def transport_type(self) -> str:
        return "websocket"

    @property
    def is_connected(self) -> bool:
        """True while the relay connection is open."""
        return self._websocket is not None and self._receive_task is not None

    async def connect(self) -> None:
        """Open the relay connection. Idempotent.

        Raises:
            TransportError: If the relay cannot be reached
        """
        if self.is_connected:
            return

        try:
            self._websocket = await websockets.connect(self.relay_url)
        except (OSError, TimeoutError, websockets.exceptions.InvalidHandshake) as e:
            logger.error(f"Relay connection failed: {e}")
            raise TransportError(f"Relay unreachable at {self.relay_url}: {e}") from e

        self._receive_task = asyncio.create_task(self._receive_loop(self._websocket))
        logger.info(f"Connected to relay {self.relay_url}")

    async def register(self, peer_id: str | None = None) -> str:
        await self.connect()
        if peer_id is not None and peer_id == self._peer_id:
            return peer_id

        loop = asyncio.get_running_loop()
        self._pending_register = loop.create_future()
        try:
            await self._send(RegisterMessage(peer_id=peer_id))
            registered = await asyncio.wait_for(self._pending_register, self.call_timeout_s)
        except TimeoutError as e:
            raise TransportError("Relay did not acknowledge registration") from e
        finally:
            self._pending_register = None

        self._peer_id = registered
        logger.info("Registered on relay", extra={"peer_id": registered})
        return registered

    async def call(self, remote_id: str, local_stream: AudioStream | None = None) -> CallHandle:
        if self._peer_id is None:
            await self.register()

        call_id = f"call-{uuid.uuid4().hex[:12]}"
        handle = WebSocketCallHandle(call_id, remote_id, self, offered=local_stream)
        self._calls[call_id] = handle

        ringing: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._pending_calls[call_id] = ringing
        try:
            await self._send(CallMessage(call_id=call_id, target=remote_id))
            await asyncio.wait_for(ringing, self.call_timeout_s)
        except TimeoutError as e:
            handle._teardown()
            raise TransportError(f"Relay did not route call to {remote_id}") from e
        except TransportError:
            handle._teardown()
            raise
        finally:
            self._pending_calls.pop(call_id, None)

        logger.info("Call placed", extra={"call_id": call_id, "remote_id": remote_id})
        return handle

    async def destroy(self) -> None:
        self._peer_id = None
        for handle in list(self._calls.values()):
            await handle.close()
        self._calls.clear()

        if self._websocket is not None:
            await self._websocket.close()
        if self._receive_task is not None:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass

        self._websocket = None
        self._receive_task = None
        logger.info("Relay transport destroyed")

    async def _send(self, message: Any) -> None:
        if self._websocket is None:
            raise TransportError("Relay connection is closed")
        try:
            async with self._send_lock:
                await self._websocket.send(message.model_dump_json())
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Relay connection closed: {e}") from e

    async def _receive_loop(self, websocket: ClientConnection) -> None:
        try:
            async for raw_message in websocket:
                try:
                    message = relay_message_adapter.validate_json(raw_message)
                except ValidationError as e:
                    logger.error("Invalid relay message", extra={"error": str(e)})
                    continue
                self._dispatch(message)
        except websockets.exceptions.ConnectionClosed:
            logger.info("Relay connection closed")
        finally:
            self._on_disconnected()

    def _dispatch(self, message: Any) -> None:
        if isinstance(message, RegisteredMessage):
            if self._pending_register is not None and not self._pending_register.done():
                self._pending_register.set_result(message.peer_id)

        elif isinstance(message, ErrorMessage):
            self._on_error(message)

        elif isinstance(message, RingingMessage):
            pending = self._pending_calls.get(message.call_id)
            if pending is not None and not pending.done():
                pending.set_result(None)

        elif isinstance(message, IncomingCallMessage):
            handle = WebSocketCallHandle(message.call_id, message.caller, self)
            self._calls[message.call_id] = handle
            logger.info(
                "Incoming call",
                extra={"call_id": message.call_id, "caller": message.caller},
            )
            self._emit_call(handle)

        elif isinstance(message, AnsweredMessage):
            handle = self._calls.get(message.call_id)
            if handle is not None:
                handle._on_answered()

        elif isinstance(message, AudioMessage):
            handle = self._calls.get(message.call_id)
            if handle is not None:
                handle._on_audio(message)

        elif isinstance(message, HangupMessage):
            handle = self._calls.get(message.call_id)
            if handle is not None:
                logger.info("Remote hung up", extra={"call_id": message.call_id, "reason": message.reason})
                handle._teardown()

    def _on_error(self, message: ErrorMessage) -> None:
        logger.warning(
            "Relay error",
            extra={"code": message.code, "error": message.message, "call_id": message.call_id},
        )
        if message.code == "PEER_UNAVAILABLE":
            error: TransportError = PeerUnavailableError(message.peer_id or "")
        elif message.code == "ID_TAKEN":
            error = PeerIdTakenError(message.peer_id or "")
        else:
            error = TransportError(f"{message.code}: {message.message}")

        if message.call_id is not None:
            pending = self._pending_calls.get(message.call_id)
            if pending is not None and not pending.done():
                pending.set_exception(error)
                return
            handle = self._calls.get(message.call_id)
            if handle is not None:
                handle._teardown()
                return

        if self._pending_register is not None and not self._pending_register.done():
            self._pending_register.set_exception(error)

    def _on_disconnected(self) -> None:
        error = ConnectionLostError(f"Relay connection to {self.relay_url} lost")
        if self._pending_register is not None and not self._pending_register.done():
            self._pending_register.set_exception(error)
        for pending in self._pending_calls.values():
            if not pending.done():
                pending.set_exception(error)
        for handle in list(self._calls.values()):
            handle._teardown()
        self._websocket = None
        self._receive_task = None
        # destroy() clears the peer id first, so only unexpected drops are reported
        lost_peer, self._peer_id = self._peer_id, None
        if lost_peer is not None:
            logger.warning("Relay connection lost", extra={"peer_id": lost_peer})
            self._emit_disconnect(error)
