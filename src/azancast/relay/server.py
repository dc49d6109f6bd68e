"""Relay server for the WebSocket media transport.

Keeps the peer-id namespace (one connection per id, so only one broadcaster
can hold a session key), routes call requests, answers and hang-ups, and
forwards audio frames between the two parties of each call. Audio payloads
are forwarded without decoding.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ValidationError
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from src.azancast.transport.websocket_protocol import (
    AnsweredMessage,
    AnswerMessage,
    AudioMessage,
    CallMessage,
    ErrorCode,
    ErrorMessage,
    HangupMessage,
    IncomingCallMessage,
    RegisteredMessage,
    RegisterMessage,
    RingingMessage,
    client_message_adapter,
)
from src.common.types import CallID, PeerID

logger = logging.getLogger(__name__)


@dataclass
class RelayCall:
    """A call routed between two registered peers."""

    call_id: CallID
    caller: PeerID
    callee: PeerID
    answered: bool = False
    frames_forwarded: int = 0

    def other(self, peer_id: PeerID) -> PeerID:
        return self.callee if peer_id == self.caller else self.caller


class RelayServer:
    """WebSocket relay server.

    Manages the server lifecycle and the peer/call routing tables.
    """

    def __init__(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 9000,
        max_peers: int = 1000,
    ) -> None:
        """Initialize relay server.

        Args:
            host: Bind host address
            port: Bind port (0 picks a free port)
            max_peers: Maximum concurrently registered peers
        """
        self._host = host
        self._port = port
        self._max_peers = max_peers
        self._server: Server | None = None
        self._running = False
        self._started_at = time.time()

        self._peers: dict[PeerID, ServerConnection] = {}
        self._connection_peers: dict[ServerConnection, PeerID] = {}
        self._calls: dict[CallID, RelayCall] = {}

        logger.info(
            "Relay server initialized",
            extra={"host": host, "port": port, "max_peers": max_peers},
        )

    @property
    def is_running(self) -> bool:
        """Check if the relay server is currently running."""
        return self._running

    @property
    def port(self) -> int:
        """Bound port (the real one when constructed with port 0)."""
        if self._server is not None and self._server.sockets:
            port: int = self._server.sockets[0].getsockname()[1]
            return port
        return self._port

    @property
    def url(self) -> str:
        """WebSocket URL clients on this host can connect to."""
        host = "localhost" if self._host in ("0.0.0.0", "") else self._host  # noqa: S104
        return f"ws://{host}:{self.port}"

    def stats(self) -> dict[str, Any]:
        """Routing table summary for health reporting."""
        return {
            "peers": len(self._peers),
            "calls": len(self._calls),
            "answered_calls": sum(1 for c in self._calls.values() if c.answered),
            "uptime_seconds": time.time() - self._started_at,
        }

    async def start(self) -> None:
        """Start the relay server.

        Raises:
            RuntimeError: If the server is already running or fails to start
            OSError: If port binding fails
        """
        if self._running:
            raise RuntimeError("Relay server is already running")

        logger.info("Starting relay server", extra={"host": self._host, "port": self._port})

        try:
            self._server = await serve(
                self._handle_connection,
                self._host,
                self._port,
                max_size=2**20,  # 1MB max message size
            )
        except OSError as e:
            logger.error(
                "Failed to bind relay server",
                extra={"host": self._host, "port": self._port, "error": str(e)},
            )
            raise

        self._running = True
        self._started_at = time.time()
        logger.info("Relay server started", extra={"host": self._host, "port": self.port})

    async def stop(self) -> None:
        """Stop the relay server, closing every peer connection."""
        if not self._running:
            return

        logger.info("Stopping relay server")
        self._running = False

        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

        self._peers.clear()
        self._connection_peers.clear()
        self._calls.clear()
        logger.info("Relay server stopped")

    async def _handle_connection(self, websocket: ServerConnection) -> None:
        logger.debug("Relay connection opened", extra={"remote": websocket.remote_address})
        try:
            async for raw_message in websocket:
                try:
                    message = client_message_adapter.validate_json(raw_message)
                except ValidationError as e:
                    await self._send_error(websocket, "INVALID_MESSAGE", f"Invalid message: {e}")
                    continue
                await self._route(websocket, message)
        except ConnectionClosed:
            pass
        finally:
            await self._drop_connection(websocket)

    async def _route(self, websocket: ServerConnection, message: Any) -> None:
        if isinstance(message, RegisterMessage):
            await self._register(websocket, message)
            return

        peer_id = self._connection_peers.get(websocket)
        if peer_id is None:
            await self._send_error(websocket, "NOT_REGISTERED", "Register before calling")
            return

        if isinstance(message, CallMessage):
            await self._call(websocket, peer_id, message)
        elif isinstance(message, AnswerMessage):
            await self._answer(websocket, peer_id, message)
        elif isinstance(message, AudioMessage):
            await self._forward_audio(peer_id, message)
        elif isinstance(message, HangupMessage):
            await self._hangup(peer_id, message)

    async def _register(self, websocket: ServerConnection, message: RegisterMessage) -> None:
        peer_id = message.peer_id or f"peer-{uuid.uuid4().hex[:12]}"

        holder = self._peers.get(peer_id)
        if holder is not None and holder is not websocket:
            logger.info("Registration rejected, id taken", extra={"peer_id": peer_id})
            await self._send_error(websocket, "ID_TAKEN", "Peer id already registered", peer_id=peer_id)
            return

        previous = self._connection_peers.get(websocket)
        if previous is None and len(self._peers) >= self._max_peers:
            await self._send_error(websocket, "RELAY_FULL", "Relay peer limit reached")
            return
        if previous is not None and previous != peer_id:
            await self._release_peer(previous)

        self._peers[peer_id] = websocket
        self._connection_peers[websocket] = peer_id
        logger.info("Peer registered", extra={"peer_id": peer_id})
        await self._send(websocket, RegisteredMessage(peer_id=peer_id))

    async def _call(self, websocket: ServerConnection, caller: str, message: CallMessage) -> None:
        if message.call_id in self._calls:
            await self._send_error(
                websocket, "INVALID_MESSAGE", "Duplicate call id", call_id=message.call_id
            )
            return

        target = self._peers.get(message.target)
        if target is None or message.target == caller:
            logger.info(
                "Call target unavailable",
                extra={"call_id": message.call_id, "target": message.target},
            )
            await self._send_error(
                websocket,
                "PEER_UNAVAILABLE",
                f"No peer registered as {message.target}",
                call_id=message.call_id,
                peer_id=message.target,
            )
            return

        self._calls[message.call_id] = RelayCall(message.call_id, caller, message.target)
        await self._send(target, IncomingCallMessage(call_id=message.call_id, caller=caller))
        await self._send(websocket, RingingMessage(call_id=message.call_id))
        logger.info(
            "Call routed",
            extra={"call_id": message.call_id, "caller": caller, "callee": message.target},
        )

    async def _answer(self, websocket: ServerConnection, peer_id: str, message: AnswerMessage) -> None:
        call = self._calls.get(message.call_id)
        if call is None or call.callee != peer_id:
            await self._send_error(websocket, "INVALID_MESSAGE", "Unknown call", call_id=message.call_id)
            return

        call.answered = True
        caller = self._peers.get(call.caller)
        if caller is not None:
            await self._send(caller, AnsweredMessage(call_id=call.call_id))

    async def _forward_audio(self, peer_id: str, message: AudioMessage) -> None:
        call = self._calls.get(message.call_id)
        if call is None or peer_id not in (call.caller, call.callee):
            return

        other = self._peers.get(call.other(peer_id))
        if other is not None:
            call.frames_forwarded += 1
            await self._send(other, message)

    async def _hangup(self, peer_id: str, message: HangupMessage) -> None:
        call = self._calls.get(message.call_id)
        if call is None or peer_id not in (call.caller, call.callee):
            return
        await self._end_call(call, notify=call.other(peer_id), reason=message.reason)

    async def _end_call(self, call: RelayCall, notify: str, reason: str) -> None:
        self._calls.pop(call.call_id, None)
        other = self._peers.get(notify)
        if other is not None:
            await self._send(other, HangupMessage(call_id=call.call_id, reason=reason))
        logger.info(
            "Call ended",
            extra={"call_id": call.call_id, "reason": reason, "frames": call.frames_forwarded},
        )

    async def _release_peer(self, peer_id: str) -> None:
        for call in [c for c in self._calls.values() if peer_id in (c.caller, c.callee)]:
            await self._end_call(call, notify=call.other(peer_id), reason="peer_left")

        websocket = self._peers.pop(peer_id, None)
        if websocket is not None:
            self._connection_peers.pop(websocket, None)
        logger.info("Peer released", extra={"peer_id": peer_id})

    async def _drop_connection(self, websocket: ServerConnection) -> None:
        peer_id = self._connection_peers.get(websocket)
        if peer_id is not None:
            await self._release_peer(peer_id)

    async def _send(self, websocket: ServerConnection, message: BaseModel) -> None:
        try:
            await websocket.send(message.model_dump_json())
        except ConnectionClosed:
            logger.debug("Dropped message for closed connection")

    async def _send_error(
        self,
        websocket: ServerConnection,
        code: ErrorCode,
        error_msg: str,
        call_id: str | None = None,
        peer_id: str | None = None,
    ) -> None:
        await self._send(
            websocket,
            ErrorMessage(code=code, message=error_msg, call_id=call_id, peer_id=peer_id),
        )


async def run_relay(
    host: str,
    port: int,
    max_peers: int = 1000,
    health_enabled: bool = True,
) -> None:
    """Run the relay (and its health endpoints) until cancelled.

    Args:
        host: Bind host address
        port: Bind port; health endpoints use port + 1
        max_peers: Maximum registered peers
        health_enabled: Serve /health and /liveness
    """
    from aiohttp.web import Application, AppRunner, TCPSite

    from src.azancast.relay.health import setup_health_routes

    relay = RelayServer(host=host, port=port, max_peers=max_peers)
    await relay.start()

    runner: AppRunner | None = None
    if health_enabled:
        health_app = Application()
        setup_health_routes(health_app, relay)
        runner = AppRunner(health_app)
        await runner.setup()
        site = TCPSite(runner, host, relay.port + 1)
        await site.start()
        logger.info("Health check server started", extra={"port": relay.port + 1})

    try:
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        logger.info("Relay loop cancelled")
    finally:
        if runner is not None:
            await runner.cleanup()
        await relay.stop()
