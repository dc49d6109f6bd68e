"""Call orchestration.

Drives the media path for one client instance: publishing a microphone
stream under the session key (broadcaster) or dialing the session key and
playing the remote stream (listener).

All state changes happen in a single consumer of an event queue. Transport
and capture callbacks only post events. Long-running steps (microphone
acquisition, registration, dialing) run as tracked tasks tagged with the
attempt that started them; when their completion event arrives for an
attempt that has since been stopped, the event is discarded and any resource
it carries is released.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Coroutine
from dataclasses import dataclass
from typing import Any

from src.azancast.audio.capture import AudioCapture
from src.azancast.audio.sink import AudioSink
from src.azancast.audio.stream import AudioStream
from src.azancast.errors import (
    AutoplayBlockedError,
    MicrophoneUnavailableError,
    TransportError,
)
from src.azancast.models import CallMode, CallState, StatusCondition
from src.azancast.transport.base import CallHandle, MediaTransport

logger = logging.getLogger(__name__)


# Valid state transitions
VALID_TRANSITIONS: dict[CallState, set[CallState]] = {
    CallState.IDLE: {CallState.PUBLISHING, CallState.DIALING},
    CallState.PUBLISHING: {CallState.ACTIVE, CallState.ERROR, CallState.IDLE},
    CallState.DIALING: {CallState.ACTIVE, CallState.ERROR, CallState.IDLE},
    CallState.ACTIVE: {CallState.IDLE, CallState.ERROR},
    CallState.ERROR: {CallState.PUBLISHING, CallState.DIALING, CallState.IDLE},
}


@dataclass(frozen=True)
class StartBroadcast:
    key: str


@dataclass(frozen=True)
class Dial:
    key: str


@dataclass(frozen=True)
class StopRequested:
    reason: str = "user"


@dataclass(frozen=True)
class MicrophoneAcquired:
    attempt: int
    stream: AudioStream


@dataclass(frozen=True)
class MicrophoneFailed:
    attempt: int
    error: MicrophoneUnavailableError


@dataclass(frozen=True)
class Registered:
    attempt: int
    peer_id: str


@dataclass(frozen=True)
class RegistrationFailed:
    attempt: int
    error: TransportError


@dataclass(frozen=True)
class TransportLost:
    attempt: int
    error: TransportError


@dataclass(frozen=True)
class IncomingCall:
    call: CallHandle


@dataclass(frozen=True)
class CallPlaced:
    attempt: int
    call: CallHandle


@dataclass(frozen=True)
class DialFailed:
    attempt: int
    error: TransportError


@dataclass(frozen=True)
class RemoteStreamReceived:
    attempt: int
    call: CallHandle
    stream: AudioStream


@dataclass(frozen=True)
class CallClosed:
    call: CallHandle


@dataclass(frozen=True)
class PlaybackResumed:
    pass


type OrchestratorEvent = (
    StartBroadcast
    | Dial
    | StopRequested
    | MicrophoneAcquired
    | MicrophoneFailed
    | Registered
    | RegistrationFailed
    | TransportLost
    | IncomingCall
    | CallPlaced
    | DialFailed
    | RemoteStreamReceived
    | CallClosed
    | PlaybackResumed
)


@dataclass(frozen=True)
class CallStatus:
    """Orchestrator state published to observers after every change."""

    mode: CallMode = CallMode.NONE
    state: CallState = CallState.IDLE
    session_key: str | None = None
    condition: StatusCondition | None = None
    listeners: int = 0


type StatusObserver = Callable[[CallStatus], Awaitable[None]]


class CallOrchestrator:
    """Serialized state machine over one media transport.

    A client instance either broadcasts or listens, never both; the mode is
    fixed by the first start or dial after a stop.
    """

    def __init__(
        self,
        transport: MediaTransport,
        capture: AudioCapture,
        sink: AudioSink,
    ) -> None:
        self.transport = transport
        self.capture = capture
        self.sink = sink

        self._mode = CallMode.NONE
        self._state = CallState.IDLE
        self._session_key: str | None = None
        self._condition: StatusCondition | None = None

        self._attempt = 0
        self._queue: asyncio.Queue[OrchestratorEvent] = asyncio.Queue()
        self._loop_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[None]] = set()
        self._observers: list[StatusObserver] = []
        self._last_status = CallStatus()
        self._closed = False

        # Broadcaster resources
        self._mic_stream: AudioStream | None = None
        self._listener_calls: dict[str, CallHandle] = {}

        # Listener resources
        self._call: CallHandle | None = None

        self.transport.on_call(lambda call: self._post(IncomingCall(call)))
        self.transport.on_disconnect(lambda error: self._post(TransportLost(self._attempt, error)))

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def mode(self) -> CallMode:
        return self._mode

    @property
    def status(self) -> CallStatus:
        """Current orchestrator status."""
        return CallStatus(
            mode=self._mode,
            state=self._state,
            session_key=self._session_key,
            condition=self._condition,
            listeners=len(self._listener_calls),
        )

    def subscribe(self, observer: StatusObserver) -> Callable[[], None]:
        """Register an async observer called with every new ``CallStatus``.

        Observers run on the event loop consumer; they may post further
        requests but must not await ``settle()``.

        Returns:
            Callable that removes the observer
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def start_broadcast(self, key: str) -> None:
        """Request publishing the microphone under ``key``."""
        self._post(StartBroadcast(key))

    def dial(self, key: str) -> None:
        """Request a call to the broadcaster registered under ``key``."""
        self._post(Dial(key))

    def stop(self, reason: str = "user") -> None:
        """Request tearing down the media path, from any state."""
        self._post(StopRequested(reason))

    def resume_playback(self) -> None:
        """Request playback after an autoplay block."""
        self._post(PlaybackResumed())

    async def settle(self) -> None:
        """Wait until every queued event and tracked task has completed."""
        while True:
            await self._queue.join()
            if not self._tasks:
                if self._queue.empty():
                    return
                continue
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Stop the media path and the event consumer. Idempotent."""
        if self._closed:
            return
        self.stop("close")
        await self.settle()
        self._closed = True

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        logger.info("Call orchestrator closed")

    def _post(self, event: OrchestratorEvent) -> None:
        if self._closed:
            logger.debug("Dropping event after close", extra={"event": type(event).__name__})
            self._release_event_resources(event)
            return
        self._queue.put_nowait(event)
        if self._loop_task is None:
            self._loop_task = asyncio.create_task(self._run())

    def _track(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
                await self._notify_observers()
            except Exception:
                logger.exception("Orchestrator event failed", extra={"event": type(event).__name__})
            finally:
                self._queue.task_done()

    async def _notify_observers(self) -> None:
        status = self.status
        if status == self._last_status:
            return
        self._last_status = status
        for observer in list(self._observers):
            try:
                await observer(status)
            except Exception:
                logger.exception("Call status observer failed")

    def _transition(self, new_state: CallState) -> None:
        """Transition to ``new_state`` with validation.

        Raises:
            ValueError: If transition is invalid
        """
        if new_state is self._state:
            return
        if new_state not in VALID_TRANSITIONS[self._state]:
            raise ValueError(f"Invalid state transition: {self._state.value} → {new_state.value}")

        old_state = self._state
        self._state = new_state
        logger.info(
            "Call state transition",
            extra={
                "mode": self._mode.value,
                "from_state": old_state.value,
                "to_state": new_state.value,
                "attempt": self._attempt,
            },
        )

    def _is_stale(self, attempt: int) -> bool:
        return attempt != self._attempt

    async def _handle(self, event: OrchestratorEvent) -> None:
        match event:
            case StartBroadcast(key=key):
                await self._on_start_broadcast(key)
            case Dial(key=key):
                await self._on_dial(key)
            case StopRequested(reason=reason):
                await self._on_stop(reason)
            case MicrophoneAcquired():
                await self._on_microphone_acquired(event)
            case MicrophoneFailed():
                await self._on_microphone_failed(event)
            case Registered():
                await self._on_registered(event)
            case RegistrationFailed():
                await self._on_registration_failed(event)
            case TransportLost():
                await self._on_transport_lost(event)
            case IncomingCall(call=call):
                await self._on_incoming_call(call)
            case CallPlaced():
                await self._on_call_placed(event)
            case DialFailed():
                await self._on_dial_failed(event)
            case RemoteStreamReceived():
                await self._on_remote_stream(event)
            case CallClosed(call=call):
                await self._on_call_closed(call)
            case PlaybackResumed():
                await self._on_playback_resumed()

    # Broadcaster

    async def _on_start_broadcast(self, key: str) -> None:
        if self._mode is CallMode.LISTENING and self._state is not CallState.IDLE:
            logger.warning("Ignoring broadcast start while listening")
            return
        if self._state in (CallState.PUBLISHING, CallState.ACTIVE):
            logger.debug("Broadcast already starting or active")
            return

        await self._release_all()
        self._attempt += 1
        self._mode = CallMode.BROADCASTING
        self._session_key = key
        self._condition = None
        self._transition(CallState.PUBLISHING)
        self._track(self._acquire_microphone(self._attempt))

    async def _acquire_microphone(self, attempt: int) -> None:
        try:
            stream = await self.capture.acquire()
        except MicrophoneUnavailableError as e:
            self._post(MicrophoneFailed(attempt, e))
            return
        self._post(MicrophoneAcquired(attempt, stream))

    async def _on_microphone_acquired(self, event: MicrophoneAcquired) -> None:
        if self._is_stale(event.attempt):
            logger.debug("Releasing microphone from cancelled attempt", extra={"attempt": event.attempt})
            event.stream.stop()
            return

        self._mic_stream = event.stream
        self._track(self._register(event.attempt, self._session_key or ""))

    async def _on_microphone_failed(self, event: MicrophoneFailed) -> None:
        if self._is_stale(event.attempt):
            return
        logger.error(
            "Microphone unavailable",
            extra={"reason": event.error.reason.value, "error": str(event.error)},
        )
        await self._release_all()
        self._condition = StatusCondition.MICROPHONE_UNAVAILABLE
        self._transition(CallState.ERROR)

    async def _register(self, attempt: int, key: str) -> None:
        try:
            peer_id = await self.transport.register(key)
        except TransportError as e:
            self._post(RegistrationFailed(attempt, e))
            return
        self._post(Registered(attempt, peer_id))

    async def _on_registered(self, event: Registered) -> None:
        if self._is_stale(event.attempt):
            return
        self._transition(CallState.ACTIVE)
        logger.info("Broadcast live", extra={"peer_id": event.peer_id})

    async def _on_registration_failed(self, event: RegistrationFailed) -> None:
        if self._is_stale(event.attempt):
            return
        logger.error("Broadcast registration failed", extra={"error": str(event.error)})
        await self._release_all()
        self._condition = event.error.condition or StatusCondition.BROADCASTER_UNREACHABLE
        self._transition(CallState.ERROR)

    async def _on_transport_lost(self, event: TransportLost) -> None:
        if self._is_stale(event.attempt):
            return
        if self._mode is not CallMode.BROADCASTING or self._state not in (
            CallState.PUBLISHING,
            CallState.ACTIVE,
        ):
            return

        logger.error("Broadcast lost its relay connection", extra={"error": str(event.error)})
        await self._release_all()
        self._condition = event.error.condition or StatusCondition.RELAY_DISCONNECTED
        self._transition(CallState.ERROR)

    async def _on_incoming_call(self, call: CallHandle) -> None:
        stream = self._mic_stream
        if (
            self._mode is not CallMode.BROADCASTING
            or self._state is not CallState.ACTIVE
            or stream is None
            or not stream.active
        ):
            logger.info("Rejecting call, not broadcasting", extra={"call_id": call.call_id})
            await call.close()
            return

        try:
            await call.answer(stream)
        except TransportError as e:
            logger.warning(
                "Failed to answer listener",
                extra={"call_id": call.call_id, "error": str(e)},
            )
            await call.close()
            return

        self._listener_calls[call.call_id] = call
        call.on_close(lambda: self._post(CallClosed(call)))
        logger.info(
            "Listener connected",
            extra={"call_id": call.call_id, "listeners": len(self._listener_calls)},
        )

    # Listener

    async def _on_dial(self, key: str) -> None:
        if self._mode is CallMode.BROADCASTING and self._state is not CallState.IDLE:
            logger.warning("Ignoring dial while broadcasting")
            return
        if self._state in (CallState.DIALING, CallState.ACTIVE):
            if key == self._session_key:
                logger.debug("Already dialing or connected", extra={"session_key": key})
                return
            self._transition(CallState.IDLE)

        await self._release_all()
        self._attempt += 1
        self._mode = CallMode.LISTENING
        self._session_key = key
        self._condition = None
        self._transition(CallState.DIALING)
        self._track(self._place_call(self._attempt, key))

    async def _place_call(self, attempt: int, key: str) -> None:
        try:
            call = await self.transport.call(key)
        except TransportError as e:
            self._post(DialFailed(attempt, e))
            return

        # CallPlaced must be queued first: on_stream and on_close replay
        # synchronously when the call already progressed.
        self._post(CallPlaced(attempt, call))
        call.on_stream(lambda stream: self._post(RemoteStreamReceived(attempt, call, stream)))
        call.on_close(lambda: self._post(CallClosed(call)))

    async def _on_call_placed(self, event: CallPlaced) -> None:
        if self._is_stale(event.attempt):
            logger.debug("Hanging up call from cancelled attempt", extra={"attempt": event.attempt})
            await event.call.close()
            return
        self._call = event.call

    async def _on_dial_failed(self, event: DialFailed) -> None:
        if self._is_stale(event.attempt):
            return
        logger.warning("Broadcaster unreachable", extra={"error": str(event.error)})
        await self._release_all()
        self._condition = event.error.condition or StatusCondition.BROADCASTER_UNREACHABLE
        self._transition(CallState.ERROR)

    async def _on_remote_stream(self, event: RemoteStreamReceived) -> None:
        if self._is_stale(event.attempt) or event.call is not self._call:
            event.stream.stop()
            return

        self._transition(CallState.ACTIVE)
        try:
            await self.sink.attach_and_play(event.stream)
        except AutoplayBlockedError:
            self._condition = StatusCondition.AUTOPLAY_BLOCKED

    async def _on_playback_resumed(self) -> None:
        if self._mode is not CallMode.LISTENING or self._state is not CallState.ACTIVE:
            return
        await self.sink.play()
        if self._condition is StatusCondition.AUTOPLAY_BLOCKED:
            self._condition = None

    # Shared

    async def _on_call_closed(self, call: CallHandle) -> None:
        if self._listener_calls.pop(call.call_id, None) is not None:
            logger.info(
                "Listener disconnected",
                extra={"call_id": call.call_id, "listeners": len(self._listener_calls)},
            )
            return

        if call is self._call:
            logger.info("Broadcaster hung up", extra={"call_id": call.call_id})
            self._call = None
            await self.sink.release()
            if self._condition is StatusCondition.AUTOPLAY_BLOCKED:
                self._condition = None
            self._transition(CallState.IDLE)

    async def _on_stop(self, reason: str) -> None:
        self._attempt += 1
        for task in list(self._tasks):
            task.cancel()

        await self._release_all()
        self._condition = None
        self._transition(CallState.IDLE)
        logger.info("Call orchestrator stopped", extra={"reason": reason, "mode": self._mode.value})

    async def _release_all(self) -> None:
        for call in list(self._listener_calls.values()):
            await call.close()
        self._listener_calls.clear()

        if self._call is not None:
            call, self._call = self._call, None
            await call.close()

        if self._mic_stream is not None:
            self._mic_stream.stop()
            self._mic_stream = None

        await self.sink.release()
        await self.transport.destroy()

    def _release_event_resources(self, event: OrchestratorEvent) -> None:
        if isinstance(event, MicrophoneAcquired | RemoteStreamReceived):
            event.stream.stop()
