"""Session controller.

Composition root for one client instance. Owns the authoritative
``{role, state, session_key}`` tuple and mutates it only through its entry
points (``submit_broadcaster_secret``, ``submit_listener_key``,
``start_broadcast``, ``stop_broadcast``), notification handling, and call
status updates from the orchestrator. Observers receive an immutable
``SessionSnapshot`` after every change.
"""

import asyncio
import logging
from collections.abc import Callable
from dataclasses import replace

from src.azancast.auth import AuthorizationManager
from src.azancast.errors import AzancastError, WrongKeyOrNoBroadcastYetError, WrongSecretError
from src.azancast.models import (
    CallMode,
    CallState,
    Role,
    SessionSnapshot,
    SessionState,
    StatusCondition,
)
from src.azancast.notifier import SessionNotifier, SessionStartEvent, SessionStopEvent
from src.azancast.orchestrator import CallOrchestrator, CallStatus
from src.azancast.utils.logging import log_event

logger = logging.getLogger(__name__)

type SnapshotObserver = Callable[[SessionSnapshot], None]


class SessionController:
    """Maps user actions and session notifications onto the call orchestrator."""

    def __init__(
        self,
        auth: AuthorizationManager,
        notifier: SessionNotifier,
        orchestrator: CallOrchestrator,
    ) -> None:
        """Initialize session controller.

        Args:
            auth: Authorization manager (owns the key store)
            notifier: Same-device session notifications
            orchestrator: Media path driver for this instance
        """
        self.auth = auth
        self.notifier = notifier
        self.orchestrator = orchestrator

        self._snapshot = SessionSnapshot()
        self._condition: StatusCondition | None = None
        self._call_status = CallStatus()
        self._announced_key: str | None = None
        self._live_announced = False

        self._lock = asyncio.Lock()
        self._observers: list[SnapshotObserver] = []
        self._unsubscribers: list[Callable[[], None]] = []

    @property
    def snapshot(self) -> SessionSnapshot:
        """Current session snapshot."""
        return self._snapshot

    @property
    def announced_key(self) -> str | None:
        """Key of the last START seen on the notification channel, if any."""
        return self._announced_key

    def subscribe(self, observer: SnapshotObserver) -> Callable[[], None]:
        """Register ``observer`` for every new snapshot.

        Returns:
            Callable that removes the observer
        """
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    async def open(self) -> None:
        """Restore a persisted listener role and start receiving notifications.

        A restored listener does not dial; it waits for a START carrying its
        key.
        """
        self._unsubscribers.append(self.notifier.subscribe(self._on_notification))
        self._unsubscribers.append(self.orchestrator.subscribe(self._on_call_status))

        async with self._lock:
            record = await self.auth.restore_listener_authorization()
            if not self.auth.key_store.available:
                self._condition = StatusCondition.STORAGE_UNAVAILABLE
            if record is not None:
                logger.info("Listener authorization restored")
                self._update(role=Role.LISTENER, state=SessionState.IDLE, session_key=record.key)
            else:
                self._update()

    async def close(self) -> None:
        """Stop any media path and detach from notifications."""
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        await self.orchestrator.close()
        logger.info("Session controller closed")

    async def submit_broadcaster_secret(self, secret: str) -> str:
        """Grant the broadcaster role.

        Returns:
            Session key the broadcast will be published under

        Raises:
            WrongSecretError: If the secret does not match
            ValueError: If this instance already holds the listener role
        """
        async with self._lock:
            self._require_role(Role.BROADCASTER)
            try:
                session_key = await self.auth.authorize_broadcaster(secret)
            except WrongSecretError as e:
                self._fail(e)
                raise

            self._condition = self._storage_condition()
            state = self._snapshot.state
            if self._snapshot.role is not Role.BROADCASTER:
                state = SessionState.IDLE
            self._update(role=Role.BROADCASTER, state=state, session_key=session_key)
            return session_key

    async def submit_listener_key(self, key: str) -> None:
        """Grant the listener role for ``key``.

        The key is checked against the last announced session, or the
        broadcast key stored on this device when none was announced. Dials
        immediately if that session is live.

        Raises:
            WrongKeyOrNoBroadcastYetError: If no session exists or the key differs
            ValueError: If this instance already holds the broadcaster role
        """
        async with self._lock:
            self._require_role(Role.LISTENER)
            current = self._announced_key or await self.auth.current_session_key()
            try:
                record = await self.auth.authorize_listener(key, current)
            except WrongKeyOrNoBroadcastYetError as e:
                self._fail(e)
                raise

            self._condition = self._storage_condition()
            state = SessionState.IDLE
            if self._snapshot.role is Role.LISTENER:
                state = self._snapshot.state
            self._update(role=Role.LISTENER, state=state, session_key=record.key)
            if self._announced_key == record.key and state is not SessionState.ACTIVE:
                self._dial(record.key)

    async def start_broadcast(self) -> None:
        """Start (or restart) broadcasting under the existing session key.

        A no-op while already broadcasting; START is published once the media
        path is live.

        Raises:
            ValueError: If the broadcaster role has not been granted
        """
        async with self._lock:
            if self._snapshot.role is not Role.BROADCASTER or self._snapshot.session_key is None:
                raise ValueError("Broadcaster authorization required before starting")
            if self._snapshot.state is SessionState.ACTIVE:
                logger.debug("Broadcast already active")
                return

            self._condition = None
            self.orchestrator.start_broadcast(self._snapshot.session_key)
            self._update(state=SessionState.ACTIVE)

    async def stop_broadcast(self) -> None:
        """Stop broadcasting or listening.

        A broadcaster always publishes STOP, even when no listener ever
        connected or ``start_broadcast`` failed part-way.
        """
        async with self._lock:
            role = self._snapshot.role
            if role is Role.NONE:
                logger.debug("Stop ignored, no role granted")
                return

            self.orchestrator.stop()
            if role is Role.BROADCASTER:
                self._live_announced = False
                await self.notifier.publish_stop()
                self._update(state=SessionState.STOPPED)
            else:
                self._update(state=SessionState.IDLE)

    async def resume_playback(self) -> None:
        """Start playback after the sink reported an autoplay block.

        Raises:
            ValueError: If the listener role has not been granted
        """
        async with self._lock:
            if self._snapshot.role is not Role.LISTENER:
                raise ValueError("Listener authorization required before playback")
            self.orchestrator.resume_playback()

    async def _on_notification(self, event: SessionStartEvent | SessionStopEvent) -> None:
        async with self._lock:
            if isinstance(event, SessionStartEvent):
                self._on_start(event.key)
            else:
                self._on_stop()

    def _on_start(self, key: str) -> None:
        self._announced_key = key
        if self._snapshot.role is not Role.LISTENER:
            return

        connected = self._call_status.mode is CallMode.LISTENING and self._call_status.state in (
            CallState.DIALING,
            CallState.ACTIVE,
        )
        if connected or self._snapshot.state is SessionState.ACTIVE:
            if key != self._snapshot.session_key:
                logger.info("Ignoring START for another session while connected")
            return

        if key != self._snapshot.session_key:
            logger.info("START key does not match listener key")
            self._condition = StatusCondition.KEY_MISMATCH
            self._update()
            return

        self._condition = None
        self._dial(key)

    def _on_stop(self) -> None:
        self._announced_key = None
        if self._snapshot.role is not Role.LISTENER:
            return

        self.orchestrator.stop("broadcast_stopped")
        if self._condition is StatusCondition.KEY_MISMATCH:
            self._condition = None
        self._update(state=SessionState.IDLE)

    async def _on_call_status(self, status: CallStatus) -> None:
        async with self._lock:
            await self._apply_call_status(status)

    async def _apply_call_status(self, status: CallStatus) -> None:
        self._call_status = status
        role = self._snapshot.role
        state = self._snapshot.state

        if role is Role.BROADCASTER and status.mode is CallMode.BROADCASTING:
            if (
                status.state is CallState.ACTIVE
                and state is SessionState.ACTIVE
                and not self._live_announced
            ):
                self._live_announced = True
                await self.notifier.publish_start(status.session_key or "")
            elif status.state is not CallState.ACTIVE:
                self._live_announced = False
            if status.state is CallState.ERROR and state is SessionState.ACTIVE:
                state = SessionState.IDLE

        elif role is Role.LISTENER and status.mode is CallMode.LISTENING:
            if status.state in (CallState.DIALING, CallState.ACTIVE):
                state = SessionState.ACTIVE
            elif state is SessionState.ACTIVE:
                state = SessionState.IDLE

        self._update(state=state)

    def _dial(self, key: str) -> None:
        self.orchestrator.dial(key)
        self._update(state=SessionState.ACTIVE)

    def _require_role(self, role: Role) -> None:
        current = self._snapshot.role
        if current is not Role.NONE and current is not role:
            raise ValueError(f"Instance already holds the {current.value} role")

    def _storage_condition(self) -> StatusCondition | None:
        if self.auth.key_store.available:
            return None
        return StatusCondition.STORAGE_UNAVAILABLE

    def _fail(self, error: AzancastError) -> None:
        self._condition = error.condition
        self._update()

    def _update(self, **changes: object) -> None:
        status = self._call_status
        snapshot = replace(
            self._snapshot,
            call_state=status.state,
            condition=status.condition or self._condition,
            listeners=status.listeners,
            **changes,
        )
        if snapshot == self._snapshot:
            return

        previous = self._snapshot
        self._snapshot = snapshot
        if (previous.role, previous.state) != (snapshot.role, snapshot.state):
            log_event(
                "session_state",
                {
                    "role": snapshot.role.value,
                    "from_state": previous.state.value,
                    "to_state": snapshot.state.value,
                },
            )

        for observer in list(self._observers):
            try:
                observer(snapshot)
            except Exception:
                logger.exception("Session observer failed")
