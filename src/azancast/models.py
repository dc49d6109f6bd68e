"""Session data model.

Roles, session and call states, status conditions, and the records that are
persisted or published to observers.
"""

from dataclasses import dataclass
from enum import Enum


class Role(Enum):
    """Client role, granted once authorization for it succeeds.

    A client instance holds at most one role at a time: it never broadcasts
    and listens simultaneously.
    """

    NONE = "none"
    BROADCASTER = "broadcaster"
    LISTENER = "listener"


class SessionState(Enum):
    """Controller-level session state.

    State Transitions:
    - AWAITING_AUTHORIZATION → IDLE (role granted or restored)
    - IDLE → ACTIVE (broadcast started, or listener dialing/connected)
    - ACTIVE → STOPPED (broadcaster stop)
    - ACTIVE → IDLE (listener stop, STOP notification, remote hang-up)
    - STOPPED → ACTIVE (broadcast restarted)
    """

    AWAITING_AUTHORIZATION = "awaiting_authorization"
    IDLE = "idle"
    ACTIVE = "active"
    STOPPED = "stopped"


class CallState(Enum):
    """Call orchestrator state machine states.

    Broadcaster: IDLE → PUBLISHING → ACTIVE
    Listener:    IDLE → DIALING → ACTIVE
    Any state → IDLE on stop. PUBLISHING/DIALING → ERROR on failure;
    ERROR accepts a new start or dial.
    """

    IDLE = "idle"
    PUBLISHING = "publishing"
    DIALING = "dialing"
    ACTIVE = "active"
    ERROR = "error"


class CallMode(Enum):
    """Direction of the media path the orchestrator drives."""

    NONE = "none"
    BROADCASTING = "broadcasting"
    LISTENING = "listening"


class StatusCondition(Enum):
    """User-facing status conditions shown on the status line."""

    WRONG_SECRET = "wrong_secret"
    WRONG_KEY_OR_NO_BROADCAST_YET = "wrong_key_or_no_broadcast_yet"
    MICROPHONE_UNAVAILABLE = "microphone_unavailable"
    BROADCASTER_UNREACHABLE = "broadcaster_unreachable"
    AUTOPLAY_BLOCKED = "autoplay_blocked"
    STORAGE_UNAVAILABLE = "storage_unavailable"
    KEY_MISMATCH = "key_mismatch"
    SESSION_KEY_IN_USE = "session_key_in_use"
    RELAY_DISCONNECTED = "relay_disconnected"


@dataclass(frozen=True)
class KeyStoreRecord:
    """Everything the key store persists, read and replaced as a whole."""

    session_key: str | None = None
    listener_authorized: bool = False
    listener_key: str | None = None


@dataclass(frozen=True)
class ListenerAuthorizationRecord:
    """Persisted listener authorization that survives restarts."""

    authorized: bool
    key: str


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the controller's state pushed to observers."""

    role: Role = Role.NONE
    state: SessionState = SessionState.AWAITING_AUTHORIZATION
    session_key: str | None = None
    call_state: CallState = CallState.IDLE
    condition: StatusCondition | None = None
    listeners: int = 0

    @property
    def status_line(self) -> str:
        """Human-readable one-line status."""
        if self.condition is not None:
            return _CONDITION_MESSAGES[self.condition]
        if self.role is Role.NONE:
            return "Waiting for authorization"
        if self.role is Role.BROADCASTER:
            if self.call_state is CallState.ACTIVE:
                return f"Broadcasting with key {self.session_key} ({self.listeners} listening)"
            if self.call_state is CallState.PUBLISHING:
                return "Starting broadcast..."
            if self.state is SessionState.STOPPED:
                return "Broadcast stopped"
            return "Authorized. You can start broadcasting now."
        if self.call_state is CallState.ACTIVE:
            return "Connected, playing live audio"
        if self.call_state is CallState.DIALING:
            return "Connecting to broadcaster..."
        return "Waiting for the broadcast to start"


_CONDITION_MESSAGES: dict[StatusCondition, str] = {
    StatusCondition.WRONG_SECRET: "Wrong key! Access denied.",
    StatusCondition.WRONG_KEY_OR_NO_BROADCAST_YET: "Wrong key or no broadcast yet.",
    StatusCondition.MICROPHONE_UNAVAILABLE: "Error accessing microphone.",
    StatusCondition.BROADCASTER_UNREACHABLE: "Broadcaster not reachable.",
    StatusCondition.AUTOPLAY_BLOCKED: "Broadcast started! Tap play if audio is blocked.",
    StatusCondition.STORAGE_UNAVAILABLE: "Storage unavailable, authorization will not be remembered.",
    StatusCondition.KEY_MISMATCH: "A broadcast started under a different key.",
    StatusCondition.SESSION_KEY_IN_USE: "Another broadcaster already uses this key.",
    StatusCondition.RELAY_DISCONNECTED: "Connection to the relay was lost.",
}
