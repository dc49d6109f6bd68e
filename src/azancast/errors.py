"""Error taxonomy for session authorization and call orchestration.

Every error carries the ``StatusCondition`` it is reported as, so the session
controller can surface it on the status line without inspecting types.
"""

from enum import Enum

from src.azancast.models import StatusCondition


class AzancastError(Exception):
    """Base exception for all azancast errors."""

    condition: StatusCondition | None = None


class WrongSecretError(AzancastError):
    """Raised when the submitted broadcaster secret does not match."""

    condition = StatusCondition.WRONG_SECRET

    def __init__(self) -> None:
        super().__init__("Wrong broadcaster secret")


class WrongKeyOrNoBroadcastYetError(AzancastError):
    """Raised when a listener key is wrong or no session key is published."""

    condition = StatusCondition.WRONG_KEY_OR_NO_BROADCAST_YET

    def __init__(self, no_broadcast: bool = False) -> None:
        self.no_broadcast = no_broadcast
        message = "No broadcast has been started yet" if no_broadcast else "Wrong listener key"
        super().__init__(message)


class MicrophoneFailure(Enum):
    """Reason a microphone could not be acquired."""

    PERMISSION_DENIED = "permission_denied"
    NO_DEVICE = "no_device"


class MicrophoneUnavailableError(AzancastError):
    """Raised when the capture collaborator cannot provide an audio source."""

    condition = StatusCondition.MICROPHONE_UNAVAILABLE

    def __init__(self, reason: MicrophoneFailure, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = f"Microphone unavailable ({reason.value})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class AutoplayBlockedError(AzancastError):
    """Raised by a sink whose playback policy requires a user gesture.

    Non-fatal: the media is attached and flowing, only playback waits.
    """

    condition = StatusCondition.AUTOPLAY_BLOCKED

    def __init__(self) -> None:
        super().__init__("Autoplay blocked, tap to play")


class StorageUnavailableError(AzancastError):
    """Raised by key-value backends when the persistent store is unreachable."""

    condition = StatusCondition.STORAGE_UNAVAILABLE


class TransportError(AzancastError):
    """Base exception for media transport failures."""

    pass


class ConnectionLostError(TransportError):
    """Raised when an established relay connection drops."""

    condition = StatusCondition.RELAY_DISCONNECTED


class PeerUnavailableError(TransportError):
    """Raised when dialing a peer id that nobody has registered."""

    condition = StatusCondition.BROADCASTER_UNREACHABLE

    def __init__(self, peer_id: str) -> None:
        self.peer_id = peer_id
        super().__init__(f"Peer not reachable: {peer_id}")


class PeerIdTakenError(TransportError):
    """Raised when registering a peer id another client already holds."""

    condition = StatusCondition.SESSION_KEY_IN_USE

    def __init__(self, peer_id: str) -> None:
        self.peer_id = peer_id
        super().__init__(f"Peer id already registered: {peer_id}")


BroadcasterUnreachableError = PeerUnavailableError
"""Listener-facing name for a dial that found no registered broadcaster."""
