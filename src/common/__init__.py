"""Common utilities and type definitions.

This package provides shared type aliases used across the session core,
the media transports and the relay server.
"""

from src.common.types import (
    AudioFrame,
    AudioFrameStream,
    CallID,
    NotificationPayload,
    PeerID,
    SessionKey,
)

__all__ = [
    "AudioFrame",
    "AudioFrameStream",
    "CallID",
    "NotificationPayload",
    "PeerID",
    "SessionKey",
]
