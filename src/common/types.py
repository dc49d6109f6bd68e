"""Common type aliases for the azancast project.

These aliases name the domain concepts shared by the session core, the
transports and the relay:

- Audio types: raw PCM frames and streams of them
- Addressing types: session keys and transport peer identifiers
- Payload types: serialized notification and relay messages

Example:
    >>> from src.common.types import AudioFrame, SessionKey
    >>> frame: AudioFrame = b'\\x00' * 1920  # 20ms at 48kHz mono
    >>> key: SessionKey = "482913"
"""

from collections.abc import AsyncIterator

# Audio types
type AudioFrame = bytes
"""20ms PCM audio frame at 48kHz mono (960 samples = 1920 bytes).

Each frame holds 960 16-bit little-endian samples. Microphone capture, the
relay wire format and playback sinks all exchange audio in this unit.

Example:
    >>> frame: AudioFrame = b'\\x00' * 1920  # Silence
    >>> samples = len(frame) // 2
    >>> duration_ms = (samples / 48000) * 1000
    >>> assert duration_ms == 20.0
"""

type AudioFrameStream = AsyncIterator[AudioFrame]
"""Async stream of audio frames, as yielded by ``AudioStream``."""


# Addressing types
type SessionKey = str
"""Address under which the broadcaster publishes itself on the transport.

Generated once as a 6-digit numeric string and reused (sticky-key policy)
until an operator rotates it. Listeners use it both as the secret they
submit and as the address they dial.

Example:
    >>> key: SessionKey = "482913"
    >>> assert key.isdigit() and len(key) == 6
"""

type PeerID = str
"""Transport-level peer identifier.

The broadcaster registers with its SessionKey as PeerID; listeners register
anonymously and receive a generated identifier such as ``"peer-3f9c1a2b7d40"``.
"""

type CallID = str
"""Identifier of a single call between two peers on the transport."""


# Payload types
type NotificationPayload = str
"""JSON-encoded session notification as carried by a notification channel."""
