"""PCM frame format and relay packetization.

Every frame on the media path is 20ms of 48kHz mono signed 16-bit little
endian PCM, 960 samples or 1920 bytes. On the relay, frames travel as base64
inside JSON messages, stamped with a per-call sequence number.
"""

import base64
import binascii

from src.common.types import AudioFrame

SAMPLE_RATE_HZ: int = 48000
FRAME_DURATION_MS: int = 20
SAMPLE_WIDTH_BYTES: int = 2

SAMPLES_PER_FRAME: int = SAMPLE_RATE_HZ * FRAME_DURATION_MS // 1000
EXPECTED_FRAME_SIZE_BYTES: int = SAMPLES_PER_FRAME * SAMPLE_WIDTH_BYTES


def validate_frame_size(frame: AudioFrame) -> None:
    """Reject anything that is not exactly one frame.

    Raises:
        ValueError: If ``frame`` is not EXPECTED_FRAME_SIZE_BYTES long
    """
    if len(frame) != EXPECTED_FRAME_SIZE_BYTES:
        raise ValueError(
            f"Invalid frame size: {len(frame)} bytes, a {FRAME_DURATION_MS}ms mono frame "
            f"at {SAMPLE_RATE_HZ}Hz is {EXPECTED_FRAME_SIZE_BYTES} bytes"
        )


def encode_pcm_frame(frame: AudioFrame) -> str:
    validate_frame_size(frame)
    return base64.b64encode(frame).decode("ascii")


def decode_pcm_frame(payload: str) -> AudioFrame:
    """Turn a relay payload back into a frame.

    Raises:
        ValueError: If the payload is not base64 or not one frame long
    """
    try:
        frame = base64.b64decode(payload, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Cannot decode audio payload: {e}") from e

    validate_frame_size(frame)
    return frame


class AudioFramePacketizer:
    """Sequence numbering for one direction of a call.

    The sender stamps frames with ``pack``. The receiver passes every payload
    through ``unpack``, which drops frames arriving behind the newest one seen
    (playing them would replay old audio) and counts the gaps as lost.
    """

    def __init__(self) -> None:
        self.sent = 0
        self.last_received = 0
        self.lost = 0
        self.late = 0

    def pack(self, frame: AudioFrame) -> tuple[str, int]:
        """Encode ``frame`` and assign it the next sequence number.

        Returns:
            ``(payload, sequence)``, sequence numbers starting at 1

        Raises:
            ValueError: If ``frame`` is not one frame long
        """
        payload = encode_pcm_frame(frame)
        self.sent += 1
        return payload, self.sent

    def unpack(self, payload: str, sequence: int) -> AudioFrame | None:
        """Decode a received payload.

        Returns:
            The frame, or None when it arrived late

        Raises:
            ValueError: If the payload is malformed
        """
        frame = decode_pcm_frame(payload)
        if sequence <= self.last_received:
            self.late += 1
            return None

        self.lost += sequence - self.last_received - 1
        self.last_received = sequence
        return frame
