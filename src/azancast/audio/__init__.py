"""Audio capture, playback and frame handling.

Frames are 20ms of 48kHz mono 16-bit PCM throughout.
"""

from .capture import AudioCapture, SoundDeviceCapture, ToneCapture
from .packetizer import (
    EXPECTED_FRAME_SIZE_BYTES,
    AudioFramePacketizer,
    decode_pcm_frame,
    encode_pcm_frame,
    validate_frame_size,
)
from .sink import AudioSink, MemorySink, SoundDeviceSink
from .stream import AudioStream

__all__ = [
    "AudioCapture",
    "AudioFramePacketizer",
    "AudioSink",
    "AudioStream",
    "EXPECTED_FRAME_SIZE_BYTES",
    "MemorySink",
    "SoundDeviceCapture",
    "SoundDeviceSink",
    "ToneCapture",
    "decode_pcm_frame",
    "encode_pcm_frame",
    "validate_frame_size",
]
