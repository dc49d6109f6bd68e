"""Microphone capture collaborators.

``acquire()`` returns a live ``AudioStream`` owned by the caller; stopping the
stream releases the device. Failures are reported as
``MicrophoneUnavailableError`` with the reason (permission or device).
"""

import asyncio
import logging
import math
from abc import ABC, abstractmethod
from typing import Any

import numpy as np

from src.azancast.audio.packetizer import (
    FRAME_DURATION_MS,
    SAMPLE_RATE_HZ,
    SAMPLES_PER_FRAME,
)
from src.azancast.audio.stream import AudioStream
from src.azancast.errors import MicrophoneFailure, MicrophoneUnavailableError

logger = logging.getLogger(__name__)


class AudioCapture(ABC):
    """Source of live microphone audio."""

    @abstractmethod
    async def acquire(self) -> AudioStream:
        """Open the microphone and start producing 20ms frames.

        Returns:
            Stream of captured frames; ``stop()`` releases the device

        Raises:
            MicrophoneUnavailableError: If permission is denied or no device exists
        """
        pass


class ToneCapture(AudioCapture):
    """Synthetic capture producing a sine tone in real time.

    Used for headless broadcasting and tests where no microphone exists.
    """

    def __init__(self, frequency_hz: float = 440.0, amplitude: float = 0.3) -> None:
        """Initialize tone generator.

        Args:
            frequency_hz: Tone frequency
            amplitude: Peak amplitude in [0, 1]
        """
        self.frequency_hz = frequency_hz
        self.amplitude = amplitude
        self._phase = 0

    def next_frame(self) -> bytes:
        """Render the next 20ms of the tone as 16-bit PCM."""
        t = (np.arange(SAMPLES_PER_FRAME) + self._phase) / SAMPLE_RATE_HZ
        self._phase += SAMPLES_PER_FRAME
        samples = self.amplitude * np.sin(2 * math.pi * self.frequency_hz * t)
        return (samples * 32767).astype("<i2").tobytes()

    async def acquire(self) -> AudioStream:
        stream = AudioStream(stream_id="tone")
        task = asyncio.create_task(self._produce(stream))
        stream.add_stop_callback(task.cancel)
        logger.info("Tone capture started", extra={"frequency_hz": self.frequency_hz})
        return stream

    async def _produce(self, stream: AudioStream) -> None:
        loop = asyncio.get_running_loop()
        frame_interval = FRAME_DURATION_MS / 1000.0
        next_deadline = loop.time()
        while stream.active:
            stream.push(self.next_frame())
            next_deadline += frame_interval
            await asyncio.sleep(max(0.0, next_deadline - loop.time()))


class SoundDeviceCapture(AudioCapture):
    """Microphone capture through PortAudio (sounddevice).

    The PortAudio callback runs on its own thread and hands frames to the event
    loop with ``call_soon_threadsafe``.
    """

    def __init__(self, device: str | int | None = None) -> None:
        """Initialize capture.

        Args:
            device: Optional input device name or index
        """
        self.device = device

    async def acquire(self) -> AudioStream:
        try:
            import sounddevice as sd
        except (ImportError, OSError) as e:
            raise MicrophoneUnavailableError(MicrophoneFailure.NO_DEVICE, str(e)) from e

        loop = asyncio.get_running_loop()
        stream = AudioStream(stream_id="microphone")

        def on_audio(indata: Any, frames: int, time_info: Any, status: Any) -> None:
            if status:
                logger.debug(f"Capture status: {status}")
            loop.call_soon_threadsafe(stream.push, bytes(indata))

        try:
            input_stream = sd.RawInputStream(
                samplerate=SAMPLE_RATE_HZ,
                blocksize=SAMPLES_PER_FRAME,
                channels=1,
                dtype="int16",
                device=self.device,
                callback=on_audio,
            )
            input_stream.start()
        except PermissionError as e:
            raise MicrophoneUnavailableError(MicrophoneFailure.PERMISSION_DENIED, str(e)) from e
        except (sd.PortAudioError, ValueError) as e:
            raise MicrophoneUnavailableError(MicrophoneFailure.NO_DEVICE, str(e)) from e

        def release() -> None:
            input_stream.stop()
            input_stream.close()
            logger.info("Microphone released")

        stream.add_stop_callback(release)
        logger.info("Microphone capture started", extra={"device": self.device or "default"})
        return stream
