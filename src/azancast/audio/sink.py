"""Playback sinks for received audio.

A sink is attached to a remote stream and plays it. Sinks may enforce an
autoplay policy: with autoplay disabled, ``attach_and_play`` attaches the
stream but raises ``AutoplayBlockedError``, and playback begins only when the
user calls ``play()``. Frames arriving before that are dropped, as live audio
should not be replayed late.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from src.azancast.audio.packetizer import SAMPLE_RATE_HZ
from src.azancast.audio.stream import AudioStream
from src.azancast.errors import AutoplayBlockedError

logger = logging.getLogger(__name__)


class AudioSink(ABC):
    """Plays one attached stream at a time."""

    def __init__(self, autoplay: bool = True) -> None:
        self.autoplay = autoplay
        self._stream: AudioStream | None = None
        self._playing = False
        self._pump_task: asyncio.Task[None] | None = None

    @property
    def attached_stream(self) -> AudioStream | None:
        """The stream currently attached, if any."""
        return self._stream

    @property
    def is_playing(self) -> bool:
        """True while frames are being written to the output."""
        return self._playing

    async def attach_and_play(self, stream: AudioStream) -> None:
        """Attach ``stream`` (replacing any previous one) and start playback.

        Raises:
            AutoplayBlockedError: If the autoplay policy requires a user gesture
        """
        await self.release()
        self._stream = stream
        self._pump_task = asyncio.create_task(self._pump(stream))

        if not self.autoplay:
            logger.info("Autoplay blocked, waiting for play()", extra={"stream_id": stream.stream_id})
            raise AutoplayBlockedError()

        await self.play()

    async def play(self) -> None:
        """Start (or resume) playback of the attached stream."""
        if self._stream is None or self._playing:
            return
        await self._open_output()
        self._playing = True
        logger.info("Playback started", extra={"stream_id": self._stream.stream_id})

    async def release(self) -> None:
        """Stop playback and detach the stream. Safe to call repeatedly."""
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

        if self._playing:
            await self._close_output()
            self._playing = False

        if self._stream is not None:
            self._stream.stop()
            logger.info("Sink released", extra={"stream_id": self._stream.stream_id})
            self._stream = None

    async def _pump(self, stream: AudioStream) -> None:
        async for frame in stream:
            if self._playing:
                await self._write(frame)

    @abstractmethod
    async def _open_output(self) -> None:
        """Open the output device."""
        pass

    @abstractmethod
    async def _write(self, frame: bytes) -> None:
        """Write one frame to the output."""
        pass

    @abstractmethod
    async def _close_output(self) -> None:
        """Close the output device."""
        pass


class MemorySink(AudioSink):
    """Sink recording played frames in memory (headless clients and tests)."""

    def __init__(self, autoplay: bool = True) -> None:
        super().__init__(autoplay=autoplay)
        self.frames: list[bytes] = []

    async def _open_output(self) -> None:
        pass

    async def _write(self, frame: bytes) -> None:
        self.frames.append(frame)

    async def _close_output(self) -> None:
        pass


class SoundDeviceSink(AudioSink):
    """Sink writing to a PortAudio output device (sounddevice)."""

    def __init__(self, autoplay: bool = True, device: str | int | None = None) -> None:
        super().__init__(autoplay=autoplay)
        self.device = device
        self._output: Any = None

    async def _open_output(self) -> None:
        import sounddevice as sd

        self._output = sd.RawOutputStream(
            samplerate=SAMPLE_RATE_HZ,
            channels=1,
            dtype="int16",
            device=self.device,
        )
        self._output.start()

    async def _write(self, frame: bytes) -> None:
        # RawOutputStream.write blocks until the device accepts the data
        await asyncio.to_thread(self._output.write, frame)

    async def _close_output(self) -> None:
        if self._output is not None:
            self._output.stop()
            self._output.close()
            self._output = None
