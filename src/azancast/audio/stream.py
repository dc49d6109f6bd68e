"""Live audio stream with fan-out to forked readers.

An ``AudioStream`` is both the producer side (``push``) and an async iterator
over the frames pushed into it. ``fork()`` creates a child stream receiving a
copy of every later frame, which is how one microphone feeds any number of
listener calls. Stopping a stream stops all of its forks, and runs its stop
callbacks (the capture device releases itself that way).
"""

import asyncio
import logging
import uuid
from collections.abc import Callable

from src.common.types import AudioFrame, AudioFrameStream

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFERED_FRAMES = 50  # 1 second at 20ms per frame


class AudioStream:
    """Stream of 20ms PCM frames.

    Each stream buffers at most ``max_buffered_frames`` unread frames; when a
    reader falls behind the oldest frames are dropped, keeping playback live
    rather than delayed.
    """

    def __init__(
        self,
        stream_id: str | None = None,
        max_buffered_frames: int = DEFAULT_MAX_BUFFERED_FRAMES,
    ) -> None:
        self.stream_id = stream_id or f"stream-{uuid.uuid4().hex[:12]}"
        self._queue: asyncio.Queue[AudioFrame | None] = asyncio.Queue(maxsize=max_buffered_frames)
        self._forks: list["AudioStream"] = []
        self._parent: "AudioStream | None" = None
        self._stop_callbacks: list[Callable[[], None]] = []
        self._active = True
        self.frames_pushed = 0
        self.frames_dropped = 0

    @property
    def active(self) -> bool:
        """True until ``stop()`` is called on this stream or its parent."""
        return self._active

    @property
    def fork_count(self) -> int:
        """Number of live forks."""
        return len(self._forks)

    def push(self, frame: AudioFrame) -> None:
        """Append a frame for readers of this stream and all of its forks."""
        if not self._active:
            return

        self._enqueue(frame)
        self.frames_pushed += 1
        for fork in list(self._forks):
            fork.push(frame)

    def _enqueue(self, item: AudioFrame | None) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.frames_dropped += 1
        self._queue.put_nowait(item)

    def fork(self) -> "AudioStream":
        """Create a child stream that receives every frame pushed from now on.

        Raises:
            RuntimeError: If this stream is already stopped
        """
        if not self._active:
            raise RuntimeError(f"Cannot fork stopped stream {self.stream_id}")

        child = AudioStream(
            stream_id=f"{self.stream_id}/{len(self._forks) + 1}",
            max_buffered_frames=self._queue.maxsize,
        )
        child._parent = self
        self._forks.append(child)
        return child

    def add_stop_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once when the stream stops."""
        if not self._active:
            callback()
            return
        self._stop_callbacks.append(callback)

    def stop(self) -> None:
        """Stop the stream and all forks; readers finish after buffered frames.

        Safe to call more than once.
        """
        if not self._active:
            return

        self._active = False
        self._enqueue(None)

        for fork in list(self._forks):
            fork.stop()
        self._forks.clear()

        if self._parent is not None and self in self._parent._forks:
            self._parent._forks.remove(self)
        self._parent = None

        for callback in self._stop_callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Audio stream stop callback failed", extra={"stream_id": self.stream_id})
        self._stop_callbacks.clear()

    async def read(self) -> AudioFrame | None:
        """Return the next frame, or None once the stream has ended."""
        if not self._active and self._queue.empty():
            return None
        frame = await self._queue.get()
        if frame is None:
            # Keep the end marker visible to any other waiting reader
            self._queue.put_nowait(None)
        return frame

    async def __aiter__(self) -> AudioFrameStream:
        while True:
            frame = await self.read()
            if frame is None:
                return
            yield frame
