"""
Audio sources feeding a transcription session.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from creditscribe.errors import CaptureError

logger = logging.getLogger(__name__)


class AudioSource(ABC):
    """Captured audio, delivered as encoded chunks"""

    encoding: str = "linear16"

    @abstractmethod
    async def start(self) -> None:
        """Begin capture. Raises CaptureError when capture is not possible."""
        pass

    @abstractmethod
    async def stop(self) -> None:
        """Stop capture; safe to call more than once"""
        pass

    @abstractmethod
    def chunks(self) -> AsyncIterator[bytes]:
        """Iterate captured chunks until capture stops"""
        pass


class QueueAudioSource(AudioSource):
    """
    Audio pushed in by a client connection (browser MediaRecorder chunks
    relayed over a WebSocket).
    """

    def __init__(self, encoding: str = "webm", max_chunks: int = 100):
        self.encoding = encoding
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_chunks)
        self._started = False
        self._ended = False
        self._denied = False
        self.dropped_chunks = 0

    @property
    def is_capturing(self) -> bool:
        return self._started and not self._ended

    def deny(self) -> None:
        """Record that the client refused microphone access"""
        self._denied = True

    async def start(self) -> None:
        if self._denied:
            raise CaptureError("Microphone permission denied")
        if self._ended:
            raise CaptureError("Audio source already closed")
        self._started = True

    def feed(self, chunk: bytes) -> None:
        """Queue a chunk from the client; drops it when the buffer is full"""
        if self._ended or not chunk:
            return
        try:
            self._queue.put_nowait(chunk)
        except asyncio.QueueFull:
            self.dropped_chunks += 1
            logger.warning(f"Audio buffer full, dropped chunk ({self.dropped_chunks} total)")

    def end(self) -> None:
        """Mark end of audio; pending chunks are still delivered"""
        if self._ended:
            return
        self._ended = True
        self._put_sentinel()

    def _put_sentinel(self) -> None:
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Make room so the consumer is guaranteed to see the sentinel
            self._queue.get_nowait()
            self.dropped_chunks += 1
            self._queue.put_nowait(None)

    async def stop(self) -> None:
        self.end()

    async def chunks(self) -> AsyncIterator[bytes]:
        while True:
            chunk: Optional[bytes] = await self._queue.get()
            if chunk is None:
                return
            yield chunk
