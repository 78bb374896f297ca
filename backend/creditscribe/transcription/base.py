from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Union

from pydantic import BaseModel, Field


class TranscriptEvent(BaseModel):
    """Recognized text from a streaming provider"""
    source: str
    text: str
    is_final: bool = True
    confidence: Optional[float] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


TranscriptHandler = Callable[[TranscriptEvent], Union[None, Awaitable[None]]]
SignalHandler = Callable[..., Union[None, Awaitable[None]]]


class StreamingSTTProvider(ABC):
    """
    Streaming Speech-to-Text provider interface with async context manager support.

    A provider wraps one live connection. Inbound audio goes through
    ``send_audio``; recognized text, close and error are reported through
    the handlers registered with ``set_handlers``.
    """

    supported_encodings: FrozenSet[str] = frozenset()

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self._on_transcript: Optional[TranscriptHandler] = None
        self._on_close: Optional[SignalHandler] = None
        self._on_error: Optional[SignalHandler] = None

    async def __aenter__(self):
        """Async context manager entry"""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit"""
        await self.cleanup()

    def set_handlers(
        self,
        on_transcript: Optional[TranscriptHandler] = None,
        on_close: Optional[SignalHandler] = None,
        on_error: Optional[SignalHandler] = None
    ) -> None:
        self._on_transcript = on_transcript
        self._on_close = on_close
        self._on_error = on_error

    def supports_encoding(self, encoding: str) -> bool:
        return encoding in self.supported_encodings

    @abstractmethod
    async def initialize(self) -> None:
        """Open the live connection (connect, authenticate, etc.)"""
        pass

    @abstractmethod
    async def cleanup(self) -> None:
        """Close the connection and release resources"""
        pass

    @abstractmethod
    async def send_audio(self, chunk: bytes) -> None:
        """Forward one audio chunk to the provider"""
        pass

    @property
    @abstractmethod
    def is_connected(self) -> bool:
        """Check if provider is connected and ready"""
        pass
