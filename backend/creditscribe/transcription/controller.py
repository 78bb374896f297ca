"""
Transcription session controller: owns one streaming provider connection and
the audio capture feeding it, and reports a single "session is live" signal.
"""
import asyncio
import inspect
import logging
from enum import Enum
from typing import Callable, Optional

from creditscribe.errors import UnsupportedError
from creditscribe.transcription.audio_source import AudioSource
from creditscribe.transcription.base import (
    SignalHandler,
    StreamingSTTProvider,
    TranscriptEvent,
    TranscriptHandler,
)

logger = logging.getLogger(__name__)


class SessionState(Enum):
    CLOSED = "closed"
    OPENING = "opening"
    ACTIVE = "active"
    CLOSING = "closing"


class TranscriptionSessionController:
    """
    Lifecycle of one live transcription session.

    ``open()`` raises on startup failures (capture, capability, configuration,
    provider connection). Once live, provider close/error and the end of the
    audio stream all funnel into ``close()``, which emits
    ``on_session_active(False)`` exactly once.
    """

    def __init__(
        self,
        provider_factory: Callable[[], StreamingSTTProvider],
        audio_source: AudioSource,
        on_session_active: Optional[SignalHandler] = None,
        on_transcript: Optional[TranscriptHandler] = None,
        session_id: Optional[str] = None
    ):
        self._provider_factory = provider_factory
        self._audio_source = audio_source
        self._on_session_active = on_session_active
        self._on_transcript = on_transcript
        self.session_id = session_id or "default"

        self.state = SessionState.CLOSED
        self.bytes_forwarded = 0
        self._provider: Optional[StreamingSTTProvider] = None
        self._forward_task: Optional[asyncio.Task] = None
        self._close_task: Optional[asyncio.Task] = None

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    def set_listeners(
        self,
        on_session_active: Optional[SignalHandler] = None,
        on_transcript: Optional[TranscriptHandler] = None
    ) -> None:
        if on_session_active is not None:
            self._on_session_active = on_session_active
        if on_transcript is not None:
            self._on_transcript = on_transcript

    async def _notify(self, handler, *args) -> None:
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                f"Session listener failed | session_id={self.session_id} | error={e}",
                exc_info=True
            )

    async def open(self) -> None:
        """Start capture, connect the provider and begin forwarding audio"""
        if self.state is not SessionState.CLOSED:
            logger.debug(f"open() ignored, session is {self.state.value}")
            return

        self.state = SessionState.OPENING
        self.bytes_forwarded = 0

        try:
            provider = self._provider_factory()
            encoding = self._audio_source.encoding
            if not provider.supports_encoding(encoding):
                raise UnsupportedError(f"Audio encoding '{encoding}' is not supported")

            await self._audio_source.start()

            provider.set_handlers(
                on_transcript=self._handle_transcript,
                on_close=self._handle_provider_closed,
                on_error=self._handle_provider_error
            )
            self._provider = provider
            await provider.initialize()

        except BaseException:
            await self._teardown()
            self.state = SessionState.CLOSED
            raise

        if self.state is not SessionState.OPENING:
            # close() ran while the connection was being established
            await self._teardown()
            return

        self.state = SessionState.ACTIVE
        logger.info(f"Transcription session live | session_id={self.session_id}")

        self._forward_task = asyncio.create_task(
            self._forward_audio(),
            name=f"audio_forwarder_{self.session_id}"
        )
        await self._notify(self._on_session_active, True)

    async def close(self) -> None:
        """Tear down capture and the provider connection; idempotent"""
        if self.state in (SessionState.CLOSED, SessionState.CLOSING):
            return

        was_active = self.state is SessionState.ACTIVE
        self.state = SessionState.CLOSING

        task = self._forward_task
        self._forward_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

        await self._teardown()
        self.state = SessionState.CLOSED

        logger.info(
            f"Transcription session closed | "
            f"session_id={self.session_id} | "
            f"bytes_forwarded={self.bytes_forwarded}"
        )

        if was_active:
            await self._notify(self._on_session_active, False)

    async def _teardown(self) -> None:
        try:
            await self._audio_source.stop()
        except Exception as e:
            logger.error(f"Error stopping audio capture: {e}")

        provider = self._provider
        self._provider = None
        if provider is not None:
            try:
                await provider.cleanup()
            except Exception as e:
                logger.error(f"Error closing transcription provider: {e}")

    async def _forward_audio(self) -> None:
        """Forward captured chunks until capture ends, then close the session"""
        try:
            async for chunk in self._audio_source.chunks():
                provider = self._provider
                if provider is None:
                    break
                await provider.send_audio(chunk)
                self.bytes_forwarded += len(chunk)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Error forwarding audio: {e}", exc_info=True)

        if self.state is SessionState.ACTIVE:
            logger.info(f"Audio stream ended | session_id={self.session_id}")
            await self.close()

    async def _handle_transcript(self, event: TranscriptEvent) -> None:
        await self._notify(self._on_transcript, event)

    def _schedule_close(self, reason: str) -> None:
        if self.state is not SessionState.ACTIVE:
            return
        if self._close_task is not None and not self._close_task.done():
            return
        logger.info(f"Provider ended session | session_id={self.session_id} | reason={reason}")
        # Closing from inside the provider's receive loop would wait on itself
        self._close_task = asyncio.create_task(self.close())

    async def _handle_provider_closed(self, *args) -> None:
        self._schedule_close("provider_closed")

    async def _handle_provider_error(self, error=None) -> None:
        self._schedule_close(f"provider_error: {error}")

    async def wait_closed(self) -> None:
        """Wait for a close scheduled by a provider event to finish"""
        task = self._close_task
        if task is not None and not task.done():
            await asyncio.wait({task})
