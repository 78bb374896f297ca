import inspect
import logging
from typing import Any, Dict

from deepgram import DeepgramClient, DeepgramClientOptions, LiveOptions, LiveTranscriptionEvents

from creditscribe.errors import ProviderConnectionError
from creditscribe.transcription.base import StreamingSTTProvider, TranscriptEvent
from creditscribe.transcription.registry import provider

logger = logging.getLogger(__name__)


@provider("deepgram")
class DeepgramSTT(StreamingSTTProvider):
    """Deepgram live transcription over the SDK's async websocket"""

    # Containerized formats are detected by Deepgram; raw PCM needs explicit options
    supported_encodings = frozenset({"webm", "ogg", "wav", "linear16"})

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.client = None
        self.dg_connection = None
        self._connection_alive = False
        self._closed_notified = False

    @property
    def is_connected(self) -> bool:
        return self._connection_alive

    def _build_options(self) -> LiveOptions:
        options = {
            "model": self.config.get("model", "nova-2"),
            "language": self.config.get("language", "en-US"),
            "smart_format": True,
            "interim_results": False,
        }
        if self.config.get("encoding") == "linear16":
            options["encoding"] = "linear16"
            options["sample_rate"] = self.config.get("sample_rate", 16000)
            options["channels"] = self.config.get("channels", 1)
        return LiveOptions(**options)

    async def initialize(self) -> None:
        """Connect to Deepgram"""
        cfg = DeepgramClientOptions(
            api_key=self.config["api_key"],
            options={"keepalive": "true"}
        )
        self.client = DeepgramClient("", cfg)
        self.dg_connection = self.client.listen.asyncwebsocket.v("1")
        self._setup_event_handlers()

        try:
            started = await self.dg_connection.start(self._build_options())
        except Exception as exc:
            logger.error(f"Deepgram connection failed – {exc}")
            raise ProviderConnectionError(f"Deepgram connection failed: {exc}") from exc

        if not started:
            raise ProviderConnectionError("Deepgram refused the connection")

        self._connection_alive = True
        self._closed_notified = False
        logger.info(f"Deepgram connected | language={self.config.get('language')}")

    def _setup_event_handlers(self) -> None:
        """Map Deepgram socket events onto the provider handlers"""

        async def on_transcript(dg_self, result, **_):
            if not (hasattr(result, "channel") and result.channel.alternatives):
                return
            alt = result.channel.alternatives[0]
            is_final = getattr(result, "is_final", False)
            if not alt.transcript or not is_final:
                return
            confidence = getattr(alt, "confidence", None)
            logger.debug(f"DG result: {alt.transcript} | confidence={confidence}")
            await self._dispatch(self._on_transcript, TranscriptEvent(
                source="deepgram",
                text=alt.transcript,
                is_final=True,
                confidence=confidence,
            ))

        async def on_error(dg_self, error, **_):
            logger.error(f"Deepgram error: {error}")
            self._connection_alive = False
            await self._dispatch(self._on_error, error)

        async def on_close(dg_self, close, **_):
            logger.info(f"Deepgram closed: {close}")
            self._connection_alive = False
            if not self._closed_notified:
                self._closed_notified = True
                await self._dispatch(self._on_close)

        self.dg_connection.on(LiveTranscriptionEvents.Transcript, on_transcript)
        self.dg_connection.on(LiveTranscriptionEvents.Error, on_error)
        self.dg_connection.on(LiveTranscriptionEvents.Close, on_close)

    @staticmethod
    async def _dispatch(handler, *args) -> None:
        if handler is None:
            return
        result = handler(*args)
        if inspect.isawaitable(result):
            await result

    async def send_audio(self, chunk: bytes) -> None:
        """Forward microphone chunks to Deepgram."""
        if self.dg_connection and self._connection_alive:
            await self.dg_connection.send(chunk)

    async def cleanup(self) -> None:
        """Close the Deepgram socket."""
        if self.dg_connection is None:
            return
        connection = self.dg_connection
        self.dg_connection = None
        self._connection_alive = False
        # Our own close is not reported back as a provider close
        self._closed_notified = True
        try:
            await connection.finish()
        except Exception as exc:
            logger.error(f"Error finishing Deepgram connection: {exc}")
