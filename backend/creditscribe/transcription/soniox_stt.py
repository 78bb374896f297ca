"""
Soniox real-time transcription over a plain WebSocket.

The first frame is a JSON start request carrying the key, model and language
hints; audio follows as binary frames. Responses stream back as token lists
and only final tokens are forwarded.
"""
import asyncio
import inspect
import json
import logging
from typing import Any, Dict, Optional

from aiohttp import ClientSession, ClientWebSocketResponse, WSMsgType

from creditscribe.errors import ProviderConnectionError
from creditscribe.transcription.base import StreamingSTTProvider, TranscriptEvent
from creditscribe.transcription.registry import provider

logger = logging.getLogger(__name__)

SONIOX_WS_URL = "wss://stt-rt.soniox.com/transcribe-websocket"
SONIOX_DEFAULT_MODEL = "stt-rt-preview"


@provider("soniox")
class SonioxSTT(StreamingSTTProvider):
    """Soniox live transcription, used for Bengali"""

    supported_encodings = frozenset({"webm", "ogg", "wav", "linear16"})

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self._session: Optional[ClientSession] = None
        self._ws: Optional[ClientWebSocketResponse] = None
        self._receive_task: Optional[asyncio.Task] = None
        self._connection_alive = False
        self._closed_notified = False

    @property
    def is_connected(self) -> bool:
        return self._connection_alive

    def _build_start_request(self) -> Dict[str, Any]:
        request = {
            "api_key": self.config["api_key"],
            "model": self.config.get("model") or SONIOX_DEFAULT_MODEL,
            "language_hints": [self.config.get("language", "bn")],
        }
        if self.config.get("encoding") == "linear16":
            request["audio_format"] = "pcm_s16le"
            request["sample_rate"] = self.config.get("sample_rate", 16000)
            request["num_channels"] = self.config.get("channels", 1)
        else:
            # Containerized formats are detected by Soniox
            request["audio_format"] = "auto"
        return request

    async def initialize(self) -> None:
        """Open the socket and send the start request"""
        self._session = ClientSession()
        try:
            self._ws = await self._session.ws_connect(
                self.config.get("url", SONIOX_WS_URL),
                heartbeat=30
            )
            await self._ws.send_json(self._build_start_request())
        except Exception as exc:
            logger.error(f"Soniox connection failed – {exc}")
            await self._close_transport()
            raise ProviderConnectionError(f"Soniox connection failed: {exc}") from exc

        self._connection_alive = True
        self._closed_notified = False
        self._receive_task = asyncio.create_task(self._receive_loop(), name="soniox_receive")
        logger.info(f"Soniox connected | language={self.config.get('language')}")

    async def _receive_loop(self) -> None:
        ws = self._ws
        try:
            async for message in ws:
                if message.type == WSMsgType.TEXT:
                    await self._handle_response(message.data)
                elif message.type == WSMsgType.ERROR:
                    await self._report_error(ws.exception() or "Soniox socket error")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"Soniox receive loop failed: {exc}", exc_info=True)
            await self._report_error(exc)

        self._connection_alive = False
        if not self._closed_notified:
            self._closed_notified = True
            logger.info(f"Soniox closed | close_code={getattr(ws, 'close_code', None)}")
            await self._dispatch(self._on_close)

    async def _handle_response(self, raw: str) -> None:
        try:
            response = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed Soniox response: {raw[:200]}")
            return

        if response.get("error_code"):
            await self._report_error(
                f"Soniox error {response['error_code']}: {response.get('error_message', '')}".strip()
            )
            return

        final_tokens = [
            token for token in response.get("tokens") or []
            if token.get("is_final") and token.get("text")
        ]
        text = "".join(token["text"] for token in final_tokens).strip()
        if not text:
            return

        scores = [token["confidence"] for token in final_tokens if token.get("confidence") is not None]
        confidence = sum(scores) / len(scores) if scores else None
        logger.debug(f"Soniox result: {text} | confidence={confidence}")
        await self._dispatch(self._on_transcript, TranscriptEvent(
            source="soniox",
            text=text,
            is_final=True,
            confidence=confidence,
        ))

    async def _report_error(self, error) -> None:
        logger.error(f"Soniox error: {error}")
        self._connection_alive = False
        await self._dispatch(self._on_error, error)

    @staticmethod
    async def _dispatch(handler, *args) -> None:
        if handler is None:
            return
        result = handler(*args)
        if inspect.isawaitable(result):
            await result

    async def send_audio(self, chunk: bytes) -> None:
        """Forward microphone chunks to Soniox."""
        if self._ws is not None and self._connection_alive:
            await self._ws.send_bytes(chunk)

    async def cleanup(self) -> None:
        """Close the Soniox socket."""
        if self._ws is None and self._session is None:
            return
        self._connection_alive = False
        # Our own close is not reported back as a provider close
        self._closed_notified = True

        task = self._receive_task
        self._receive_task = None
        await self._close_transport()
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.wait({task})

    async def _close_transport(self) -> None:
        ws, session = self._ws, self._session
        self._ws = None
        self._session = None
        try:
            if ws is not None and not ws.closed:
                await ws.close()
        except Exception as exc:
            logger.error(f"Error closing Soniox socket: {exc}")
        if session is not None:
            await session.close()
