"""
WebSocket handler for live transcription sessions.

One connection carries any number of consecutive sessions. Each session gets
its own audio source, transcription controller and billing coordinator; the
balance cache and ledger client live for the whole connection.
"""
import asyncio
import json
import logging
import uuid
from typing import Any, Callable, Dict, Optional

import aiohttp
from fastapi import WebSocket, WebSocketDisconnect

from creditscribe.billing import BalanceCache, LedgerAdjustmentClient, SessionBillingCoordinator
from creditscribe.config.settings import Settings
from creditscribe.errors import (
    CaptureError,
    ConfigurationError,
    LedgerError,
    ProviderConnectionError,
    UnsupportedError,
)
from creditscribe.events import EventBus
from creditscribe.ledger.auth import Principal, TokenValidator
from creditscribe.transcription import (
    QueueAudioSource,
    StreamingSTTProvider,
    TranscriptEvent,
    TranscriptionSessionController,
    check_provider_config,
    create_provider,
)

logger = logging.getLogger(__name__)

# Close code sent when the connection token is missing or invalid
AUTH_FAILED_CLOSE_CODE = 4401

LedgerFactory = Callable[[str, BalanceCache], LedgerAdjustmentClient]
ProviderFactory = Callable[[str, Settings, str], StreamingSTTProvider]

_START_ERRORS = (
    (CaptureError, "capture_error"),
    (UnsupportedError, "unsupported"),
    (ConfigurationError, "configuration_error"),
    (ProviderConnectionError, "provider_unavailable"),
)


class TranscribeConnection:
    """State for one authenticated WebSocket"""

    def __init__(
        self,
        websocket: WebSocket,
        principal: Principal,
        ledger: LedgerAdjustmentClient,
        cache: BalanceCache,
        settings: Settings,
        provider_factory: ProviderFactory,
        event_bus: Optional[EventBus] = None
    ):
        self.id = str(uuid.uuid4())
        self.websocket = websocket
        self.principal = principal
        self.ledger = ledger
        self.cache = cache
        self.settings = settings
        self._provider_factory = provider_factory
        self._event_bus = event_bus

        self.coordinator: Optional[SessionBillingCoordinator] = None
        self.audio_source: Optional[QueueAudioSource] = None
        self._capture_denied = False
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def session_active(self) -> bool:
        return self.coordinator is not None and self.coordinator.is_active

    async def send(self, message: Dict[str, Any]) -> None:
        if self._closed:
            return
        async with self._send_lock:
            try:
                await self.websocket.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to send {message.get('type')} to {self.id}: {e}")
                self._closed = True

    async def send_error(self, code: str, message: str) -> None:
        await self.send({"type": "error", "code": code, "message": message})

    async def handle_text(self, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            await self.send_error("invalid_message", "Messages must be JSON")
            return

        if not isinstance(message, dict):
            await self.send_error("invalid_message", "Messages must be JSON objects")
            return

        message_type = message.get("type")
        if message_type == "start":
            await self.start_session(
                language=message.get("language") or self.settings.default_language,
                encoding=message.get("encoding") or "webm"
            )
        elif message_type == "stop":
            await self.stop_session()
        elif message_type == "capture_denied":
            await self.capture_denied()
        else:
            await self.send_error("invalid_message", f"Unknown message type: {message_type}")

    def handle_audio(self, chunk: bytes) -> None:
        if self.audio_source is not None and self.session_active:
            self.audio_source.feed(chunk)

    async def start_session(self, language: str, encoding: str) -> None:
        if self.session_active:
            logger.warning(f"Start ignored, session already active | connection_id={self.id}")
            return

        try:
            check_provider_config(language, self.settings)
        except ConfigurationError as e:
            await self.send_error("configuration_error", str(e))
            return

        session_id = str(uuid.uuid4())
        source = QueueAudioSource(encoding=encoding, max_chunks=self.settings.audio_queue_size)
        if self._capture_denied:
            source.deny()
            self._capture_denied = False

        controller = TranscriptionSessionController(
            lambda: self._provider_factory(language, self.settings, encoding),
            source,
            on_transcript=self._send_transcript,
            session_id=session_id
        )
        coordinator = SessionBillingCoordinator(
            controller,
            self.ledger,
            self.cache,
            on_insufficient_credits=self._send_insufficient_credits,
            on_billing_error=self._send_billing_error,
            on_balance=self._send_credits,
            session_id=session_id,
            event_bus=self._event_bus
        )
        self.audio_source = source
        self.coordinator = coordinator

        try:
            started = await coordinator.start_session()
        except LedgerError as e:
            await self._send_billing_error(e)
            return
        except (CaptureError, UnsupportedError, ConfigurationError, ProviderConnectionError) as e:
            for error_type, code in _START_ERRORS:
                if isinstance(e, error_type):
                    await self.send_error(code, str(e))
                    break
            return

        if started:
            logger.info(
                f"Session started | connection_id={self.id} | session_id={session_id} | "
                f"user_id={self.principal.user_id} | language={language}"
            )
            await self.send({
                "type": "session_started",
                "session_id": session_id,
                "language": language,
                "credits": self.cache.get(),
            })

    async def stop_session(self) -> None:
        coordinator = self.coordinator
        if coordinator is None or not coordinator.is_active:
            return
        await coordinator.stop_session()
        await self.send({
            "type": "session_stopped",
            "session_id": coordinator.session_id,
            "credits": self.cache.get(),
        })

    async def capture_denied(self) -> None:
        """Client could not open the microphone"""
        if not self.session_active:
            self._capture_denied = True
            return
        await self.coordinator.stop_session()
        await self.send_error("capture_error", "Microphone permission denied")

    async def shutdown(self) -> None:
        self._closed = True
        if self.coordinator is not None:
            await self.coordinator.shutdown()

    async def _send_transcript(self, event: TranscriptEvent) -> None:
        await self.send({
            "type": "transcript",
            "text": event.text,
            "confidence": event.confidence,
            "is_final": event.is_final,
        })

    async def _send_credits(self, balance: int) -> None:
        await self.send({"type": "credits", "credits": balance})

    async def _send_insufficient_credits(self) -> None:
        await self.send({
            "type": "session_terminated",
            "reason": "insufficient_credits",
            "credits": self.cache.get(),
        })

    async def _send_billing_error(self, error: LedgerError) -> None:
        await self.send({
            "type": "session_terminated",
            "reason": "billing_error",
            "message": str(error),
            "retryable": True,
        })


class TranscribeWebSocketHandler:
    """Authenticates connections and runs their message loop"""

    def __init__(
        self,
        settings: Settings,
        token_validator: TokenValidator,
        ledger_factory: Optional[LedgerFactory] = None,
        provider_factory: ProviderFactory = create_provider,
        event_bus: Optional[EventBus] = None
    ):
        self.settings = settings
        self.token_validator = token_validator
        self._ledger_factory = ledger_factory
        self._provider_factory = provider_factory
        self._event_bus = event_bus
        self._connections: Dict[str, TranscribeConnection] = {}

    def get_stats(self) -> Dict[str, Any]:
        return {
            "connections": len(self._connections),
            "active_sessions": sum(1 for c in self._connections.values() if c.session_active),
        }

    async def handle_connection(self, websocket: WebSocket, token: Optional[str]) -> None:
        await websocket.accept()

        principal = self.token_validator.validate_token(token) if token else None
        if principal is None:
            logger.warning("Rejected transcription connection with invalid token")
            await websocket.close(code=AUTH_FAILED_CLOSE_CODE, reason="Unauthorized")
            return

        http_session: Optional[aiohttp.ClientSession] = None
        cache = BalanceCache()
        if self._ledger_factory is not None:
            ledger = self._ledger_factory(token, cache)
        else:
            http_session = aiohttp.ClientSession()
            ledger = LedgerAdjustmentClient(
                self.settings.ledger_base_url,
                token,
                cache,
                timeout=self.settings.ledger_request_timeout,
                session=http_session
            )

        connection = TranscribeConnection(
            websocket,
            principal,
            ledger,
            cache,
            self.settings,
            self._provider_factory,
            event_bus=self._event_bus
        )
        self._connections[connection.id] = connection
        logger.info(f"Transcription connection open | connection_id={connection.id} | user_id={principal.user_id}")

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                if message.get("bytes") is not None:
                    connection.handle_audio(message["bytes"])
                elif message.get("text") is not None:
                    await connection.handle_text(message["text"])
        except WebSocketDisconnect:
            pass
        finally:
            self._connections.pop(connection.id, None)
            await connection.shutdown()
            if http_session is not None:
                await http_session.close()
            logger.info(f"Transcription connection closed | connection_id={connection.id}")

    async def shutdown(self) -> None:
        for connection in list(self._connections.values()):
            await connection.shutdown()
        self._connections.clear()
