import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from creditscribe.config.settings import Settings
from creditscribe.errors import LedgerError
from creditscribe.handlers.transcribe_handler import AUTH_FAILED_CLOSE_CODE
from creditscribe.ledger.auth import TokenValidator
from creditscribe.ledger.store import LedgerStore
from creditscribe.main import create_app

from conftest import FakeLedger, FakeProvider

JWT_SECRET = "jwt-test-secret"


class EchoProvider(FakeProvider):
    """Answers every audio chunk with a final transcript of its text"""

    async def send_audio(self, chunk: bytes) -> None:
        await super().send_audio(chunk)
        await self.emit_transcript(chunk.decode())


def make_client(balance=5, deepgram_key="test-key", provider_cls=EchoProvider, ledger_error=None):
    settings = Settings(
        jwt_secret=JWT_SECRET,
        deepgram_api_key=deepgram_key,
        enable_billing_logs=False,
        _env_file=None
    )
    ledgers = []

    def ledger_factory(token, cache):
        ledger = FakeLedger(cache, balance=balance, error=ledger_error)
        ledgers.append(ledger)
        return ledger

    app = create_app(
        settings=settings,
        store=LedgerStore(),
        ledger_factory=ledger_factory,
        provider_factory=lambda language, settings, encoding: provider_cls()
    )
    return TestClient(app), ledgers


def token_for(user_id="u1"):
    return TokenValidator(JWT_SECRET).issue_token(user_id)


def start(ws, language="en-US", encoding="webm"):
    ws.send_json({"type": "start", "language": language, "encoding": encoding})
    return ws.receive_json()


def test_invalid_token_closes_connection():
    client, _ = make_client()

    with client.websocket_connect("/ws/transcribe?token=garbage") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()

    assert exc_info.value.code == AUTH_FAILED_CLOSE_CODE


def test_missing_token_closes_connection():
    client, _ = make_client()

    with client.websocket_connect("/ws/transcribe") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()

    assert exc_info.value.code == AUTH_FAILED_CLOSE_CODE


def test_start_stream_and_stop():
    client, ledgers = make_client(balance=5)

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        started = start(ws)
        assert started["type"] == "session_started"
        assert started["credits"] == 5

        ws.send_bytes(b"hello world")
        transcript = ws.receive_json()
        assert transcript == {
            "type": "transcript",
            "text": "hello world",
            "confidence": 0.9,
            "is_final": True,
        }

        ws.send_json({"type": "stop"})
        stopped = ws.receive_json()
        assert stopped["type"] == "session_stopped"
        assert stopped["session_id"] == started["session_id"]

    assert ledgers[0].fetches == 1


def test_zero_balance_refuses_session():
    client, ledgers = make_client(balance=0)

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        message = start(ws)

    assert message == {"type": "session_terminated", "reason": "insufficient_credits", "credits": 0}
    assert ledgers[0].calls == []


def test_last_credit_terminates_session():
    client, ledgers = make_client(balance=1)

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        assert start(ws)["type"] == "session_started"
        assert ws.receive_json() == {"type": "credits", "credits": 0}
        terminated = ws.receive_json()

    assert terminated["type"] == "session_terminated"
    assert terminated["reason"] == "insufficient_credits"
    assert len(ledgers[0].calls) == 1


def test_balance_read_failure_is_retryable_billing_error():
    client, _ = make_client(ledger_error=LedgerError("Unauthorized", status=401))

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        message = start(ws)

    assert message["type"] == "session_terminated"
    assert message["reason"] == "billing_error"
    assert message["retryable"] is True


def test_missing_api_key_is_configuration_error():
    client, ledgers = make_client(deepgram_key=None)

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        message = start(ws)

    assert message["type"] == "error"
    assert message["code"] == "configuration_error"
    assert ledgers[0].fetches == 0


def test_unsupported_language_is_configuration_error():
    client, _ = make_client()

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        message = start(ws, language="xx-XX")

    assert message["code"] == "configuration_error"


def test_denied_capture_is_capture_error():
    client, ledgers = make_client()

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        ws.send_json({"type": "capture_denied"})
        message = start(ws)

    assert message["type"] == "error"
    assert message["code"] == "capture_error"
    assert ledgers[0].calls == []


def test_unsupported_encoding():
    client, _ = make_client()

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        message = start(ws, encoding="flac")

    assert message["code"] == "unsupported"


def test_provider_unavailable():
    client, ledgers = make_client(provider_cls=lambda: FakeProvider(fail=True))

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        message = start(ws)

    assert message["code"] == "provider_unavailable"
    assert ledgers[0].calls == []


def test_invalid_message():
    client, _ = make_client()

    with client.websocket_connect(f"/ws/transcribe?token={token_for()}") as ws:
        ws.send_text("not json")
        assert ws.receive_json()["code"] == "invalid_message"

        ws.send_json({"type": "dance"})
        assert ws.receive_json()["code"] == "invalid_message"
