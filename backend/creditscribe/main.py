"""
CreditScribe API - live transcription metered in credits
"""
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional
import logging

from dotenv import load_dotenv

# Load environment variables before settings are read
env_path = Path(__file__).parent.parent / '.env'
load_dotenv(env_path)

from fastapi import FastAPI, Query, Request, WebSocket
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from creditscribe.config.settings import Settings, get_settings
from creditscribe.events import get_event_bus
from creditscribe.handlers.transcribe_handler import (
    LedgerFactory,
    ProviderFactory,
    TranscribeWebSocketHandler,
)
from creditscribe.ledger.auth import TokenValidator
from creditscribe.ledger.routes import router as ledger_router
from creditscribe.ledger.store import LedgerStore
from creditscribe.logging_config import configure_logging
from creditscribe.transcription import create_provider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    settings: Settings = app.state.settings
    configure_logging(settings)
    logger.info(f"Starting {settings.app_name} v{settings.app_version}")

    api_keys_status = settings.validate_api_keys()
    if not api_keys_status["deepgram"]:
        logger.warning("DEEPGRAM_API_KEY not configured - English sessions will be refused")
    if not api_keys_status["soniox"]:
        logger.warning("SONIOX_API_KEY not configured - Bengali sessions will be refused")

    billing_config = settings.validate_billing_config()
    for warning in billing_config["warnings"]:
        logger.warning(f"Billing config: {warning}")

    await app.state.event_bus.emit(
        "global:system:startup",
        app_name=settings.app_name,
        version=settings.app_version,
        api_keys_configured=api_keys_status
    )

    yield

    logger.info("Shutting down application...")
    await app.state.transcribe_handler.shutdown()
    await app.state.event_bus.emit("global:system:shutdown")
    logger.info("Application shutdown complete")


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    ledger_factory: Optional[LedgerFactory] = None,
    provider_factory: ProviderFactory = create_provider
) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description="Live speech-to-text metered in credits",
        version=settings.app_version,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    token_validator = TokenValidator.from_settings(settings)
    event_bus = get_event_bus()

    app.state.settings = settings
    app.state.ledger = store or LedgerStore()
    app.state.token_validator = token_validator
    app.state.event_bus = event_bus
    app.state.transcribe_handler = TranscribeWebSocketHandler(
        settings,
        token_validator,
        ledger_factory=ledger_factory,
        provider_factory=provider_factory,
        event_bus=event_bus
    )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse({"error": exc.detail}, status_code=exc.status_code)

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "message": f"{settings.app_name} is running",
            "version": settings.app_version,
            "api_keys_configured": settings.validate_api_keys(),
            "transcription": app.state.transcribe_handler.get_stats(),
            "event_system": app.state.event_bus.get_stats(),
        }

    app.include_router(ledger_router)

    @app.websocket("/ws/transcribe")
    async def websocket_transcribe(
        websocket: WebSocket,
        token: Optional[str] = Query(None, description="Access token")
    ):
        """WebSocket endpoint for live transcription sessions."""
        await app.state.transcribe_handler.handle_connection(websocket, token)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "creditscribe.main:app",
        host=_settings.host,
        port=_settings.port,
        reload=_settings.debug
    )
