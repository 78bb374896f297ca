"""
Application configuration and settings.
"""
from typing import List, Optional, Dict, Any
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field

DEFAULT_SECRET = "your-internal-secret-change-in-production"


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "CreditScribe API"
    app_version: str = "1.0.0"
    debug: bool = Field(default=False)

    # Server
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # CORS
    cors_origins: List[str] = Field(
        default=[
            "http://localhost:3000",
            "http://127.0.0.1:3000",
            "http://localhost:5173",
        ]
    )

    # Speech recognition
    deepgram_api_key: Optional[str] = Field(default=None)
    default_stt_model: str = Field(default="nova-2")
    soniox_api_key: Optional[str] = Field(default=None)
    soniox_model: str = Field(default="stt-rt-preview")
    default_language: str = Field(default="en-US")
    audio_queue_size: int = Field(
        default=100,
        description="Maximum number of buffered audio chunks per session"
    )

    # Ledger service
    ledger_base_url: str = Field(
        default="http://localhost:8000",
        description="Base URL of the ledger REST API used for balance reads and adjustments"
    )
    ledger_request_timeout: float = Field(
        default=5.0,
        description="Timeout for a single ledger request in seconds"
    )

    # Auth
    jwt_secret: str = Field(default=DEFAULT_SECRET)
    jwt_algorithm: str = Field(default="HS256")
    access_token_ttl_seconds: int = Field(default=7 * 24 * 3600)
    backend_shared_secret: str = Field(
        default=DEFAULT_SECRET,
        description="Shared secret for internal API authentication"
    )

    # Logging
    log_level: str = Field(default="INFO")
    log_format: str = Field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    enable_billing_logs: bool = Field(
        default=True,
        description="Enable the rotating billing log file"
    )
    billing_log_level: str = Field(
        default="DEBUG",
        description="Log level specifically for billing operations"
    )
    billing_log_file: str = Field(default="logs/billing.log")

    def validate_api_keys(self) -> Dict[str, bool]:
        """Validate which API keys are configured"""
        return {
            "deepgram": bool(self.deepgram_api_key),
            "soniox": bool(self.soniox_api_key),
            "ledger": bool(self.ledger_base_url and self.jwt_secret),
        }

    def get_service_api_key(self, service: str) -> Optional[str]:
        """Get API key for a specific service"""
        key_map = {
            "deepgram": self.deepgram_api_key,
            "soniox": self.soniox_api_key,
        }
        return key_map.get(service)

    def get_service_model(self, service: str) -> Optional[str]:
        """Get the streaming model configured for a transcription backend"""
        model_map = {
            "deepgram": self.default_stt_model,
            "soniox": self.soniox_model,
        }
        return model_map.get(service)

    def validate_billing_config(self) -> Dict[str, Any]:
        """Validate billing configuration and return status"""
        validation = {
            "ledger_base_url": self.ledger_base_url,
            "request_timeout": self.ledger_request_timeout,
            "secret_configured": bool(self.jwt_secret),
            "logs_enabled": self.enable_billing_logs,
            "billing_log_level": self.billing_log_level,
        }

        validation["is_valid"] = all([
            self.ledger_base_url,
            self.jwt_secret,
            self.ledger_request_timeout > 0,
        ])

        warnings = []
        if self.jwt_secret == DEFAULT_SECRET:
            warnings.append("Using default JWT secret - change in production!")
        if self.backend_shared_secret == DEFAULT_SECRET:
            warnings.append("Using default internal secret - change in production!")
        if not self.ledger_base_url.startswith("https") and "localhost" not in self.ledger_base_url:
            warnings.append("Using non-HTTPS ledger URL - ensure this is intentional")

        validation["warnings"] = warnings
        return validation

    def get_ledger_url(self, endpoint: str) -> str:
        """Get full URL for a ledger endpoint"""
        return f"{self.ledger_base_url.rstrip('/')}/{endpoint.lstrip('/')}"


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get application settings singleton"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment"""
    global _settings
    _settings = None
