"""
Provider registry. Backends self-register with ``@provider`` and are
instantiated lazily, only for the language a session asks for.
"""
import logging
from typing import Any, Dict, List, Type

from creditscribe.config.settings import Settings
from creditscribe.errors import ConfigurationError
from creditscribe.transcription.base import StreamingSTTProvider

logger = logging.getLogger(__name__)

# Session language -> (provider name, provider language code)
LANGUAGE_PROVIDERS: Dict[str, tuple] = {
    "en-US": ("deepgram", "en-US"),
    "bn-BD": ("soniox", "bn"),
}


class ProviderRegistry:
    """Registry for streaming STT provider implementations"""

    def __init__(self):
        self._providers: Dict[str, Type[StreamingSTTProvider]] = {}

    def register(self, name: str, provider_class: Type[StreamingSTTProvider]) -> None:
        self._providers[name] = provider_class
        logger.info(f"Registered STT provider: {name}")

    def create(self, name: str, config: Dict[str, Any]) -> StreamingSTTProvider:
        """Create STT provider instance"""
        if name not in self._providers:
            raise ConfigurationError(f"STT provider '{name}' not registered")
        return self._providers[name](config)

    def list_providers(self) -> List[str]:
        return list(self._providers.keys())


registry = ProviderRegistry()


def provider(name: str):
    """
    Decorator to auto-register providers with the registry.

    Usage:
        @provider("deepgram")
        class DeepgramSTT(StreamingSTTProvider):
            ...
    """
    def decorator(cls):
        registry.register(name, cls)
        return cls
    return decorator


def resolve_language(language: str) -> tuple:
    try:
        return LANGUAGE_PROVIDERS[language]
    except KeyError:
        raise ConfigurationError(f"Unsupported language: {language}")


def check_provider_config(language: str, settings: Settings) -> None:
    """Raise ConfigurationError if the backend for this language cannot be opened"""
    name, _ = resolve_language(language)
    if not settings.get_service_api_key(name):
        raise ConfigurationError(f"{name.upper()}_API_KEY is not configured")


def create_provider(language: str, settings: Settings, encoding: str = "webm") -> StreamingSTTProvider:
    """Build the backend mapped to ``language``; other backends are never constructed"""
    check_provider_config(language, settings)
    name, provider_language = resolve_language(language)
    return registry.create(name, {
        "api_key": settings.get_service_api_key(name),
        "model": settings.get_service_model(name),
        "language": provider_language,
        "encoding": encoding,
    })
