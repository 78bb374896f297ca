"""Streaming transcription: providers, audio capture and the session controller"""
from .base import StreamingSTTProvider, TranscriptEvent
from .audio_source import AudioSource, QueueAudioSource
from .controller import TranscriptionSessionController, SessionState
from .registry import registry, provider, create_provider, check_provider_config
from . import deepgram_stt  # noqa: F401  registers the Deepgram backend
from . import soniox_stt  # noqa: F401  registers the Soniox backend

__all__ = [
    "StreamingSTTProvider",
    "TranscriptEvent",
    "AudioSource",
    "QueueAudioSource",
    "TranscriptionSessionController",
    "SessionState",
    "registry",
    "provider",
    "create_provider",
    "check_provider_config",
]
