"""WebSocket handlers"""
from .transcribe_handler import TranscribeConnection, TranscribeWebSocketHandler

__all__ = [
    "TranscribeConnection",
    "TranscribeWebSocketHandler",
]
