"""Streaming chat client for the Håfa Adai language tutor service."""

from .config import ClientSettings
from .domain.errors import (
    AbortedError,
    CancelledError,
    ChatClientError,
    DecodeError,
    StreamServerError,
    TransportError,
)
from .domain.models import ChatMode, ChatResult, Conversation, Message
from .services.chat import ChatCallbacks, ChatSessionController

__all__ = [
    "AbortedError",
    "CancelledError",
    "ChatCallbacks",
    "ChatClientError",
    "ChatMode",
    "ChatResult",
    "ChatSessionController",
    "ClientSettings",
    "Conversation",
    "DecodeError",
    "Message",
    "StreamServerError",
    "TransportError",
]

__version__ = "0.1.0"
