"""In-memory repository implementation."""

import asyncio
from datetime import datetime, timezone
from typing import Dict, List
from uuid import uuid4

import structlog

from ..domain.errors import TransportError
from ..domain.models import Conversation, Message
from .base import ConversationRepository

logger = structlog.get_logger()


class InMemoryConversationRepository(ConversationRepository):
    """Process-local conversation store for offline use and tests.

    Unknown conversation ids fail the same way the HTTP store does, with a
    404 ``TransportError``.
    """

    def __init__(self) -> None:
        self._conversations: Dict[str, Conversation] = {}
        self._messages: Dict[str, List[Message]] = {}
        self._lock = asyncio.Lock()
        logger.info("repository_initialized")

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            logger.warning("conversation_not_found", conversation_id=conversation_id)
            raise TransportError(404, f"Conversation {conversation_id} not found")
        return conversation

    async def list_conversations(self) -> List[Conversation]:
        async with self._lock:
            return sorted(self._conversations.values(), key=lambda c: c.updated_at, reverse=True)

    async def create_conversation(self, title: str = "New Chat") -> Conversation:
        conversation = Conversation(id=str(uuid4()), title=title)
        async with self._lock:
            self._conversations[conversation.id] = conversation
            self._messages[conversation.id] = []
        logger.info("conversation_created", conversation_id=conversation.id)
        return conversation

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        async with self._lock:
            conversation = self._require(conversation_id)
            conversation.title = title
            conversation.updated_at = datetime.now(timezone.utc)
            return conversation

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._lock:
            self._require(conversation_id)
            del self._conversations[conversation_id]
            self._messages.pop(conversation_id, None)
        logger.info("conversation_deleted", conversation_id=conversation_id)

    async def add_message(self, conversation_id: str, message: Message) -> Message:
        """Append a message, as the server does for each completed turn."""
        async with self._lock:
            conversation = self._require(conversation_id)
            self._messages[conversation_id].append(message)
            conversation.message_count = len(self._messages[conversation_id])
            conversation.updated_at = message.timestamp
            logger.info("message_added", conversation_id=conversation_id, message_role=message.role)
            return message

    async def get_messages(self, conversation_id: str) -> List[Message]:
        async with self._lock:
            self._require(conversation_id)
            return sorted(self._messages[conversation_id], key=lambda m: m.timestamp)
