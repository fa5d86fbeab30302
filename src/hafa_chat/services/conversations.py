"""Cached view of the user's conversations with a persisted active selection."""

from typing import List, Optional

import structlog

from ..domain.models import Conversation, Message
from ..repositories.base import ConversationRepository
from ..storage import ACTIVE_CONVERSATION_KEY, LocalStore

logger = structlog.get_logger()

TITLE_LENGTH = 50


class ConversationDirectory:
    """Conversation list cache over a ``ConversationRepository``."""

    def __init__(self, repository: ConversationRepository, store: LocalStore) -> None:
        self._repository = repository
        self._store = store
        self.conversations: List[Conversation] = []

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self._store.get(ACTIVE_CONVERSATION_KEY)

    def select(self, conversation_id: Optional[str]) -> None:
        """Set (or clear, with None) the active conversation."""
        if conversation_id is None:
            self._store.delete(ACTIVE_CONVERSATION_KEY)
        else:
            self._store.set(ACTIVE_CONVERSATION_KEY, conversation_id)

    async def refresh(self) -> List[Conversation]:
        """Reload the list; the first conversation becomes active if none is."""
        self.conversations = await self._repository.list_conversations()
        if self.conversations and self.active_conversation_id is None:
            self.select(self.conversations[0].id)
        return self.conversations

    async def create(self, title: str = "New Chat") -> Conversation:
        conversation = await self._repository.create_conversation(title)
        self.conversations.insert(0, conversation)
        self.select(conversation.id)
        return conversation

    async def rename(self, conversation_id: str, title: str) -> Conversation:
        updated = await self._repository.rename_conversation(conversation_id, title)
        self.conversations = [updated if c.id == conversation_id else c for c in self.conversations]
        return updated

    async def delete(self, conversation_id: str) -> None:
        """Delete a conversation; if it was active, the first remaining one takes over."""
        await self._repository.delete_conversation(conversation_id)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        if self.active_conversation_id == conversation_id:
            self.select(self.conversations[0].id if self.conversations else None)

    async def messages(self, conversation_id: str) -> List[Message]:
        return await self._repository.get_messages(conversation_id)

    async def ensure_conversation(self, first_message: str) -> str:
        """Id of the active conversation, creating it on the first send.

        Opening a new chat does not create anything server-side; only a sent
        message does. The title is the start of that message.
        """
        active = self.active_conversation_id
        if active is not None:
            return active
        title = first_message.strip()[:TITLE_LENGTH] or "New Chat"
        conversation = await self.create(title)
        logger.info("conversation_created_on_send", conversation_id=conversation.id)
        return conversation.id

    def clear_local(self) -> None:
        """Forget cached conversations and the selection, e.g. on sign-out."""
        self.conversations = []
        self.select(None)
