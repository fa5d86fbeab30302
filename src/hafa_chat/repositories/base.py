"""Base repository interface."""

from abc import ABC, abstractmethod
from typing import List

from ..domain.models import Conversation, Message


class ConversationRepository(ABC):
    """Abstract conversation store."""

    @abstractmethod
    async def list_conversations(self) -> List[Conversation]:
        """List conversations, most recently updated first."""
        pass

    @abstractmethod
    async def create_conversation(self, title: str = "New Chat") -> Conversation:
        """Create a new conversation."""
        pass

    @abstractmethod
    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        """Change a conversation's title."""
        pass

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> None:
        """Delete a conversation and its messages."""
        pass

    @abstractmethod
    async def get_messages(self, conversation_id: str) -> List[Message]:
        """Get the messages of a conversation in chronological order."""
        pass
