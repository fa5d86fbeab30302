"""Conversation store client for the tutor service's REST API."""

from typing import Any, List, Optional

import httpx
import structlog

from ..config import CONVERSATIONS_PATH, ClientSettings
from ..domain.errors import TransportError
from ..domain.models import Conversation, Message
from ..identity import IdentityProvider, auth_headers
from .base import ConversationRepository

logger = structlog.get_logger()


class HttpConversationRepository(ConversationRepository):
    """Conversation CRUD over HTTP, authenticated with the user's bearer token."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Optional[ClientSettings] = None,
        identity: Optional[IdentityProvider] = None,
    ) -> None:
        self._client = client
        self.settings = settings or ClientSettings()
        self.identity = identity

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        url = self.settings.url(CONVERSATIONS_PATH + path)
        headers = await auth_headers(self.identity)
        try:
            response = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.HTTPError as e:
            logger.error("conversation_store_unreachable", method=method, path=path, error=str(e))
            raise TransportError(None, f"Network error: {e}") from e
        if response.is_error:
            logger.error("conversation_store_error", method=method, path=path, status=response.status_code)
            raise TransportError(response.status_code, _error_detail(response))
        return response

    async def list_conversations(self) -> List[Conversation]:
        response = await self._request("GET", "")
        return [Conversation.model_validate(c) for c in response.json().get("conversations", [])]

    async def create_conversation(self, title: str = "New Chat") -> Conversation:
        response = await self._request("POST", "", json={"title": title})
        conversation = Conversation.model_validate(response.json())
        logger.info("conversation_created", conversation_id=conversation.id)
        return conversation

    async def rename_conversation(self, conversation_id: str, title: str) -> Conversation:
        response = await self._request("PATCH", f"/{conversation_id}", json={"title": title})
        return Conversation.model_validate(response.json())

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", f"/{conversation_id}")
        logger.info("conversation_deleted", conversation_id=conversation_id)

    async def get_messages(self, conversation_id: str) -> List[Message]:
        response = await self._request("GET", f"/{conversation_id}/messages")
        return [Message.model_validate(m) for m in response.json().get("messages", [])]


def _error_detail(response: httpx.Response) -> str:
    try:
        detail = response.json().get("detail")
    except (ValueError, AttributeError):
        detail = None
    return detail or f"HTTP error! status: {response.status_code}"
