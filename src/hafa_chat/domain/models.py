"""Domain models for the chat client."""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ChatMode(str, Enum):
    """Conversation mode understood by the tutor service."""

    ENGLISH = "english"
    CHAMORRO = "chamorro"
    LEARN = "learn"


class Session(BaseModel):
    """Anonymous device session."""

    id: str


class Conversation(BaseModel):
    """Conversation record owned by the remote store."""

    model_config = ConfigDict(extra="ignore")

    id: str
    user_id: Optional[str] = None
    title: str = "New Chat"
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    message_count: int = 0


class Source(BaseModel):
    """Knowledge-base citation attached to an answer."""

    model_config = ConfigDict(extra="ignore")

    name: str
    page: Optional[int] = None


class Message(BaseModel):
    """Client-side chat message."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    role: Literal["user", "assistant", "system"] = "user"
    content: str = ""
    attachment_refs: List[str] = Field(default_factory=list)
    sources: List[Source] = Field(default_factory=list)
    used_knowledge_base: bool = Field(default=False, alias="used_rag")
    used_web_search: bool = False
    response_time_seconds: Optional[float] = Field(default=None, alias="response_time")
    timestamp: datetime = Field(default_factory=_utcnow)
    cancelled: Optional[bool] = None
    mode: Optional[ChatMode] = None


class Attachment(BaseModel):
    """File sent alongside a user turn."""

    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


class ChatRequest(BaseModel):
    """Everything the transport needs to send one conversational turn."""

    message: str
    mode: ChatMode = ChatMode.ENGLISH
    session_id: str
    pending_id: str
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    attachments: List[Attachment] = Field(default_factory=list)

    def json_payload(self) -> dict:
        """Body for the JSON (no attachments) variant."""
        payload = {
            "message": self.message,
            "mode": self.mode.value,
            "session_id": self.session_id,
            "pending_id": self.pending_id,
        }
        if self.user_id is not None:
            payload["user_id"] = self.user_id
        if self.conversation_id is not None:
            payload["conversation_id"] = self.conversation_id
        return payload

    def form_fields(self) -> dict:
        """Text fields for the multipart variant."""
        fields = {
            "message": self.message,
            "mode": self.mode.value,
            "session_id": self.session_id,
            "pending_id": self.pending_id,
        }
        if self.conversation_id is not None:
            fields["conversation_id"] = self.conversation_id
        return fields


class ChatResult(BaseModel):
    """Complete reply from the non-streaming endpoint."""

    model_config = ConfigDict(extra="ignore")

    response: str = ""
    mode: Optional[str] = None
    sources: List[Source] = Field(default_factory=list)
    used_rag: bool = False
    used_web_search: bool = False
    response_time: Optional[float] = None
    error: Optional[str] = None


class MetadataEvent(BaseModel):
    """First event of a stream: retrieval details for the answer."""

    model_config = ConfigDict(extra="ignore", frozen=True)

    type: Literal["metadata"] = "metadata"
    sources: List[Source] = Field(default_factory=list)
    used_rag: bool = False
    used_web_search: bool = False


class ChunkEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    type: Literal["chunk"] = "chunk"
    content: str = ""


class DoneEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    type: Literal["done"] = "done"
    response_time: Optional[float] = None


class CancelledEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    type: Literal["cancelled"] = "cancelled"
    content: str = ""


class ErrorEvent(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    type: Literal["error"] = "error"
    content: str = ""


StreamEvent = Annotated[
    Union[MetadataEvent, ChunkEvent, DoneEvent, CancelledEvent, ErrorEvent],
    Field(discriminator="type"),
]

STREAM_EVENT_ADAPTER: TypeAdapter = TypeAdapter(StreamEvent)

TERMINAL_EVENTS = (DoneEvent, CancelledEvent, ErrorEvent)
