"""Client configuration read from the environment."""

import os
from pathlib import Path

from pydantic import BaseModel

DEFAULT_API_URL = "http://localhost:8000"
DEFAULT_STATE_PATH = Path.home() / ".hafa_chat" / "state.json"

CHAT_PATH = "/api/chat"
STREAM_PATH = "/api/chat/stream"
CANCEL_PATH = "/api/chat/cancel/{pending_id}"
CONVERSATIONS_PATH = "/api/conversations"


class ClientSettings(BaseModel):
    """Settings shared by the transport and the conversation store client."""

    api_url: str = DEFAULT_API_URL
    state_path: Path = DEFAULT_STATE_PATH
    connect_timeout: float = 10.0
    # Applies to non-streaming calls only; streams never time out on read.
    request_timeout: float = 60.0

    @classmethod
    def from_env(cls) -> "ClientSettings":
        """Build settings from HAFA_* environment variables."""
        return cls(
            api_url=os.getenv("HAFA_API_URL", DEFAULT_API_URL),
            state_path=Path(os.getenv("HAFA_STATE_PATH", str(DEFAULT_STATE_PATH))).expanduser(),
            connect_timeout=float(os.getenv("HAFA_CONNECT_TIMEOUT", "10.0")),
            request_timeout=float(os.getenv("HAFA_REQUEST_TIMEOUT", "60.0")),
        )

    def url(self, path: str) -> str:
        """Absolute URL for an API path."""
        return self.api_url.rstrip("/") + path
