"""Error taxonomy for the chat client."""

from typing import Optional


class ChatClientError(Exception):
    """Base class for chat client errors."""


class TransportError(ChatClientError):
    """HTTP failure: non-success status, network error or premature close."""

    def __init__(self, status: Optional[int], message: Optional[str] = None) -> None:
        self.status = status
        if message is None:
            message = f"HTTP error! status: {status}" if status is not None else "Network error"
        super().__init__(message)


class CancelledError(ChatClientError):
    """The request was cancelled, either by the server or locally.

    Not derived from ``asyncio.CancelledError``: a cancelled turn is a normal
    outcome for the caller, not a task cancellation.
    """


class AbortedError(CancelledError):
    """The local cancellation token fired before a terminal event arrived."""

    def __init__(self, message: str = "Request aborted") -> None:
        super().__init__(message)


class DecodeError(ChatClientError):
    """The response body cannot be decoded at all."""


class StreamServerError(ChatClientError):
    """The server reported an error for this turn."""
