"""Chat session controller.

Sends one conversational turn at a time, streams the answer back through
callbacks and cancels on both ends: the local read is aborted at once and the
server is told, without waiting, to stop generating for that correlation id
so a partial answer is not stored as complete.
"""

import asyncio
import inspect
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Set, Union

import structlog

from ..config import ClientSettings
from ..domain.errors import (
    AbortedError,
    CancelledError,
    ChatClientError,
    StreamServerError,
    TransportError,
)
from ..domain.models import (
    Attachment,
    CancelledEvent,
    ChatMode,
    ChatRequest,
    ChatResult,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    Message,
    MetadataEvent,
)
from ..identity import IdentityProvider
from ..metrics import CANCELLATIONS, ERRORS, PROCESSING_TIME, REMOTE_CANCEL_FAILURES, REQUESTS
from ..repositories.http import HttpConversationRepository
from ..storage import JsonFileStore, LocalStore
from ..transport.client import ResponseStream, TransportClient
from ..transport.decoder import StreamEventDecoder
from .conversations import ConversationDirectory
from .pending import SUPERSEDED, USER, PendingRequest, PendingRequestRegistry
from .session import SessionIdentityStore

logger = structlog.get_logger()

Callback = Optional[Callable[..., Union[None, Awaitable[None]]]]


@dataclass
class ChatCallbacks:
    """Observer for one streaming turn. Every hook is optional.

    Hooks are called in stream order. ``on_chunk`` is never called after a
    terminal hook (``on_done``, ``on_error`` or ``on_cancelled``), and a turn
    replaced by a newer ``send`` gets no further calls at all. Hooks may be
    plain functions or coroutine functions.
    """

    on_metadata: Callback = None
    on_chunk: Callback = None
    on_done: Callback = None
    on_error: Callback = None
    on_cancelled: Callback = None


@dataclass
class ChatTurn:
    """What the user sent, kept so a failed turn can be re-sent unchanged."""

    message: str
    mode: ChatMode
    conversation_id: Optional[str] = None
    attachments: List[Attachment] = field(default_factory=list)

    def as_message(self) -> Message:
        """The user message shown for this turn; attachments appear by file name."""
        return Message(
            role="user",
            content=self.message,
            mode=self.mode,
            attachment_refs=[attachment.filename for attachment in self.attachments],
        )


class ChatSessionController:
    """Single entry point the UI uses to send and cancel chat turns."""

    def __init__(
        self,
        transport: TransportClient,
        sessions: SessionIdentityStore,
        registry: Optional[PendingRequestRegistry] = None,
        directory: Optional[ConversationDirectory] = None,
    ) -> None:
        self._transport = transport
        self._sessions = sessions
        self._registry = registry or PendingRequestRegistry()
        self._directory = directory
        self._background: Set[asyncio.Task] = set()
        self.loading = False
        self.error: Optional[str] = None
        self.last_turn: Optional[ChatTurn] = None

    @property
    def registry(self) -> PendingRequestRegistry:
        return self._registry

    @property
    def last_user_message(self) -> Optional[Message]:
        """User message for the most recent turn, for the UI transcript."""
        if self.last_turn is None:
            return None
        return self.last_turn.as_message()

    async def send(
        self,
        message: str,
        mode: Union[ChatMode, str] = ChatMode.ENGLISH,
        conversation_id: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
        callbacks: Optional[ChatCallbacks] = None,
    ) -> Optional[Message]:
        """Stream one turn.

        Failures and cancellation are reported through ``callbacks``, never
        raised. Returns the assistant message as it stood when the turn
        ended (``cancelled=True`` if it was cancelled), or None if the turn
        failed or was superseded.
        """
        callbacks = callbacks or ChatCallbacks()
        turn = ChatTurn(message, ChatMode(mode), conversation_id, list(attachments or []))
        pending = self._start(turn)
        started = time.monotonic()
        decoder = StreamEventDecoder()
        reply = Message(role="assistant", mode=turn.mode)
        stream: Optional[ResponseStream] = None

        try:
            request = await self._build_request(turn, pending)
            stream = await self._transport.open(request, pending.token)

            async with aclosing(decoder.events(stream)) as events:
                async for event in events:
                    # A cancel issued while the event was in transit wins.
                    pending.token.raise_if_cancelled()
                    if isinstance(event, MetadataEvent):
                        reply.sources = list(event.sources)
                        reply.used_knowledge_base = event.used_rag
                        reply.used_web_search = event.used_web_search
                        await self._deliver(pending, callbacks.on_metadata, event)
                    elif isinstance(event, ChunkEvent):
                        await self._deliver(pending, callbacks.on_chunk, event.content, decoder.content)
                    elif isinstance(event, CancelledEvent):
                        raise CancelledError(event.content or "Generation cancelled by the server")
                    elif isinstance(event, ErrorEvent):
                        raise StreamServerError(event.content or "The server reported an error")

            if isinstance(decoder.terminal, DoneEvent) and decoder.terminal.response_time is not None:
                elapsed = decoder.terminal.response_time
            elif decoder.terminal is not None or decoder.saw_terminator:
                elapsed = time.monotonic() - started
            else:
                raise TransportError(None, "Connection closed before the response completed")

            pending.token.raise_if_cancelled()
            reply.content = decoder.content
            reply.response_time_seconds = elapsed
            logger.info(
                "chat_turn_completed",
                correlation_id=pending.correlation_id,
                response_time=elapsed,
                length=len(reply.content),
            )
            await self._deliver(pending, callbacks.on_done, elapsed)
            return reply.model_copy()

        except CancelledError as e:
            return await self._on_cancelled(pending, callbacks, reply, decoder, e)
        except ChatClientError as e:
            if pending.token.cancelled:
                return await self._on_cancelled(pending, callbacks, reply, decoder, e)
            ERRORS.inc()
            logger.error(
                "chat_turn_failed",
                correlation_id=pending.correlation_id,
                error_type=type(e).__name__,
                error=str(e),
            )
            if self._registry.is_current(pending.correlation_id):
                self.error = str(e)
            await self._deliver(pending, callbacks.on_error, str(e))
            return None
        finally:
            if stream is not None:
                await stream.aclose()
            self._finish(pending, started)

    async def send_once(
        self,
        message: str,
        mode: Union[ChatMode, str] = ChatMode.ENGLISH,
        conversation_id: Optional[str] = None,
        attachments: Optional[List[Attachment]] = None,
    ) -> ChatResult:
        """Send one turn and wait for the whole reply.

        Raises ``TransportError`` or ``StreamServerError`` on failure and
        ``CancelledError`` if the turn is cancelled or superseded.
        """
        turn = ChatTurn(message, ChatMode(mode), conversation_id, list(attachments or []))
        pending = self._start(turn)
        started = time.monotonic()
        try:
            request = await self._build_request(turn, pending)
            result = await self._transport.send_once(request, pending.token)
            pending.token.raise_if_cancelled()
            return result
        except CancelledError:
            CANCELLATIONS.inc()
            logger.info("chat_turn_cancelled", correlation_id=pending.correlation_id, reason=pending.token.reason)
            raise
        except ChatClientError as e:
            if pending.token.cancelled:
                CANCELLATIONS.inc()
                raise AbortedError() from e
            ERRORS.inc()
            logger.error("chat_turn_failed", correlation_id=pending.correlation_id, error=str(e))
            if self._registry.is_current(pending.correlation_id):
                self.error = str(e)
            raise
        finally:
            self._finish(pending, started)

    def cancel(self) -> None:
        """Cancel the in-flight turn, if any.

        The local read stops immediately. The server notification runs in
        the background; its failure is logged and never reported to the UI.
        """
        correlation_id = self._registry.cancel_current(USER)
        if correlation_id is None:
            return
        self.loading = False
        self._notify_remote(correlation_id)

    async def retry(self, callbacks: Optional[ChatCallbacks] = None) -> Optional[Message]:
        """Re-send the last turn unchanged."""
        turn = self.last_turn
        if turn is None:
            logger.warning("chat_retry_without_turn")
            return None
        return await self.send(
            turn.message,
            turn.mode,
            conversation_id=turn.conversation_id,
            attachments=turn.attachments,
            callbacks=callbacks,
        )

    def reset_session(self) -> str:
        """Start a new anonymous session. An in-flight turn is not touched."""
        return self._sessions.reset()

    async def clear_chat(self) -> str:
        """Delete the active conversation and start a new session."""
        if self._directory is not None and self._directory.active_conversation_id is not None:
            await self._directory.delete(self._directory.active_conversation_id)
            self._directory.select(None)
        self.error = None
        return self.reset_session()

    async def aclose(self) -> None:
        """Wait for pending cancel notifications, then close the transport."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._transport.aclose()

    def _start(self, turn: ChatTurn) -> PendingRequest:
        superseded = self._registry.cancel_current(SUPERSEDED)
        if superseded is not None:
            self._notify_remote(superseded)

        pending = self._registry.begin()
        self.loading = True
        self.error = None
        self.last_turn = turn
        REQUESTS.inc()
        logger.info(
            "chat_turn_started",
            correlation_id=pending.correlation_id,
            mode=turn.mode.value,
            conversation_id=turn.conversation_id,
        )
        return pending

    def _finish(self, pending: PendingRequest, started: float) -> None:
        PROCESSING_TIME.inc(time.monotonic() - started)
        if self._registry.end(pending.correlation_id):
            self.loading = False

    async def _build_request(self, turn: ChatTurn, pending: PendingRequest) -> ChatRequest:
        conversation_id = turn.conversation_id
        if conversation_id is None and self._directory is not None:
            conversation_id = await pending.token.guard(self._directory.ensure_conversation(turn.message))
            turn.conversation_id = conversation_id

        identity = self._transport.identity
        return ChatRequest(
            message=turn.message,
            mode=turn.mode,
            session_id=self._sessions.get_or_create(),
            pending_id=pending.correlation_id,
            user_id=identity.user_id if identity is not None else None,
            conversation_id=conversation_id,
            attachments=turn.attachments,
        )

    async def _on_cancelled(
        self,
        pending: PendingRequest,
        callbacks: ChatCallbacks,
        reply: Message,
        decoder: StreamEventDecoder,
        error: ChatClientError,
    ) -> Optional[Message]:
        CANCELLATIONS.inc()
        logger.info(
            "chat_turn_cancelled",
            correlation_id=pending.correlation_id,
            reason=pending.token.reason or "server",
            local=isinstance(error, AbortedError),
        )
        if pending.token.superseded:
            return None
        await self._deliver(pending, callbacks.on_cancelled)
        return reply.model_copy(update={"content": decoder.content, "cancelled": True})

    async def _deliver(self, pending: PendingRequest, callback: Callback, *args: Any) -> None:
        if callback is None or pending.token.superseded:
            return
        result = callback(*args)
        if inspect.isawaitable(result):
            await result

    def _notify_remote(self, correlation_id: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("remote_cancel_skipped", correlation_id=correlation_id, reason="no running event loop")
            return
        task = loop.create_task(self._send_cancel_notification(correlation_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _send_cancel_notification(self, correlation_id: str) -> None:
        try:
            await self._transport.notify_cancel(correlation_id)
        except ChatClientError as e:
            REMOTE_CANCEL_FAILURES.inc()
            logger.warning("remote_cancel_failed", correlation_id=correlation_id, error=str(e))
            return
        logger.info("remote_cancel_sent", correlation_id=correlation_id)


def create_controller(
    settings: Optional[ClientSettings] = None,
    identity: Optional[IdentityProvider] = None,
    store: Optional[LocalStore] = None,
) -> ChatSessionController:
    """Wire a controller with its collaborators from settings.

    State is persisted to ``settings.state_path`` unless ``store`` is given.
    The transport and the conversation store share one HTTP client, closed
    by ``ChatSessionController.aclose``.
    """
    settings = settings or ClientSettings.from_env()
    store = store or JsonFileStore(settings.state_path)
    transport = TransportClient(settings, identity)
    repository = HttpConversationRepository(transport.http, settings, identity)
    return ChatSessionController(
        transport,
        SessionIdentityStore(store),
        directory=ConversationDirectory(repository, store),
    )
