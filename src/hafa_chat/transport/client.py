"""HTTP transport for chat turns."""

from contextlib import aclosing
from typing import AsyncGenerator, AsyncIterator, List, Optional

import httpx
import structlog

from ..config import CANCEL_PATH, CHAT_PATH, STREAM_PATH, ClientSettings
from ..domain.errors import StreamServerError, TransportError
from ..domain.models import ChatRequest, ChatResult
from ..identity import IdentityProvider, auth_headers
from ..services.pending import CancellationToken

logger = structlog.get_logger()


class ResponseStream:
    """Raw body of a streaming response, bound to a cancellation token.

    Iterating yields byte chunks as they arrive. When the token fires, the
    outstanding read is abandoned immediately and ``AbortedError`` is raised.
    """

    def __init__(self, response: httpx.Response, token: CancellationToken) -> None:
        self.response = response
        self.token = token
        self._closed = False
        self._iterators: List[AsyncGenerator[bytes, None]] = []

    @property
    def status_code(self) -> int:
        return self.response.status_code

    def __aiter__(self) -> AsyncGenerator[bytes, None]:
        iterator = self._iter_chunks()
        self._iterators.append(iterator)
        return iterator

    async def _iter_chunks(self) -> AsyncGenerator[bytes, None]:
        async with aclosing(self.response.aiter_bytes()) as chunks:
            while True:
                try:
                    data = await self.token.guard(_next_chunk(chunks))
                except httpx.HTTPError as e:
                    raise TransportError(None, f"Stream interrupted: {e}") from e
                if data is None:
                    return
                if data:
                    yield data

    async def aclose(self) -> None:
        """Close the underlying connection. Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        try:
            for iterator in self._iterators:
                await iterator.aclose()
        finally:
            await self.response.aclose()


async def _next_chunk(chunks: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await chunks.__anext__()
    except StopAsyncIteration:
        return None


async def _close_response(response: httpx.Response) -> None:
    await response.aclose()


class TransportClient:
    """Sends chat turns to the tutor service."""

    def __init__(
        self,
        settings: Optional[ClientSettings] = None,
        identity: Optional[IdentityProvider] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or ClientSettings()
        self.identity = identity
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self.settings.request_timeout, connect=self.settings.connect_timeout)
        )

    @property
    def http(self) -> httpx.AsyncClient:
        return self._client

    async def build_request(
        self,
        request: ChatRequest,
        path: str = STREAM_PATH,
        timeout: Optional[httpx.Timeout] = None,
    ) -> httpx.Request:
        """Build the outgoing request: multipart with attachments, JSON otherwise."""
        url = self.settings.url(path)
        headers = await auth_headers(self.identity)
        extra = {"timeout": timeout} if timeout is not None else {}

        if request.attachments:
            files = [
                ("files", (attachment.filename, attachment.content, attachment.content_type))
                for attachment in request.attachments
            ]
            return self._client.build_request(
                "POST", url, data=request.form_fields(), files=files, headers=headers, **extra
            )
        return self._client.build_request(
            "POST", url, json=request.json_payload(), headers=headers, **extra
        )

    async def open(self, request: ChatRequest, token: CancellationToken) -> ResponseStream:
        """Start a streaming turn and return its response body.

        Only the connect timeout applies; a stream may run as long as the
        server keeps generating.
        """
        http_request = await self.build_request(
            request, STREAM_PATH, timeout=httpx.Timeout(None, connect=self.settings.connect_timeout)
        )

        logger.info(
            "chat_stream_opening",
            correlation_id=request.pending_id,
            mode=request.mode.value,
            attachments=len(request.attachments),
        )
        try:
            response = await token.guard(
                self._client.send(http_request, stream=True), discard=_close_response
            )
        except httpx.HTTPError as e:
            logger.error("chat_stream_connect_failed", correlation_id=request.pending_id, error=str(e))
            raise TransportError(None, f"Network error: {e}") from e

        if response.is_error:
            await response.aclose()
            logger.error(
                "chat_stream_rejected", correlation_id=request.pending_id, status=response.status_code
            )
            raise TransportError(response.status_code)

        return ResponseStream(response, token)

    async def send_once(self, request: ChatRequest, token: CancellationToken) -> ChatResult:
        """Send a turn and wait for the complete reply."""
        http_request = await self.build_request(request, CHAT_PATH)
        logger.info("chat_request_sending", correlation_id=request.pending_id, mode=request.mode.value)
        try:
            response = await token.guard(self._client.send(http_request))
        except httpx.HTTPError as e:
            logger.error("chat_request_failed", correlation_id=request.pending_id, error=str(e))
            raise TransportError(None, f"Network error: {e}") from e

        if response.is_error:
            logger.error("chat_request_rejected", correlation_id=request.pending_id, status=response.status_code)
            raise TransportError(response.status_code)

        try:
            result = ChatResult.model_validate(response.json())
        except ValueError as e:
            raise TransportError(response.status_code, f"Invalid response body: {e}") from e

        if result.error:
            raise StreamServerError(result.error)
        return result

    async def notify_cancel(self, correlation_id: str) -> None:
        """Tell the server to stop generating for ``correlation_id``.

        The response body is ignored.
        """
        url = self.settings.url(CANCEL_PATH.format(pending_id=correlation_id))
        headers = await auth_headers(self.identity)
        try:
            response = await self._client.post(url, headers=headers)
        except httpx.HTTPError as e:
            raise TransportError(None, f"Network error: {e}") from e
        if response.is_error:
            raise TransportError(response.status_code)

    async def aclose(self) -> None:
        """Close the HTTP client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()
