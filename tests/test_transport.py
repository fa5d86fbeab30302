"""Test suite for the HTTP transport."""

import asyncio
import json

import httpx
import pytest

from hafa_chat.config import ClientSettings
from hafa_chat.domain.errors import AbortedError, StreamServerError, TransportError
from hafa_chat.domain.models import Attachment, ChatMode, ChatRequest
from hafa_chat.identity import StaticIdentity
from hafa_chat.services.pending import CancellationToken
from hafa_chat.transport.client import TransportClient

from .conftest import BASE_URL


def make_request(**overrides) -> ChatRequest:
    fields = {
        "message": "Håfa Adai",
        "mode": ChatMode.ENGLISH,
        "session_id": "session_1_abc",
        "pending_id": "pending_1",
    }
    fields.update(overrides)
    return ChatRequest(**fields)


def make_transport(client: httpx.AsyncClient, identity=None) -> TransportClient:
    return TransportClient(ClientSettings(api_url=BASE_URL), identity, client=client)


@pytest.mark.asyncio
async def test_json_payload(http_client, fake_service):
    """Test the JSON body sent without attachments."""
    transport = make_transport(http_client, StaticIdentity(token="tok-123", user_id="user_9"))
    stream = await transport.open(make_request(conversation_id="conv-1"), CancellationToken())
    body = b"".join([chunk async for chunk in stream])
    await stream.aclose()

    turn = fake_service.state.turns[0]
    assert turn["multipart"] is False
    assert turn["message"] == "Håfa Adai"
    assert turn["mode"] == "english"
    assert turn["session_id"] == "session_1_abc"
    assert turn["pending_id"] == "pending_1"
    assert turn["conversation_id"] == "conv-1"
    assert turn["user_id"] == "user_9"
    assert turn["authorization"] == "Bearer tok-123"
    assert body.endswith(b"data: [DONE]\n\n")


@pytest.mark.asyncio
async def test_optional_fields_omitted(http_client, fake_service):
    """Test that absent conversation and user ids are not sent."""
    transport = make_transport(http_client)
    stream = await transport.open(make_request(), CancellationToken())
    await stream.aclose()

    turn = fake_service.state.turns[0]
    assert "conversation_id" not in turn
    assert "user_id" not in turn
    assert turn["authorization"] is None


@pytest.mark.asyncio
async def test_multipart_payload_with_attachments(http_client, fake_service):
    """Test that attachments switch the body to multipart form data."""
    transport = make_transport(http_client)
    request = make_request(
        mode=ChatMode.LEARN,
        conversation_id="conv-2",
        attachments=[
            Attachment(filename="menu.png", content=b"\x89PNG...", content_type="image/png"),
            Attachment(filename="notes.txt", content="Si Yu'os Ma'åse'".encode("utf-8"), content_type="text/plain"),
        ],
    )
    stream = await transport.open(request, CancellationToken())
    await stream.aclose()

    turn = fake_service.state.turns[0]
    assert turn["multipart"] is True
    assert turn["message"] == "Håfa Adai"
    assert turn["mode"] == "learn"
    assert turn["pending_id"] == "pending_1"
    assert turn["conversation_id"] == "conv-2"
    assert turn["files"] == ["menu.png", "notes.txt"]


@pytest.mark.asyncio
async def test_open_rejects_error_status(http_client, fake_service):
    """Test that a non-success status raises TransportError."""
    fake_service.state.fail_status = 503
    transport = make_transport(http_client)
    with pytest.raises(TransportError) as excinfo:
        await transport.open(make_request(), CancellationToken())
    assert excinfo.value.status == 503
    assert "503" in str(excinfo.value)


@pytest.mark.asyncio
async def test_open_network_failure():
    """Test that a connection failure raises TransportError without status."""

    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(refuse)) as client:
        with pytest.raises(TransportError) as excinfo:
            await make_transport(client).open(make_request(), CancellationToken())
    assert excinfo.value.status is None


@pytest.mark.asyncio
async def test_open_with_cancelled_token():
    """Test that a cancelled token aborts before anything is sent."""
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200)

    token = CancellationToken()
    token.cancel()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(AbortedError):
            await make_transport(client).open(make_request(), token)
    assert calls == []


@pytest.mark.asyncio
async def test_cancel_aborts_blocked_read(scripted):
    """Test that cancelling the token interrupts a read that is waiting for bytes."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(scripted.handler)) as client:
        token = CancellationToken()
        stream = await make_transport(client).open(make_request(), token)
        feed = await scripted.next_stream()
        feed.push(b'data: {"type":"chunk","content":"a"}\n\n')

        received = []

        async def read_all():
            async for chunk in stream:
                received.append(chunk)

        reader = asyncio.create_task(read_all())
        await asyncio.sleep(0.05)
        token.cancel()

        with pytest.raises(AbortedError):
            await asyncio.wait_for(reader, timeout=1.0)
        await stream.aclose()

    assert received == [b'data: {"type":"chunk","content":"a"}\n\n']
    assert feed.closed


@pytest.mark.asyncio
async def test_aclose_finalizes_partly_read_stream(scripted):
    """Test that closing after an early stop shuts the chunk iterator down."""
    async with httpx.AsyncClient(transport=httpx.MockTransport(scripted.handler)) as client:
        stream = await make_transport(client).open(make_request(), CancellationToken())
        feed = await scripted.next_stream()
        feed.push(b'data: {"type":"done"}\n\n')
        feed.push(b'data: {"type":"chunk","content":"late"}\n\n')

        iterator = stream.__aiter__()
        assert await iterator.__anext__() == b'data: {"type":"done"}\n\n'
        await stream.aclose()
        await stream.aclose()

    assert iterator.ag_frame is None
    assert feed.closed
    with pytest.raises(StopAsyncIteration):
        await iterator.__anext__()


@pytest.mark.asyncio
async def test_send_once(http_client, fake_service):
    """Test the non-streaming request."""
    result = await make_transport(http_client).send_once(make_request(), CancellationToken())
    assert result.response == "Håfa adai!"
    assert result.response_time == 0.42
    assert fake_service.state.turns[0]["pending_id"] == "pending_1"


@pytest.mark.asyncio
async def test_send_once_error_status(http_client, fake_service):
    """Test that send_once surfaces the HTTP status."""
    fake_service.state.fail_status = 500
    with pytest.raises(TransportError) as excinfo:
        await make_transport(http_client).send_once(make_request(), CancellationToken())
    assert excinfo.value.status == 500


@pytest.mark.asyncio
async def test_send_once_reported_error(http_client, fake_service):
    """Test that an error field in the reply raises StreamServerError."""
    fake_service.state.script = lambda turn: [{"type": "error", "content": "Quota exceeded"}]
    with pytest.raises(StreamServerError, match="Quota exceeded"):
        await make_transport(http_client).send_once(make_request(), CancellationToken())


@pytest.mark.asyncio
async def test_send_once_cancelled_first():
    """Test that cancellation beats a slow reply."""
    release = asyncio.Event()

    async def slow(request):
        await release.wait()
        return httpx.Response(200, json={"response": "late"})

    token = CancellationToken()
    async with httpx.AsyncClient(transport=httpx.MockTransport(slow)) as client:
        task = asyncio.create_task(make_transport(client).send_once(make_request(), token))
        await asyncio.sleep(0.05)
        token.cancel()
        with pytest.raises(AbortedError):
            await asyncio.wait_for(task, timeout=1.0)


@pytest.mark.asyncio
async def test_notify_cancel(http_client, fake_service):
    """Test the cancel notification endpoint."""
    await make_transport(http_client).notify_cancel("pending_77")
    assert fake_service.state.cancelled == ["pending_77"]


@pytest.mark.asyncio
async def test_notify_cancel_failure_raises_transport_error():
    """Test that a rejected notification raises for the caller to log."""

    def handler(request):
        return httpx.Response(404, content=json.dumps({"detail": "unknown"}))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        with pytest.raises(TransportError):
            await make_transport(client).notify_cancel("pending_1")
