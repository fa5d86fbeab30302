"""Shared fixtures: fake tutor services the client can talk to."""

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from hafa_chat.config import ClientSettings
from hafa_chat.identity import StaticIdentity
from hafa_chat.repositories.http import HttpConversationRepository
from hafa_chat.services.chat import ChatCallbacks, ChatSessionController
from hafa_chat.services.conversations import ConversationDirectory
from hafa_chat.services.session import SessionIdentityStore
from hafa_chat.storage import MemoryStore
from hafa_chat.transport.client import TransportClient

BASE_URL = "http://tutor.test"


def sse(event: Any) -> str:
    """Encode one server-sent event record."""
    payload = event if isinstance(event, str) else json.dumps(event, ensure_ascii=False)
    return f"data: {payload}\n\n"


def default_script(turn: Dict[str, Any]) -> List[Dict[str, Any]]:
    return [
        {"type": "metadata", "sources": [], "used_rag": False, "used_web_search": False},
        {"type": "chunk", "content": "Håfa"},
        {"type": "chunk", "content": " adai!"},
        {"type": "done", "response_time": 0.42},
    ]


def create_fake_service() -> FastAPI:
    """Tutor service stand-in: chat, cancel and conversation endpoints."""
    app = FastAPI()
    app.state.turns = []
    app.state.cancelled = []
    app.state.script = default_script
    app.state.fail_status = None
    app.state.conversations = {}
    app.state.messages = {}

    async def read_turn(request: Request) -> Dict[str, Any]:
        if request.headers.get("content-type", "").startswith("multipart/form-data"):
            form = await request.form()
            turn = {key: value for key, value in form.items() if isinstance(value, str)}
            turn["files"] = [upload.filename for upload in form.getlist("files")]
            turn["multipart"] = True
        else:
            turn = await request.json()
            turn["multipart"] = False
        turn["authorization"] = request.headers.get("authorization")
        return turn

    @app.post("/api/chat/stream")
    async def chat_stream(request: Request):
        turn = await read_turn(request)
        app.state.turns.append(turn)
        if app.state.fail_status:
            return JSONResponse({"detail": "unavailable"}, status_code=app.state.fail_status)
        events = app.state.script(turn)

        async def generate():
            for event in events:
                yield sse(event)
            yield sse("[DONE]")

        return StreamingResponse(generate(), media_type="text/event-stream")

    @app.post("/api/chat")
    async def chat(request: Request):
        turn = await read_turn(request)
        app.state.turns.append(turn)
        if app.state.fail_status:
            return JSONResponse({"detail": "unavailable"}, status_code=app.state.fail_status)
        events = app.state.script(turn)
        text = "".join(e["content"] for e in events if e["type"] == "chunk")
        errors = [e["content"] for e in events if e["type"] == "error"]
        return {
            "response": text,
            "mode": turn["mode"],
            "sources": [],
            "used_rag": False,
            "used_web_search": False,
            "response_time": 0.42,
            "error": errors[0] if errors else None,
        }

    @app.post("/api/chat/cancel/{pending_id}")
    async def cancel(pending_id: str):
        app.state.cancelled.append(pending_id)
        return {"cancelled": True}

    @app.get("/api/conversations")
    async def list_conversations():
        conversations = sorted(
            app.state.conversations.values(), key=lambda c: c["updated_at"], reverse=True
        )
        return {"conversations": conversations}

    @app.post("/api/conversations")
    async def create_conversation(request: Request):
        body = await request.json()
        now = datetime.now(timezone.utc).isoformat()
        conversation = {
            "id": str(uuid4()),
            "user_id": None,
            "title": body.get("title", "New Chat"),
            "created_at": now,
            "updated_at": now,
            "message_count": 0,
        }
        app.state.conversations[conversation["id"]] = conversation
        app.state.messages[conversation["id"]] = []
        return conversation

    @app.patch("/api/conversations/{conversation_id}")
    async def rename_conversation(conversation_id: str, request: Request):
        if conversation_id not in app.state.conversations:
            return JSONResponse({"detail": "Conversation not found"}, status_code=404)
        body = await request.json()
        app.state.conversations[conversation_id]["title"] = body["title"]
        return app.state.conversations[conversation_id]

    @app.delete("/api/conversations/{conversation_id}")
    async def delete_conversation(conversation_id: str):
        if app.state.conversations.pop(conversation_id, None) is None:
            return JSONResponse({"detail": "Conversation not found"}, status_code=404)
        app.state.messages.pop(conversation_id, None)
        return Response(status_code=204)

    @app.get("/api/conversations/{conversation_id}/messages")
    async def get_messages(conversation_id: str):
        if conversation_id not in app.state.conversations:
            return JSONResponse({"detail": "Conversation not found"}, status_code=404)
        return {"messages": app.state.messages[conversation_id]}

    return app


class FeedStream(httpx.AsyncByteStream):
    """Response body the test writes into one read at a time."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def push(self, data: bytes) -> None:
        self._queue.put_nowait(data)

    def push_event(self, **event: Any) -> None:
        self.push(sse(event).encode("utf-8"))

    def end(self) -> None:
        self._queue.put_nowait(None)

    async def __aiter__(self):
        while True:
            data = await self._queue.get()
            if data is None:
                return
            yield data

    async def aclose(self) -> None:
        self.closed = True


class ScriptedService:
    """MockTransport handler giving every streaming turn a FeedStream."""

    def __init__(self) -> None:
        self.turns: List[Dict[str, Any]] = []
        self.cancelled: List[str] = []
        self.cancel_status = 200
        self._arrivals: asyncio.Queue = asyncio.Queue()

    async def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/api/chat/cancel/"):
            self.cancelled.append(request.url.path.rsplit("/", 1)[-1])
            return httpx.Response(self.cancel_status, json={})
        turn = json.loads(request.content)
        self.turns.append(turn)
        stream = FeedStream()
        self._arrivals.put_nowait(stream)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, stream=stream)

    async def next_stream(self, timeout: float = 2.0) -> FeedStream:
        return await asyncio.wait_for(self._arrivals.get(), timeout)


class Recorder:
    """Collects callback invocations in order."""

    def __init__(self) -> None:
        self.calls: List[tuple] = []

    def callbacks(self) -> ChatCallbacks:
        return ChatCallbacks(
            on_metadata=lambda event: self.calls.append(("metadata", event)),
            on_chunk=lambda delta, full: self.calls.append(("chunk", delta, full)),
            on_done=lambda elapsed: self.calls.append(("done", elapsed)),
            on_error=lambda message: self.calls.append(("error", message)),
            on_cancelled=lambda: self.calls.append(("cancelled",)),
        )

    @property
    def kinds(self) -> List[str]:
        return [call[0] for call in self.calls]


def build_controller(
    transport: httpx.AsyncBaseTransport,
    identity: Optional[StaticIdentity] = None,
    with_directory: bool = False,
    store: Optional[MemoryStore] = None,
) -> ChatSessionController:
    settings = ClientSettings(api_url=BASE_URL)
    store = store or MemoryStore()
    client = httpx.AsyncClient(transport=transport, base_url=BASE_URL)
    directory = None
    if with_directory:
        directory = ConversationDirectory(HttpConversationRepository(client, settings, identity), store)
    return ChatSessionController(
        TransportClient(settings, identity, client=client),
        SessionIdentityStore(store),
        directory=directory,
    )


@pytest.fixture
def fake_service() -> FastAPI:
    return create_fake_service()


@pytest.fixture
def asgi_transport(fake_service: FastAPI) -> httpx.ASGITransport:
    return httpx.ASGITransport(app=fake_service)


@pytest_asyncio.fixture
async def http_client(asgi_transport: httpx.ASGITransport):
    async with httpx.AsyncClient(transport=asgi_transport, base_url=BASE_URL) as client:
        yield client


@pytest.fixture
def scripted() -> ScriptedService:
    return ScriptedService()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def make_controller() -> Callable[..., ChatSessionController]:
    return build_controller
