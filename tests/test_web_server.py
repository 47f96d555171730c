"""Tests for the chat HTTP server."""

import asyncio
import json
import warnings
from unittest.mock import AsyncMock, patch

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from src.chat import turn as turn_mod
from src.context import RequestContext
from src.conversations.models import UIMessage
from src.llm.client import StreamEvent
from src.web.server import create_app, encode_chunk

pytestmark = pytest.mark.usefixtures("_no_turso")

USER_A = {"X-User-Id": "user-a"}
USER_B = {"X-User-Id": "user-b"}


# -- Helpers -----------------------------------------------------------------


async def _make_client(app=None):
    """Create a TestClient for the chat app."""
    app = app or create_app()
    server = TestServer(app)
    client = TestClient(server)
    await client.start_server()
    return client


def _parse_sse(body: str) -> list:
    """Split an SSE body into decoded ``data:`` payloads."""
    payloads = []
    for frame in body.split("\n\n"):
        if not frame.startswith("data: "):
            continue
        data = frame[len("data: ") :]
        payloads.append(data if data == "[DONE]" else json.loads(data))
    return payloads


def _chat_body(text: str = "Hi", conversation_id: str = "c1", **extra) -> dict:
    return {
        "messages": [{"id": "u1", "role": "user", "parts": [{"type": "text", "text": text}]}],
        "conversationId": conversation_id,
        **extra,
    }


def _ctx(user_id: str) -> RequestContext:
    return RequestContext(user_id=user_id)


def _fake_stream(events):
    async def _stream(*args, **kwargs):
        for event in events:
            yield event

    return _stream


@pytest.fixture
def stores(conversation_store):
    """Route the app's conversation store to a temp database."""
    with (
        patch("src.conversations.store.ConversationStore.get", return_value=conversation_store),
        patch("src.conversations.store.generate_title", new_callable=AsyncMock, return_value="Greeting"),
    ):
        yield conversation_store


# -- Encoding ----------------------------------------------------------------


def test_encode_chunk() -> None:
    assert encode_chunk({"type": "finish"}) == b'data: {"type":"finish"}\n\n'
    assert encode_chunk("[DONE]") == b"data: [DONE]\n\n"


# -- Health check -----------------------------------------------------------


async def test_health_check() -> None:
    client = await _make_client()
    try:
        resp = await client.get("/health")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert resp.headers["X-Request-Id"]
    finally:
        await client.close()


async def test_request_id_is_echoed() -> None:
    client = await _make_client()
    try:
        resp = await client.get("/health", headers={"X-Request-Id": "abc123"})
        assert resp.headers["X-Request-Id"] == "abc123"
    finally:
        await client.close()


async def test_request_context_uses_typed_key(stores) -> None:
    client = await _make_client()
    try:
        with warnings.catch_warnings():
            warnings.simplefilter("error", web.NotAppKeyWarning)
            resp = await client.get("/api/conversations", headers=USER_A)
        assert resp.status == 200
    finally:
        await client.close()


# -- Chat --------------------------------------------------------------------


async def test_chat_rejects_invalid_json() -> None:
    client = await _make_client()
    try:
        resp = await client.post(
            "/api/chat", data="{not json", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400
        assert (await resp.json())["error"] == "invalid JSON"
    finally:
        await client.close()


@pytest.mark.parametrize(
    "body",
    [
        {"messages": [], "conversationId": "c1"},
        {"messages": [{"id": "u1", "role": "user", "parts": []}]},
        {"conversationId": "c1"},
    ],
)
async def test_chat_rejects_invalid_request(body) -> None:
    client = await _make_client()
    try:
        resp = await client.post("/api/chat", json=body)
        assert resp.status == 400
        data = await resp.json()
        assert data["error"] == "Invalid chat request"
        assert data["details"]
    finally:
        await client.close()


async def test_chat_streams_ui_message_chunks(stores) -> None:
    events = [
        StreamEvent(kind="step_start"),
        StreamEvent(kind="text", text="Hello"),
        StreamEvent(kind="step_finish"),
    ]
    client = await _make_client()
    try:
        with (
            patch("src.chat.turn.stream_response", _fake_stream(events)),
            patch("src.chat.turn.build_system_prompt", new_callable=AsyncMock, return_value=[]),
        ):
            resp = await client.post("/api/chat", json=_chat_body(), headers=USER_A)
            body = await resp.text()
        await asyncio.gather(*list(turn_mod._background_tasks))

        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        assert resp.headers["x-vercel-ai-ui-message-stream"] == "v1"

        chunks = _parse_sse(body)
        assert [c if c == "[DONE]" else c["type"] for c in chunks] == [
            "start",
            "start-step",
            "text-start",
            "text-delta",
            "text-end",
            "finish-step",
            "finish",
            "[DONE]",
        ]

        loaded = await stores.load(_ctx("user-a"), "c1")
        assert loaded.success
        assert loaded.conversation.title == "Greeting"
        assert [m.role for m in loaded.messages] == ["user", "assistant"]
        assert loaded.messages[1].first_text() == "Hello"
    finally:
        await client.close()


async def test_chat_failure_is_an_error_chunk(stores) -> None:
    async def _broken(*args, **kwargs):
        yield StreamEvent(kind="step_start")
        raise RuntimeError("model overloaded")

    client = await _make_client()
    try:
        with (
            patch("src.chat.turn.stream_response", _broken),
            patch("src.chat.turn.build_system_prompt", new_callable=AsyncMock, return_value=[]),
        ):
            resp = await client.post("/api/chat", json=_chat_body(), headers=USER_A)
            body = await resp.text()

        assert resp.status == 200
        chunks = _parse_sse(body)
        assert chunks[-2] == {"type": "error", "errorText": "model overloaded"}
        assert chunks[-1] == "[DONE]"
        assert not await stores.exists(_ctx("user-a"), "c1")
    finally:
        await client.close()


# -- Conversations -----------------------------------------------------------


async def _seed(store, user_id: str, conversation_id: str, text: str = "Hi") -> None:
    await store.save(
        _ctx(user_id),
        conversation_id,
        [UIMessage(id=f"{conversation_id}-u1", role="user", parts=[{"type": "text", "text": text}])],
    )


async def test_list_conversations_scoped_to_owner(stores) -> None:
    await _seed(stores, "user-a", "c1")
    await _seed(stores, "user-b", "c2")

    client = await _make_client()
    try:
        resp = await client.get("/api/conversations", headers=USER_A)
        assert resp.status == 200
        data = await resp.json()
        assert data["success"] is True
        assert [c["id"] for c in data["conversations"]] == ["c1"]
    finally:
        await client.close()


async def test_get_conversation(stores) -> None:
    await _seed(stores, "user-a", "c1", "Hello coach")

    client = await _make_client()
    try:
        resp = await client.get("/api/conversations/c1", headers=USER_A)
        assert resp.status == 200
        data = await resp.json()
        assert data["conversation"]["title"] == "Greeting"
        assert data["messages"][0]["parts"] == [{"type": "text", "text": "Hello coach"}]

        resp = await client.get("/api/conversations/c1", headers=USER_B)
        assert resp.status == 404
        assert (await resp.json())["error"] == "Conversation not found"
    finally:
        await client.close()


async def test_rename_conversation(stores) -> None:
    await _seed(stores, "user-a", "c1")

    client = await _make_client()
    try:
        resp = await client.patch("/api/conversations/c1", json={}, headers=USER_A)
        assert resp.status == 400

        resp = await client.patch("/api/conversations/c1", json={"title": "Mine"}, headers=USER_B)
        assert resp.status == 404

        resp = await client.patch("/api/conversations/c1", json={"title": "Race day"}, headers=USER_A)
        assert resp.status == 200
        assert (await stores.load(_ctx("user-a"), "c1")).conversation.title == "Race day"
    finally:
        await client.close()


async def test_delete_conversation(stores) -> None:
    await _seed(stores, "user-a", "c1")

    client = await _make_client()
    try:
        resp = await client.delete("/api/conversations/c1", headers=USER_B)
        assert resp.status == 404
        assert await stores.exists(_ctx("user-a"), "c1")

        resp = await client.delete("/api/conversations/c1", headers=USER_A)
        assert resp.status == 200
        assert not await stores.exists(_ctx("user-a"), "c1")
    finally:
        await client.close()


async def test_store_error_is_500(stores) -> None:
    failing = AsyncMock()
    failing.list_for_owner.side_effect = RuntimeError("boom")

    client = await _make_client()
    try:
        with patch("src.web.server.ConversationStore.get", return_value=failing):
            resp = await client.get("/api/conversations")
        assert resp.status == 500
        assert (await resp.json())["error"] == "Internal server error"
    finally:
        await client.close()


# -- Logs --------------------------------------------------------------------


async def test_logs_single_and_batch() -> None:
    client = await _make_client()
    try:
        resp = await client.post("/api/logs", json={"level": "info", "message": "hello"})
        assert resp.status == 200
        assert await resp.json() == {"success": True}
        assert resp.headers["Access-Control-Allow-Origin"] == "*"

        resp = await client.post(
            "/api/logs",
            json={"logs": [{"level": "info", "message": "a"}, {"level": "error", "message": "b"}]},
        )
        assert await resp.json() == {"success": True, "processed": 2}
    finally:
        await client.close()


async def test_logs_invalid_format() -> None:
    client = await _make_client()
    try:
        resp = await client.post("/api/logs", json={"nope": True})
        assert resp.status == 400
        assert (await resp.json())["error"] == "Invalid log format"

        resp = await client.post(
            "/api/logs", data="garbage", headers={"Content-Type": "application/json"}
        )
        assert resp.status == 400
    finally:
        await client.close()


async def test_logs_preflight() -> None:
    client = await _make_client()
    try:
        resp = await client.options("/api/logs")
        assert resp.status == 200
        assert "POST" in resp.headers["Access-Control-Allow-Methods"]
    finally:
        await client.close()
