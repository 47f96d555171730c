"""Async HTTP server for the chat UI.

Routes:

- ``POST /api/chat``: stream one chat turn as a UI message stream (SSE)
- ``GET/PATCH/DELETE /api/conversations[/{id}]``: conversation history
- ``POST /api/logs``: frontend log ingestion
- ``GET /health``: liveness

The owner of every request comes from the ``X-User-Id`` header (set by
the auth proxy in front of this service), falling back to
``DEFAULT_USER_ID``.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from src.chat.turn import ChatRequest, ChatTurn, TurnState
from src.config import settings
from src.context import RequestContext
from src.conversations.store import NOT_FOUND, ConversationStore
from src.logs import InvalidLogFormat, ingest

logger = logging.getLogger(__name__)

STREAM_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "x-vercel-ai-ui-message-stream": "v1",
    "x-accel-buffering": "no",
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}

CTX_KEY = web.RequestKey("ctx", RequestContext)


def encode_chunk(chunk: dict[str, Any] | str) -> bytes:
    """Encode one UI stream chunk as a server-sent event."""
    data = chunk if isinstance(chunk, str) else json.dumps(chunk, separators=(",", ":"))
    return f"data: {data}\n\n".encode()


def _ctx(request: web.Request) -> RequestContext:
    return request[CTX_KEY]


@web.middleware
async def context_middleware(request: web.Request, handler) -> web.StreamResponse:  # noqa: ANN001
    """Resolve the owner and request ID; turn uncaught errors into JSON 500s."""
    ctx = RequestContext(
        user_id=request.headers.get("X-User-Id", "").strip() or settings.default_user_id,
        request_id=request.headers.get("X-Request-Id", "").strip() or uuid.uuid4().hex,
    )
    request[CTX_KEY] = ctx
    try:
        response = await handler(request)
    except web.HTTPException:
        raise
    except Exception:
        logger.exception("Unhandled error on %s %s (request=%s)", request.method, request.path, ctx.request_id)
        response = web.json_response({"error": "Internal server error"}, status=500)
    if not response.prepared:
        response.headers["X-Request-Id"] = ctx.request_id
    return response


async def _read_json(request: web.Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


# -- Chat --------------------------------------------------------------------


async def _handle_chat(request: web.Request) -> web.StreamResponse:
    """POST /api/chat: stream a response to the latest user message."""
    ctx = _ctx(request)
    body = await _read_json(request)
    if body is None:
        return web.json_response({"error": "invalid JSON"}, status=400)

    try:
        chat_request = ChatRequest.model_validate(body)
    except ValidationError as exc:
        logger.warning("Chat request rejected (request=%s): %s", ctx.request_id, exc)
        return web.json_response({"error": "Invalid chat request", "details": exc.errors(include_url=False)}, status=400)

    response = web.StreamResponse(headers={**STREAM_HEADERS, "X-Request-Id": ctx.request_id})
    await response.prepare(request)

    async def emit(chunk: dict[str, Any]) -> None:
        await response.write(encode_chunk(chunk))

    state = await ChatTurn(chat_request, ctx).run(emit)
    if state is not TurnState.ABORTED:
        try:
            await response.write(encode_chunk("[DONE]"))
            await response.write_eof()
        except ConnectionResetError:
            logger.info("Client gone before end of stream (request=%s)", ctx.request_id)
    return response


# -- Conversations -----------------------------------------------------------


def _error_response(error: str | None) -> web.Response:
    status = 404 if error == NOT_FOUND else 500
    return web.json_response({"success": False, "error": error}, status=status)


async def _list_conversations(request: web.Request) -> web.Response:
    result = await ConversationStore.get().list_for_owner(_ctx(request))
    if not result.success:
        return _error_response(result.error)
    return web.json_response(result.model_dump(mode="json", exclude_none=True))


async def _get_conversation(request: web.Request) -> web.Response:
    conversation_id = request.match_info["conversation_id"]
    result = await ConversationStore.get().load(_ctx(request), conversation_id)
    if not result.success:
        return _error_response(result.error)
    return web.json_response(result.model_dump(mode="json", exclude_none=True))


async def _rename_conversation(request: web.Request) -> web.Response:
    conversation_id = request.match_info["conversation_id"]
    body = await _read_json(request)
    title = body.get("title") if isinstance(body, dict) else None
    if not isinstance(title, str) or not title.strip():
        return web.json_response({"success": False, "error": "title is required"}, status=400)

    result = await ConversationStore.get().update_title(_ctx(request), conversation_id, title)
    if not result.success:
        return _error_response(result.error)
    return web.json_response({"success": True})


async def _delete_conversation(request: web.Request) -> web.Response:
    conversation_id = request.match_info["conversation_id"]
    result = await ConversationStore.get().delete(_ctx(request), conversation_id)
    if not result.success:
        return _error_response(result.error)
    return web.json_response({"success": True})


# -- Logs --------------------------------------------------------------------


async def _handle_logs(request: web.Request) -> web.Response:
    """POST /api/logs: accept one frontend log entry or a batch."""
    body = await _read_json(request)
    try:
        processed = ingest(body)
    except InvalidLogFormat:
        return web.json_response({"error": "Invalid log format"}, status=400, headers=CORS_HEADERS)
    except Exception:
        logger.exception("Failed to process frontend logs")
        return web.json_response({"error": "Failed to process logs"}, status=500, headers=CORS_HEADERS)

    payload: dict[str, Any] = {"success": True}
    if processed is not None:
        payload["processed"] = processed
    return web.json_response(payload, headers=CORS_HEADERS)


async def _logs_options(request: web.Request) -> web.Response:
    return web.Response(status=200, headers=CORS_HEADERS)


async def _health(request: web.Request) -> web.Response:
    """GET /health: basic liveness check."""
    return web.json_response({"status": "ok"})


def create_app() -> web.Application:
    """Build the aiohttp Application with routes."""
    app = web.Application(middlewares=[context_middleware])
    app.router.add_get("/health", _health)
    app.router.add_post("/api/chat", _handle_chat)
    app.router.add_get("/api/conversations", _list_conversations)
    app.router.add_get("/api/conversations/{conversation_id}", _get_conversation)
    app.router.add_patch("/api/conversations/{conversation_id}", _rename_conversation)
    app.router.add_delete("/api/conversations/{conversation_id}", _delete_conversation)
    app.router.add_post("/api/logs", _handle_logs)
    app.router.add_route("OPTIONS", "/api/logs", _logs_options)
    return app
