"""ChatTurn: one request/response cycle of the chat endpoint.

A turn moves ``received → generating → finished | failed | aborted``.
While generating it translates :class:`~src.llm.client.StreamEvent`s into
UI message stream chunks, pushes them to the caller and assembles the
assistant message. When generation ends it persists the conversation in
the background, exactly once.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

from src.config import settings
from src.conversations.models import UIMessage
from src.conversations.store import ConversationStore
from src.llm.client import stream_response
from src.llm.convert import to_model_messages
from src.llm.models import ModelManager
from src.llm.prompt import build_system_prompt
from src.tools import registry
from src.tools.memory_tools import CATEGORY as MEMORY_CATEGORY

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from src.context import RequestContext
    from src.llm.client import StreamEvent

logger = logging.getLogger(__name__)

# Strong references to in-flight persistence tasks.
_background_tasks: set[asyncio.Task] = set()


class TurnState(StrEnum):
    RECEIVED = "received"
    GENERATING = "generating"
    FINISHED = "finished"
    FAILED = "failed"
    ABORTED = "aborted"


class ChatRequest(BaseModel):
    """Body of ``POST /api/chat``."""

    model_config = ConfigDict(populate_by_name=True)

    messages: list[UIMessage] = Field(min_length=1)
    model: str = ""
    web_search: bool = Field(default=False, alias="webSearch")
    memory: bool = True
    conversation_id: str = Field(min_length=1, alias="conversationId")


class ChatTurn:
    """Runs one chat turn and pushes UI stream chunks to *emit*."""

    def __init__(
        self,
        request: ChatRequest,
        ctx: RequestContext,
        store: ConversationStore | None = None,
    ) -> None:
        self.request = request
        self.ctx = ctx
        self.state = TurnState.RECEIVED
        self.message_id = uuid.uuid4().hex
        self.parts: list[dict[str, Any]] = []
        self._store = store
        self._persist_scheduled = False
        self._open: dict[str, Any] | None = None  # text/reasoning part being streamed
        self._open_id = ""
        self._block_count = 0
        self._tool_parts: dict[str, dict[str, Any]] = {}
        self._source_urls: set[str] = set()

    @property
    def store(self) -> ConversationStore:
        return self._store or ConversationStore.get()

    @property
    def response_message(self) -> UIMessage:
        """The assistant message generated so far."""
        return UIMessage(id=self.message_id, role="assistant", parts=list(self.parts))

    # -- Running -----------------------------------------------------------------

    async def run(self, emit: Callable[[dict[str, Any]], Awaitable[None]]) -> TurnState:
        """Generate the response, pushing each chunk through *emit*.

        A failure inside generation is reported as an ``error`` chunk. A
        ``ConnectionResetError`` from *emit* means the client went away and
        aborts the turn.
        """
        self.state = TurnState.GENERATING
        logger.info(
            "Chat turn started (request=%s, conversation=%s, memory=%s, web_search=%s)",
            self.ctx.request_id,
            self.request.conversation_id,
            self.request.memory,
            self.request.web_search,
        )
        try:
            async with asyncio.timeout(settings.turn_timeout_seconds):
                await emit({"type": "start", "messageId": self.message_id})
                async for event in self._generate():
                    for chunk in self._apply(event):
                        await emit(chunk)
                for chunk in self._close_open():
                    await emit(chunk)
                await emit({"type": "finish"})
            self.state = TurnState.FINISHED
        except ConnectionResetError:
            logger.info("Client disconnected (request=%s)", self.ctx.request_id)
            self.state = TurnState.ABORTED
        except asyncio.CancelledError:
            self.state = TurnState.ABORTED
            self.schedule_persist()
            raise
        except TimeoutError:
            logger.warning(
                "Chat turn exceeded %.0fs (request=%s)",
                settings.turn_timeout_seconds,
                self.ctx.request_id,
            )
            self.state = TurnState.FAILED
            await self._emit_error(emit, "The response took too long and was stopped.")
        except Exception as exc:
            logger.exception("Chat turn failed (request=%s)", self.ctx.request_id)
            self.state = TurnState.FAILED
            await self._emit_error(emit, str(exc) or exc.__class__.__name__)

        self.schedule_persist()
        return self.state

    async def _emit_error(
        self, emit: Callable[[dict[str, Any]], Awaitable[None]], text: str
    ) -> None:
        with contextlib.suppress(ConnectionResetError):
            await emit({"type": "error", "errorText": text})

    async def _generate(self):  # noqa: ANN202
        system_extra, model_messages = to_model_messages(self.request.messages)
        last_user = next(
            (m for m in reversed(self.request.messages) if m.role == "user"), None
        )
        system = await build_system_prompt(
            self.ctx,
            user_message=(last_user.first_text() or "") if last_user else "",
            memory=self.request.memory,
            web_search=self.request.web_search,
            extra=system_extra,
        )
        tools = registry.get_schemas([MEMORY_CATEGORY]) if self.request.memory else []
        async for event in stream_response(
            model_messages,
            system=system,
            ctx=self.ctx,
            model=ModelManager.get().resolve_chat_model(self.request.model),
            tools=tools,
            web_search=self.request.web_search,
        ):
            yield event

    # -- Event → chunk translation ---------------------------------------------

    def _apply(self, event: StreamEvent) -> list[dict[str, Any]]:
        if event.kind == "step_start":
            self.parts.append({"type": "step-start"})
            return [{"type": "start-step"}]
        if event.kind == "step_finish":
            return [*self._close_open(), {"type": "finish-step"}]
        if event.kind in ("text", "reasoning"):
            return self._delta(event.kind, event.text)
        if event.kind == "tool_call":
            return [*self._close_open(), self._tool_call(event)]
        if event.kind == "tool_result":
            return [self._tool_result(event)]
        if event.kind == "source":
            return self._source(event)
        logger.debug("Ignoring unknown stream event %r", event.kind)
        return []

    def _delta(self, kind: str, text: str) -> list[dict[str, Any]]:
        chunks: list[dict[str, Any]] = []
        if self._open is None or self._open["type"] != kind:
            chunks.extend(self._close_open())
            self._block_count += 1
            self._open_id = f"{kind}-{self._block_count}"
            self._open = {"type": kind, "text": "", "state": "streaming"}
            self.parts.append(self._open)
            chunks.append({"type": f"{kind}-start", "id": self._open_id})
        self._open["text"] += text
        chunks.append({"type": f"{kind}-delta", "id": self._open_id, "delta": text})
        return chunks

    def _close_open(self) -> list[dict[str, Any]]:
        if self._open is None:
            return []
        self._open["state"] = "done"
        chunk = {"type": f"{self._open['type']}-end", "id": self._open_id}
        self._open = None
        return [chunk]

    def _tool_call(self, event: StreamEvent) -> dict[str, Any]:
        part = {
            "type": f"tool-{event.tool_name}",
            "toolCallId": event.tool_call_id,
            "state": "input-available",
            "input": event.input or {},
        }
        self._tool_parts[event.tool_call_id] = part
        self.parts.append(part)
        return {
            "type": "tool-input-available",
            "toolCallId": event.tool_call_id,
            "toolName": event.tool_name,
            "input": event.input or {},
        }

    def _tool_result(self, event: StreamEvent) -> dict[str, Any]:
        part = self._tool_parts.get(event.tool_call_id)
        if event.is_error:
            if part is not None:
                part["state"] = "output-error"
                part["errorText"] = event.text
            return {
                "type": "tool-output-error",
                "toolCallId": event.tool_call_id,
                "errorText": event.text,
            }
        if part is not None:
            part["state"] = "output-available"
            part["output"] = event.output
        return {
            "type": "tool-output-available",
            "toolCallId": event.tool_call_id,
            "output": event.output,
        }

    def _source(self, event: StreamEvent) -> list[dict[str, Any]]:
        if event.url in self._source_urls:
            return []
        self._source_urls.add(event.url)
        part = {
            "type": "source-url",
            "sourceId": f"source-{len(self._source_urls)}",
            "url": event.url,
            "title": event.title,
        }
        self.parts.append(part)
        return [dict(part)]

    # -- Persistence -----------------------------------------------------------

    def history_to_save(self) -> list[UIMessage]:
        """Input messages plus the generated assistant message, if it has content."""
        messages = list(self.request.messages)
        if any(p.get("type") != "step-start" for p in self.parts):
            messages.append(self.response_message)
        return messages

    def schedule_persist(self) -> asyncio.Task | None:
        """Save the conversation in the background once the turn has ended.

        Runs at most once per turn, and only for finished or aborted turns.
        Failures are logged and never reach the client.
        """
        if self._persist_scheduled or self.state not in (TurnState.FINISHED, TurnState.ABORTED):
            return None
        self._persist_scheduled = True
        task = asyncio.create_task(self._persist(self.history_to_save()))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)
        return task

    async def _persist(self, messages: list[UIMessage]) -> None:
        try:
            result = await self.store.save(self.ctx, self.request.conversation_id, messages)
        except Exception:
            logger.exception(
                "Persisting conversation %s failed (request=%s)",
                self.request.conversation_id,
                self.ctx.request_id,
            )
            return
        if not result.success:
            logger.error(
                "Persisting conversation %s failed (request=%s): %s",
                self.request.conversation_id,
                self.ctx.request_id,
                result.error,
            )
