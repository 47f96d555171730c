"""Async Claude API client with streaming and tool-calling loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import anthropic

from src.config import settings
from src.llm.models import ModelManager
from src.tools import registry

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from src.context import RequestContext

logger = logging.getLogger(__name__)

_client: anthropic.AsyncAnthropic | None = None

# Server-side blocks that must be echoed back verbatim within a turn.
_PASSTHROUGH_BLOCKS = {"server_tool_use", "web_search_tool_result"}


@dataclass
class StreamEvent:
    """One thing that happened while generating a response.

    ``kind`` is one of: ``step_start``, ``text``, ``reasoning``,
    ``tool_call``, ``tool_result``, ``source``, ``step_finish``.
    """

    kind: str
    text: str = ""
    tool_call_id: str = ""
    tool_name: str = ""
    input: dict[str, Any] | None = None
    output: dict[str, Any] | None = None
    is_error: bool = False
    url: str = ""
    title: str = ""


def _get_client() -> anthropic.AsyncAnthropic:
    """Lazily initialize the Anthropic client."""
    global _client  # noqa: PLW0603
    if _client is None:
        _client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
    return _client


def web_search_tool() -> dict[str, Any]:
    """Anthropic's server-side web search tool definition."""
    return {
        "type": "web_search_20250305",
        "name": "web_search",
        "max_uses": settings.web_search_max_uses,
        "user_location": {"type": "approximate", "country": "US"},
    }


async def complete_text(
    messages: list[dict[str, Any]],
    *,
    system: str | list[dict[str, Any]] | None = None,
    model: str | None = None,
    max_tokens: int = 4096,
) -> str:
    """Single-shot Claude call without tools or streaming.

    Use this for isolated LLM tasks (titles, summaries, etc.)
    where the full stream_response() pipeline is not needed.
    """
    client = _get_client()
    kwargs: dict[str, Any] = {
        "model": model or ModelManager.get().get_chat_model(),
        "max_tokens": max_tokens,
        "messages": messages,
    }
    if system is not None:
        kwargs["system"] = system
    response = await client.messages.create(**kwargs)
    return "".join(b.text for b in response.content if b.type == "text")


def _serialize_content(content: list[Any]) -> list[dict[str, Any]]:
    """Convert SDK content blocks to plain dicts for message history."""
    result: list[dict[str, Any]] = []
    for block in content:
        if block.type == "text":
            if block.text:
                result.append({"type": "text", "text": block.text})
        elif block.type == "thinking":
            result.append({
                "type": "thinking",
                "thinking": block.thinking,
                "signature": block.signature,
            })
        elif block.type == "redacted_thinking":
            result.append({"type": "redacted_thinking", "data": block.data})
        elif block.type == "tool_use":
            result.append({
                "type": "tool_use",
                "id": block.id,
                "name": block.name,
                "input": block.input,
            })
        elif block.type in _PASSTHROUGH_BLOCKS:
            result.append(block.model_dump(mode="json", exclude_none=True))
    return result


def _source_event(citation: Any) -> StreamEvent | None:
    if getattr(citation, "type", "") != "web_search_result_location":
        return None
    return StreamEvent(kind="source", url=citation.url, title=citation.title or "")


async def stream_response(
    messages: list[dict[str, Any]],
    *,
    system: str | list[dict[str, Any]],
    ctx: RequestContext,
    model: str | None = None,
    tools: list[dict[str, Any]] | None = None,
    web_search: bool = False,
) -> AsyncIterator[StreamEvent]:
    """Generate a response with the full tool-calling loop.

    Yields events as they happen: text and reasoning deltas while Claude
    streams, then each tool call and its result. Tool calls are executed
    through the registry (with *ctx* injected) and fed back to Claude
    until it answers without calling tools, or ``max_tool_rounds`` is hit.

    Args:
        messages: Conversation history in Claude API message format.
        system: System prompt blocks.
        ctx: Request context passed to tool handlers.
        model: Full model ID; defaults to the configured chat model.
        tools: Tool schemas from the registry.
        web_search: Attach Anthropic's server-side web search.
    """
    client = _get_client()
    tool_schemas = list(tools or [])
    if web_search:
        tool_schemas.append(web_search_tool())

    loop_messages = list(messages)

    max_rounds = settings.max_tool_rounds
    for round_num in range(max_rounds):
        kwargs: dict[str, Any] = {
            "model": model or ModelManager.get().get_chat_model(),
            "max_tokens": settings.max_output_tokens,
            "system": system,
            "messages": loop_messages,
        }
        if tool_schemas:
            kwargs["tools"] = tool_schemas
        if settings.thinking_budget_tokens > 0:
            kwargs["thinking"] = {
                "type": "enabled",
                "budget_tokens": settings.thinking_budget_tokens,
            }

        yield StreamEvent(kind="step_start")

        async with client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type == "text":
                    yield StreamEvent(kind="text", text=event.text)
                elif event.type == "thinking":
                    yield StreamEvent(kind="reasoning", text=event.thinking)
                elif event.type == "citation" and (source := _source_event(event.citation)):
                    yield source

            response = await stream.get_final_message()

        yield StreamEvent(kind="step_finish")

        if response.stop_reason == "pause_turn":
            # Long-running server tool (web search); let Claude continue.
            loop_messages.append({
                "role": "assistant",
                "content": _serialize_content(response.content),
            })
            continue

        tool_use_blocks = [b for b in response.content if b.type == "tool_use"]
        if not tool_use_blocks:
            return

        logger.info(
            "Round %d (request=%s): %d tool call(s): %s",
            round_num + 1,
            ctx.request_id,
            len(tool_use_blocks),
            ", ".join(b.name for b in tool_use_blocks),
        )

        # Append the assistant turn (with tool_use blocks) to the loop
        loop_messages.append({
            "role": "assistant",
            "content": _serialize_content(response.content),
        })

        # Execute each tool call
        tool_results: list[dict[str, Any]] = []
        for block in tool_use_blocks:
            yield StreamEvent(
                kind="tool_call",
                tool_call_id=block.id,
                tool_name=block.name,
                input=block.input,
            )

            result = await registry.execute(block.name, block.input, ctx=ctx)

            yield StreamEvent(
                kind="tool_result",
                tool_call_id=block.id,
                tool_name=block.name,
                output=result.to_output(),
                is_error=not result.success,
                text=result.error or "",
            )
            tool_results.append({
                "type": "tool_result",
                "tool_use_id": block.id,
                "content": result.to_content(),
                "is_error": not result.success,
            })

        loop_messages.append({"role": "user", "content": tool_results})

    logger.warning("Hit max tool rounds (%d, request=%s)", max_rounds, ctx.request_id)
