"""Tests for stream_response(): event mapping and the tool-calling loop."""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from src.llm.client import StreamEvent, stream_response
from src.tools.base import ToolResult

# ---------------------------------------------------------------------------
# Helpers: mock the streaming API
# ---------------------------------------------------------------------------


@dataclass
class _FakeBlock:
    type: str
    text: str = ""
    id: str = ""
    name: str = ""
    input: dict[str, Any] = field(default_factory=dict)


@dataclass
class _FakeEvent:
    type: str
    text: str = ""
    thinking: str = ""
    citation: Any = None


class _FakeStream:
    """Simulates an anthropic MessageStream."""

    def __init__(
        self,
        events: list[_FakeEvent],
        content_blocks: list[_FakeBlock],
        stop_reason: str | None = None,
    ) -> None:
        self._events = events
        self._content_blocks = content_blocks
        self._stop_reason = stop_reason

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self._events:
            yield event

    async def get_final_message(self):
        msg = MagicMock()
        msg.content = self._content_blocks
        if self._stop_reason:
            msg.stop_reason = self._stop_reason
        elif any(b.type == "tool_use" for b in self._content_blocks):
            msg.stop_reason = "tool_use"
        else:
            msg.stop_reason = "end_turn"
        return msg


def _text_round(text: str) -> _FakeStream:
    return _FakeStream([_FakeEvent("text", text=text)], [_FakeBlock("text", text=text)])


def _tool_round(name: str, tool_input: dict, tool_id: str = "toolu_1") -> _FakeStream:
    return _FakeStream(
        [],
        [_FakeBlock("tool_use", id=tool_id, name=name, input=tool_input)],
    )


def _make_mock_client(rounds: list[_FakeStream]):
    """Create a mock Anthropic client that returns a sequence of streaming rounds."""
    client = MagicMock()
    calls: list[dict[str, Any]] = []

    @asynccontextmanager
    async def _stream(**kwargs):
        calls.append({**kwargs, "messages": list(kwargs["messages"])})
        yield rounds[len(calls) - 1]

    client.messages.stream = _stream
    client.calls = calls
    return client


async def _collect(client, mock_registry=None, **kwargs) -> list[StreamEvent]:
    mock_registry = mock_registry or MagicMock()
    with (
        patch("src.llm.client._get_client", return_value=client),
        patch("src.llm.client.registry", mock_registry),
    ):
        return [
            event
            async for event in stream_response(
                [{"role": "user", "content": "hi"}],
                system="You are a coach.",
                model="claude-test-model",
                **kwargs,
            )
        ]


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


async def test_plain_text_response(ctx) -> None:
    client = _make_mock_client([
        _FakeStream(
            [_FakeEvent("text", text="Hello"), _FakeEvent("text", text=" there")],
            [_FakeBlock("text", text="Hello there")],
        )
    ])

    events = await _collect(client, ctx=ctx)

    assert [e.kind for e in events] == ["step_start", "text", "text", "step_finish"]
    assert "".join(e.text for e in events if e.kind == "text") == "Hello there"
    assert client.calls[0]["model"] == "claude-test-model"
    assert "tools" not in client.calls[0]


async def test_reasoning_events(ctx) -> None:
    client = _make_mock_client([
        _FakeStream(
            [_FakeEvent("thinking", thinking="Let me think"), _FakeEvent("text", text="Done")],
            [_FakeBlock("text", text="Done")],
        )
    ])

    events = await _collect(client, ctx=ctx)
    assert [(e.kind, e.text) for e in events[1:3]] == [("reasoning", "Let me think"), ("text", "Done")]


async def test_ignores_other_stream_events(ctx) -> None:
    client = _make_mock_client([
        _FakeStream(
            [_FakeEvent("content_block_start"), _FakeEvent("text", text="ok")],
            [_FakeBlock("text", text="ok")],
        )
    ])

    events = await _collect(client, ctx=ctx)
    assert [e.kind for e in events] == ["step_start", "text", "step_finish"]


async def test_tool_loop_executes_and_feeds_back(ctx) -> None:
    client = _make_mock_client([
        _tool_round("memory_retrieve", {"query": "goals"}),
        _text_round("You want to run a marathon."),
    ])
    mock_registry = MagicMock()
    mock_registry.execute = AsyncMock(return_value=ToolResult(data={"count": 1}))

    events = await _collect(client, mock_registry, ctx=ctx, tools=[{"name": "memory_retrieve"}])

    assert [e.kind for e in events] == [
        "step_start",
        "step_finish",
        "tool_call",
        "tool_result",
        "step_start",
        "text",
        "step_finish",
    ]
    call, result = events[2], events[3]
    assert call.tool_call_id == "toolu_1"
    assert call.tool_name == "memory_retrieve"
    assert call.input == {"query": "goals"}
    assert result.output == {"count": 1}
    assert result.is_error is False
    mock_registry.execute.assert_awaited_once_with("memory_retrieve", {"query": "goals"}, ctx=ctx)

    second = client.calls[1]["messages"]
    assert second[1]["role"] == "assistant"
    assert second[1]["content"][0]["type"] == "tool_use"
    assert second[2]["role"] == "user"
    assert second[2]["content"][0]["tool_use_id"] == "toolu_1"
    assert second[2]["content"][0]["is_error"] is False


async def test_tool_error_is_reported_and_loop_continues(ctx) -> None:
    client = _make_mock_client([
        _tool_round("memory_delete", {"key": "x"}),
        _text_round("I could not find that."),
    ])
    mock_registry = MagicMock()
    mock_registry.execute = AsyncMock(return_value=ToolResult(error="Memory not found: x"))

    events = await _collect(client, mock_registry, ctx=ctx)

    result = next(e for e in events if e.kind == "tool_result")
    assert result.is_error is True
    assert result.text == "Memory not found: x"
    assert result.output == {"success": False, "error": "Memory not found: x"}
    assert client.calls[1]["messages"][2]["content"][0]["is_error"] is True
    assert events[-2].text == "I could not find that."


async def test_max_tool_rounds(ctx) -> None:
    rounds = [_tool_round("memory_retrieve", {"query": "q"}, f"t{i}") for i in range(3)]
    client = _make_mock_client(rounds)
    mock_registry = MagicMock()
    mock_registry.execute = AsyncMock(return_value=ToolResult(data={}))

    with patch("src.llm.client.settings.max_tool_rounds", 2):
        events = await _collect(client, mock_registry, ctx=ctx)

    assert len(client.calls) == 2
    assert mock_registry.execute.await_count == 2
    assert events[-1].kind == "tool_result"


async def test_web_search_attaches_server_tool_and_emits_sources(ctx) -> None:
    citation = MagicMock(
        type="web_search_result_location", url="https://example.com/run", title="Running"
    )
    client = _make_mock_client([
        _FakeStream(
            [_FakeEvent("text", text="Per this source"), _FakeEvent("citation", citation=citation)],
            [_FakeBlock("text", text="Per this source")],
        )
    ])

    events = await _collect(client, ctx=ctx, web_search=True)

    tools = client.calls[0]["tools"]
    assert tools[-1]["type"] == "web_search_20250305"
    source = next(e for e in events if e.kind == "source")
    assert source.url == "https://example.com/run"
    assert source.title == "Running"


async def test_pause_turn_continues(ctx) -> None:
    client = _make_mock_client([
        _FakeStream([_FakeEvent("text", text="Searching")], [_FakeBlock("text", text="Searching")], "pause_turn"),
        _text_round(" found it"),
    ])

    events = await _collect(client, ctx=ctx, web_search=True)

    assert len(client.calls) == 2
    assert client.calls[1]["messages"][-1] == {
        "role": "assistant",
        "content": [{"type": "text", "text": "Searching"}],
    }
    assert "".join(e.text for e in events if e.kind == "text") == "Searching found it"


async def test_thinking_budget_enables_thinking(ctx) -> None:
    client = _make_mock_client([_text_round("ok")])

    with patch("src.llm.client.settings.thinking_budget_tokens", 2048):
        await _collect(client, ctx=ctx)

    assert client.calls[0]["thinking"] == {"type": "enabled", "budget_tokens": 2048}
