"""Convert UI messages (parts-based) into Claude API messages.

User text parts become text blocks. Assistant messages are split at
``step-start`` markers: each step becomes an assistant turn holding its
text and ``tool_use`` blocks, followed by a user turn carrying the matching
``tool_result`` blocks. Reasoning, sources and unfinished tool calls are
not sent back to the model.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.conversations.models import UIMessage

_FINISHED_TOOL_STATES = {"output-available", "output-error"}


def tool_name_of(part: dict[str, Any]) -> str | None:
    """Tool name for a tool part (``tool-<name>`` or ``dynamic-tool``), else None."""
    part_type = part.get("type", "")
    if part_type == "dynamic-tool":
        return part.get("toolName")
    if part_type.startswith("tool-"):
        return part_type[len("tool-") :]
    return None


def _tool_result_block(part: dict[str, Any]) -> dict[str, Any]:
    if part.get("state") == "output-error":
        return {
            "type": "tool_result",
            "tool_use_id": part["toolCallId"],
            "content": json.dumps({"error": part.get("errorText", "Tool failed")}),
            "is_error": True,
        }
    return {
        "type": "tool_result",
        "tool_use_id": part["toolCallId"],
        "content": json.dumps(part.get("output")),
    }


def _assistant_turns(message: UIMessage) -> list[dict[str, Any]]:
    turns: list[dict[str, Any]] = []
    content: list[dict[str, Any]] = []
    results: list[dict[str, Any]] = []

    def flush() -> None:
        if content:
            turns.append({"role": "assistant", "content": list(content)})
        if results:
            turns.append({"role": "user", "content": list(results)})
        content.clear()
        results.clear()

    for part in message.parts:
        part_type = part.get("type")
        if part_type == "step-start":
            flush()
        elif part_type == "text":
            if part.get("text"):
                content.append({"type": "text", "text": part["text"]})
        elif (name := tool_name_of(part)) and part.get("state") in _FINISHED_TOOL_STATES:
            content.append({
                "type": "tool_use",
                "id": part["toolCallId"],
                "name": name,
                "input": part.get("input") or {},
            })
            results.append(_tool_result_block(part))
    flush()
    return turns


def _merge_adjacent(messages: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Join consecutive turns with the same role so roles alternate."""
    merged: list[dict[str, Any]] = []
    for msg in messages:
        if merged and merged[-1]["role"] == msg["role"]:
            merged[-1]["content"] = merged[-1]["content"] + msg["content"]
        else:
            merged.append({"role": msg["role"], "content": list(msg["content"])})
    return merged


def to_model_messages(messages: list[UIMessage]) -> tuple[str, list[dict[str, Any]]]:
    """Return ``(system_text, claude_messages)`` for a UI message history.

    System-role messages are collected into *system_text* since Claude takes
    the system prompt separately.
    """
    system_lines: list[str] = []
    converted: list[dict[str, Any]] = []

    for message in messages:
        if message.role == "system":
            system_lines.extend(
                p["text"] for p in message.parts if p.get("type") == "text" and p.get("text")
            )
        elif message.role == "user":
            blocks = [
                {"type": "text", "text": p["text"]}
                for p in message.parts
                if p.get("type") == "text" and p.get("text")
            ]
            if blocks:
                converted.append({"role": "user", "content": blocks})
        else:
            converted.extend(_assistant_turns(message))

    return "\n\n".join(system_lines), _merge_adjacent(converted)
