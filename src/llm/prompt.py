"""System prompt assembly with memory retrieval."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from src.memory.store import MemoryStore

if TYPE_CHECKING:
    from src.context import RequestContext
    from src.memory.models import MemoryRecord

logger = logging.getLogger(__name__)

COACH_PERSONA = """\
You are Moach, a personal betterment coach.
You combine the rigor of a clinical psychologist with the practical, \
science-first approach of a neuroscientist who studies performance.
Research is your superpower, and you are a master of it.
You work with the user to help them achieve their goals.
Do not let the user get away with cheating themselves; when they do, call \
them out on it, firmly but kindly.

If a question would help you learn more about the user, ask it. When you are \
not actively answering a question, your goal is to find out more about the \
user so you can coach them better."""

MEMORY_GUIDANCE = """\
# Memory

You have a long-term memory of this user. Use it to build them into the \
person they want to be.
- Store anything relevant you learn (goals, habits, preferences, setbacks, \
progress) with `memory_store` or `memory_store_multiple`. Use short, stable \
keys such as `goal_marathon` and a few descriptive tags.
- Storing under an existing key replaces that memory; use this to keep \
facts current.
- Before giving advice, look up what you know with `memory_retrieve`, \
`memory_search_by_tags` or `memory_search_by_key`.
- Use `memory_delete` only when the user asks you to forget something or a \
memory is clearly wrong.
- If a memory tool fails, tell the user briefly and carry on."""

WEB_SEARCH_GUIDANCE = """\
# Web search

You can search the web. Prefer recent, reputable sources and cite them."""


def _format_memories(records: list[MemoryRecord]) -> str:
    """Format retrieved memories for injection into the system prompt."""
    if not records:
        return ""

    lines = ["## Recalled Memories\n"]
    for record in records:
        tags = f" [{', '.join(record.tags)}]" if record.tags else ""
        lines.append(f"- {record.key}{tags}: {record.value}")
    return "\n".join(lines)


async def _retrieve_memories(ctx: RequestContext, user_message: str) -> str:
    """Search the memory store for context relevant to the user's message."""
    result = await MemoryStore.get().retrieve_by_similarity(ctx, user_message, limit=5)
    if not result.success:
        logger.warning("Memory retrieval failed (request=%s): %s", ctx.request_id, result.error)
        return ""
    return _format_memories(result.results or [])


async def build_system_prompt(
    ctx: RequestContext,
    *,
    user_message: str = "",
    memory: bool = False,
    web_search: bool = False,
    extra: str = "",
) -> list[dict]:
    """Assemble the system prompt.

    The static persona and tool guidance get ``cache_control`` so they're
    cached across tool-calling rounds. The current time and any recalled
    memories follow as separate blocks.

    Args:
        ctx: Request context; memories are recalled for its owner.
        user_message: Latest user text, used for memory recall when
            *memory* is on.
        memory: Whether memory tools are attached to this turn.
        web_search: Whether web search is attached to this turn.
        extra: System text supplied by the client's system messages.

    Returns:
        List of content blocks for the Claude ``system`` parameter.
    """
    sections = [COACH_PERSONA]
    if memory:
        sections.append(MEMORY_GUIDANCE)
    if web_search:
        sections.append(WEB_SEARCH_GUIDANCE)
    if extra:
        sections.append(extra)

    static_text = "\n\n---\n\n".join(sections)

    # Current time, injected on every call (not cached)
    now = datetime.now(UTC)
    time_text = f"Current time: {now.strftime('%A, %B %d, %Y %H:%M')} UTC"

    blocks: list[dict] = [
        {
            "type": "text",
            "text": static_text,
            "cache_control": {"type": "ephemeral"},
        },
        {
            "type": "text",
            "text": time_text,
        },
    ]

    if memory and user_message:
        memory_text = await _retrieve_memories(ctx, user_message)
        if memory_text:
            blocks.append({"type": "text", "text": memory_text})

    return blocks
