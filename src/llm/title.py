"""Conversation title generation."""

import logging

from src.llm.client import complete_text
from src.llm.models import ModelManager

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 50

TITLE_SYSTEM_PROMPT = f"""\
You generate titles for conversations.
Give a title for the conversation based on the first user message.
The title should be a single sentence that captures the essence of the conversation.
The title should be no more than {MAX_TITLE_LENGTH} characters.
The title should be in the same language as the first user message.
Reply with the title only."""


def clean_title(raw: str) -> str:
    """Normalize model output into a single short line."""
    title = " ".join(raw.split()).strip().strip("\"'").strip()
    if len(title) > MAX_TITLE_LENGTH:
        title = title[: MAX_TITLE_LENGTH - 1].rstrip() + "…"
    return title


async def generate_title(message: str) -> str:
    """Ask the title model for a title. May return an empty string.

    Errors from the API propagate; callers decide the fallback.
    """
    raw = await complete_text(
        [{"role": "user", "content": message}],
        system=TITLE_SYSTEM_PROMPT,
        model=ModelManager.get().get_title_model(),
        max_tokens=64,
    )
    title = clean_title(raw)
    logger.debug("Generated title %r", title)
    return title
