"""Data models for conversations and their messages."""

from typing import Any, Literal

from pydantic import BaseModel, Field

DEFAULT_TITLE = "New Conversation"

Role = Literal["user", "assistant", "system"]


class UIMessage(BaseModel):
    """A chat message as exchanged with the UI.

    ``parts`` is an ordered list of heterogeneous segments (text, reasoning,
    tool calls and results, sources, step markers) kept as plain dicts so
    they round-trip through storage unchanged.
    """

    id: str = Field(min_length=1)
    role: Role
    parts: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None

    def first_text(self) -> str | None:
        """Text of the first non-empty text part, if any."""
        for part in self.parts:
            if part.get("type") == "text" and part.get("text"):
                return part["text"]
        return None


class Conversation(BaseModel):
    """Conversation metadata row."""

    id: str
    user_id: str
    title: str
    last_message_at: str
    created_at: str | None = None
    updated_at: str | None = None


class ConversationResult(BaseModel):
    """Outcome of a conversation store operation. Never raised, always returned."""

    success: bool
    error: str | None = None
    conversation_id: str | None = None
    conversation: Conversation | None = None
    conversations: list[Conversation] | None = None
    messages: list[UIMessage] | None = None

    @classmethod
    def failure(cls, error: str) -> "ConversationResult":
        return cls(success=False, error=error)
