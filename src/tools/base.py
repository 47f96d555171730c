"""Base types for the tool-calling framework."""

import json
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel


@dataclass
class ToolResult:
    """Result of a tool execution.

    Exactly one of *data* or *error* is set. The chat client sees
    :meth:`to_output`; Claude receives :meth:`to_content`.
    """

    data: dict[str, Any] | None = None
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    def to_content(self) -> str:
        """Serialize for the Claude tool_result content field."""
        return json.dumps(self.to_output())

    def to_output(self) -> dict[str, Any]:
        """Plain dict form, as shown to the chat client."""
        if self.error:
            return {"success": False, "error": self.error}
        return self.data or {}


class ToolParams(BaseModel):
    """Base class for tool parameter models.

    Subclass with Field() definitions. The JSON schema is auto-generated
    via model_json_schema() for Claude's tool definitions.
    """
