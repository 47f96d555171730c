"""Tool registry with schema generation and validated execution."""

from __future__ import annotations

import inspect
import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from src.tools.base import ToolParams, ToolResult

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from src.context import RequestContext

logger = logging.getLogger(__name__)


@dataclass
class ToolDef:
    """Internal representation of a registered tool."""

    name: str
    description: str
    category: str
    handler: Callable[..., Awaitable[ToolResult]]
    params_model: type[ToolParams] | None = None


class ToolRegistry:
    """Catalog of the tools Claude may call during a chat turn.

    Tools register with the :meth:`tool` decorator::

        @registry.tool(name="memory_delete", description="...",
                       category="memory", params_model=MemoryDeleteParams)
        async def memory_delete(key: str, ctx: RequestContext) -> ToolResult:
            ...

    Schemas can be filtered by category so a turn only exposes the tools
    it enabled.
    """

    def __init__(self) -> None:
        self._tools: dict[str, ToolDef] = {}

    def tool(
        self,
        *,
        name: str,
        description: str,
        category: str,
        params_model: type[ToolParams] | None = None,
    ) -> Callable:
        """Decorator to register an async function as a tool."""

        def decorator(fn: Callable[..., Awaitable[ToolResult]]) -> Callable:
            if not inspect.iscoroutinefunction(fn):
                msg = f"Tool handler '{name}' must be an async function"
                raise TypeError(msg)

            self._tools[name] = ToolDef(
                name=name,
                description=description,
                category=category,
                handler=fn,
                params_model=params_model,
            )
            return fn

        return decorator

    def get(self, name: str) -> ToolDef | None:
        """Look up a tool by name."""
        return self._tools.get(name)

    def get_schemas(self, categories: Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Generate Claude-compatible tool schemas.

        When *categories* is given, only tools in those categories are included.
        """
        wanted = set(categories) if categories is not None else None
        return [
            self._tool_schema(t)
            for t in self._tools.values()
            if wanted is None or t.category in wanted
        ]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        ctx: RequestContext | None = None,
    ) -> ToolResult:
        """Execute a tool by name with the given arguments.

        Validates arguments against the params_model if one is defined;
        invalid input is returned as an error result and the handler is
        never called. If the handler accepts a ``ctx`` parameter, the
        request context is injected.
        """
        tool_def = self._tools.get(name)
        if tool_def is None:
            return ToolResult(error=f"Unknown tool: {name}")

        request_id = ctx.request_id if ctx else "-"
        logger.info("Tool '%s' called (request=%s) with %s", name, request_id, arguments)
        t0 = time.monotonic()

        try:
            if tool_def.params_model is not None:
                params = tool_def.params_model.model_validate(arguments or {})
                kwargs = params.model_dump()
            else:
                kwargs = dict(arguments or {})
        except ValidationError as exc:
            logger.warning("Tool '%s' rejected invalid input: %s", name, exc)
            return ToolResult(error=f"Invalid input for '{name}': {exc}")

        if ctx is not None and _accepts_param(tool_def.handler, "ctx"):
            kwargs["ctx"] = ctx

        try:
            result = await tool_def.handler(**kwargs)
        except Exception:
            elapsed = time.monotonic() - t0
            logger.exception("Tool '%s' failed in %.2fs", name, elapsed)
            return ToolResult(error=f"Tool '{name}' failed. Check logs for details.")

        elapsed = time.monotonic() - t0
        if result.success:
            logger.info("Tool '%s' succeeded in %.2fs", name, elapsed)
        else:
            logger.warning("Tool '%s' returned error in %.2fs: %s", name, elapsed, result.error)
        return result

    @staticmethod
    def _tool_schema(tool_def: ToolDef) -> dict[str, Any]:
        """Build a single Claude tool schema dict."""
        if tool_def.params_model is not None:
            input_schema = tool_def.params_model.model_json_schema()
        else:
            input_schema = {"type": "object", "properties": {}}

        return {
            "name": tool_def.name,
            "description": tool_def.description,
            "input_schema": input_schema,
        }


def _accepts_param(fn: Callable[..., Any], param_name: str) -> bool:
    """Check whether a callable accepts a given parameter name."""
    return param_name in inspect.signature(fn).parameters


# Global registry. Import this from anywhere to register or look up tools.
registry = ToolRegistry()
