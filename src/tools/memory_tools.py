"""Memory tools: the coach's long-term memory of the user.

Each tool validates its input against a params model (done by the
registry) and hands off to ``MemoryStore``. The store's result is
returned unchanged; failures become error results Claude can reason
about.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import Field

from src.memory.models import MAX_LIMIT, MemoryInput, MemoryResult
from src.memory.store import MemoryStore
from src.tools.base import ToolParams, ToolResult
from src.tools.registry import registry

if TYPE_CHECKING:
    from src.context import RequestContext

CATEGORY = "memory"


def _to_tool_result(result: MemoryResult) -> ToolResult:
    if not result.success:
        return ToolResult(error=result.error or "Memory operation failed")
    return ToolResult(data=result.to_payload())


# -- memory_store ------------------------------------------------------------


class MemoryStoreParams(ToolParams, MemoryInput):
    pass


@registry.tool(
    name="memory_store",
    description=(
        "Store information about the user in long-term memory. Store everything "
        "relevant to the user. Storing under an existing key replaces that memory."
    ),
    category=CATEGORY,
    params_model=MemoryStoreParams,
)
async def memory_store(
    key: str, value: str, tags: list[str], ctx: RequestContext
) -> ToolResult:
    result = await MemoryStore.get().upsert(ctx, key, value, tags)
    return _to_tool_result(result)


# -- memory_store_multiple ---------------------------------------------------


class MemoryStoreMultipleParams(ToolParams):
    memory_list: list[MemoryInput] = Field(
        min_length=1,
        description="The memories to store. Each needs a key, a value and tags.",
    )


@registry.tool(
    name="memory_store_multiple",
    description=(
        "Store several distinct pieces of information in long-term memory at once. "
        "Either all of them are stored or none are."
    ),
    category=CATEGORY,
    params_model=MemoryStoreMultipleParams,
)
async def memory_store_multiple(
    memory_list: list[dict[str, Any]], ctx: RequestContext
) -> ToolResult:
    result = await MemoryStore.get().upsert_many(ctx, memory_list)
    return _to_tool_result(result)


# -- memory_retrieve ---------------------------------------------------------


class MemoryRetrieveParams(ToolParams):
    query: str = Field(
        min_length=1,
        description=(
            "Natural language description of what you want to find. It is "
            "embedded and compared against stored memory values."
        ),
    )
    limit: int = Field(
        default=5, ge=1, le=MAX_LIMIT, description="Maximum number of results"
    )


@registry.tool(
    name="memory_retrieve",
    description=(
        "Search long-term memory by meaning. Returns the closest memories first, "
        "each with a similarity_score (cosine distance, lower is closer)."
    ),
    category=CATEGORY,
    params_model=MemoryRetrieveParams,
)
async def memory_retrieve(query: str, limit: int, ctx: RequestContext) -> ToolResult:
    result = await MemoryStore.get().retrieve_by_similarity(ctx, query, limit=limit)
    return _to_tool_result(result)


# -- memory_search_by_tags ---------------------------------------------------


class MemorySearchByTagsParams(ToolParams):
    tags: list[str] = Field(
        min_length=1,
        description="Memories carrying any of these tags are returned",
    )
    limit: int = Field(
        default=10, ge=1, le=MAX_LIMIT, description="Maximum number of results"
    )


@registry.tool(
    name="memory_search_by_tags",
    description="Find memories tagged with any of the given tags, most recent first.",
    category=CATEGORY,
    params_model=MemorySearchByTagsParams,
)
async def memory_search_by_tags(
    tags: list[str], limit: int, ctx: RequestContext
) -> ToolResult:
    result = await MemoryStore.get().search_by_tags(ctx, tags, limit=limit)
    return _to_tool_result(result)


# -- memory_search_by_key ----------------------------------------------------


class MemorySearchByKeyParams(ToolParams):
    key_pattern: str = Field(min_length=1, description="Key, or part of a key, to look for")
    exact_match: bool = Field(
        default=False,
        description="True to match the key exactly, false to match keys containing it",
    )
    limit: int = Field(
        default=10, ge=1, le=MAX_LIMIT, description="Maximum number of results"
    )


@registry.tool(
    name="memory_search_by_key",
    description="Find memories by key, exactly or by substring, most recent first.",
    category=CATEGORY,
    params_model=MemorySearchByKeyParams,
)
async def memory_search_by_key(
    key_pattern: str, exact_match: bool, limit: int, ctx: RequestContext
) -> ToolResult:
    result = await MemoryStore.get().search_by_key(
        ctx, key_pattern, exact_match=exact_match, limit=limit
    )
    return _to_tool_result(result)


# -- memory_delete -----------------------------------------------------------


class MemoryDeleteParams(ToolParams):
    key: str = Field(min_length=1, description="Exact key of the memory to forget")


@registry.tool(
    name="memory_delete",
    description=(
        "Forget a memory. Use when the user asks you to forget something or a "
        "memory is no longer true. Look the key up first if you are unsure."
    ),
    category=CATEGORY,
    params_model=MemoryDeleteParams,
)
async def memory_delete(key: str, ctx: RequestContext) -> ToolResult:
    result = await MemoryStore.get().delete(ctx, key)
    return _to_tool_result(result)
