"""Tests for prompt assembly."""

from unittest.mock import AsyncMock, patch

from src.llm.prompt import _format_memories, build_system_prompt
from src.memory.models import MemoryRecord, MemoryResult


def _mock_store(result: MemoryResult) -> AsyncMock:
    store = AsyncMock()
    store.retrieve_by_similarity.return_value = result
    return store


async def test_build_system_prompt_returns_content_blocks(ctx) -> None:
    blocks = await build_system_prompt(ctx)
    assert isinstance(blocks, list)
    assert len(blocks) == 2
    assert blocks[0]["type"] == "text"


async def test_build_system_prompt_has_cache_control(ctx) -> None:
    blocks = await build_system_prompt(ctx)
    assert blocks[0]["cache_control"] == {"type": "ephemeral"}


async def test_build_system_prompt_contains_persona(ctx) -> None:
    blocks = await build_system_prompt(ctx)
    text = blocks[0]["text"]
    assert "Moach" in text
    assert "betterment coach" in text


async def test_build_system_prompt_guidance_follows_flags(ctx) -> None:
    plain = (await build_system_prompt(ctx))[0]["text"]
    assert "memory_store" not in plain
    assert "search the web" not in plain

    full = (await build_system_prompt(ctx, web_search=True))[0]["text"]
    assert "search the web" in full


async def test_build_system_prompt_includes_client_system_text(ctx) -> None:
    blocks = await build_system_prompt(ctx, extra="Answer in French.")
    assert blocks[0]["text"].endswith("Answer in French.")


async def test_build_system_prompt_contains_current_time(ctx) -> None:
    blocks = await build_system_prompt(ctx)
    time_block = blocks[1]["text"]
    assert "Current time:" in time_block
    assert "UTC" in time_block
    # Should NOT have cache_control (changes every call)
    assert "cache_control" not in blocks[1]


async def test_build_system_prompt_with_memories(ctx) -> None:
    """When memories exist, they should appear as the third content block."""
    mock_store = _mock_store(
        MemoryResult(
            success=True,
            results=[MemoryRecord(id=1, key="goal", value="run a marathon", tags=["fitness"])],
            count=1,
        )
    )

    with patch("src.llm.prompt.MemoryStore.get", return_value=mock_store):
        blocks = await build_system_prompt(ctx, user_message="training", memory=True)

    assert len(blocks) == 3
    assert "- goal [fitness]: run a marathon" in blocks[2]["text"]
    assert "memory_store" in blocks[0]["text"]
    mock_store.retrieve_by_similarity.assert_awaited_once_with(ctx, "training", limit=5)


async def test_build_system_prompt_memory_off_skips_recall(ctx) -> None:
    mock_store = _mock_store(MemoryResult(success=True, results=[], count=0))

    with patch("src.llm.prompt.MemoryStore.get", return_value=mock_store):
        blocks = await build_system_prompt(ctx, user_message="training", memory=False)

    assert len(blocks) == 2
    mock_store.retrieve_by_similarity.assert_not_awaited()


async def test_build_system_prompt_recall_failure_is_not_fatal(ctx) -> None:
    mock_store = _mock_store(MemoryResult.failure("Embedding failed: timeout"))

    with patch("src.llm.prompt.MemoryStore.get", return_value=mock_store):
        blocks = await build_system_prompt(ctx, user_message="training", memory=True)

    assert len(blocks) == 2


def test_format_memories_empty() -> None:
    assert _format_memories([]) == ""


def test_format_memories_without_tags() -> None:
    text = _format_memories([MemoryRecord(id=1, key="name", value="Sam")])
    assert "## Recalled Memories" in text
    assert "- name: Sam" in text
