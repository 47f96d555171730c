"""Shared test fixtures."""

import hashlib
import math
import re
from pathlib import Path

import pytest

from src.context import RequestContext
from src.conversations.store import ConversationStore
from src.memory.store import MemoryStore

DIMENSIONS = 1536


class FakeEmbedder:
    """Deterministic bag-of-words embedder.

    Each word is hashed into one of 1536 buckets, plus a constant bias
    component so no vector is all zeros. Texts sharing words are closer
    than texts that share none, and identical texts have distance 0.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []

    @staticmethod
    def vector(text: str) -> list[float]:
        vec = [0.0] * DIMENSIONS
        vec[0] = 0.1
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            bucket = 1 + int(hashlib.sha256(word.encode()).hexdigest(), 16) % (DIMENSIONS - 1)
            vec[bucket] += 1.0
        norm = math.sqrt(sum(v * v for v in vec))
        return [v / norm for v in vec]

    async def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        return self.vector(text)

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]


@pytest.fixture(autouse=False)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local file, not remote Turso."""
    monkeypatch.setattr("src.config.settings.turso_database_url", "")


@pytest.fixture
def ctx() -> RequestContext:
    return RequestContext(user_id="user-a", request_id="req-a")


@pytest.fixture
def other_ctx() -> RequestContext:
    return RequestContext(user_id="user-b", request_id="req-b")


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def memory_store(tmp_path: Path, embedder: FakeEmbedder, _no_turso) -> MemoryStore:
    """A MemoryStore backed by a temp database and the fake embedder."""
    return MemoryStore(db_path=tmp_path / "test.db", embedder=embedder)


@pytest.fixture
def conversation_store(tmp_path: Path, _no_turso) -> ConversationStore:
    """A ConversationStore backed by a temp database."""
    return ConversationStore(db_path=tmp_path / "test.db")
