"""Embedding client: text to a fixed-length vector via OpenAI embeddings.

Every call hits the embedding service. There is no cache and no retry;
errors from the service propagate to the caller unchanged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from src.config import settings

if TYPE_CHECKING:
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


class EmbeddingError(RuntimeError):
    """The embedding service returned something other than one vector of the expected size."""


class EmbeddingClient:
    """Wraps ``client.embeddings.create`` for a single configured model.

    Singleton accessed via ``EmbeddingClient.get()``.
    """

    _instance: EmbeddingClient | None = None

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
        dimensions: int | None = None,
    ) -> None:
        self._client = client
        self.model = model or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions

    @classmethod
    def get(cls) -> EmbeddingClient:
        """Return the shared EmbeddingClient instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=settings.openai_api_key, max_retries=0)
        return self._client

    async def embed(self, text: str) -> list[float]:
        """Return the embedding vector for *text*."""
        if not text or not text.strip():
            msg = "Cannot embed empty text"
            raise ValueError(msg)

        response = await self._get_client().embeddings.create(
            model=self.model,
            input=text,
            dimensions=self.dimensions,
        )
        if len(response.data) != 1:
            msg = f"Expected 1 embedding, got {len(response.data)}"
            raise EmbeddingError(msg)

        vector = list(response.data[0].embedding)
        if len(vector) != self.dimensions:
            msg = f"Expected {self.dimensions} dimensions, got {len(vector)}"
            raise EmbeddingError(msg)

        logger.debug("Embedded %d chars with %s", len(text), self.model)
        return vector

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        """Embed several texts concurrently, preserving input order."""
        return list(await asyncio.gather(*(self.embed(t) for t in texts)))
