"""MemoryStore: per-owner key/value memories with vector similarity search.

Rows live in the ``memory`` table (see ``src.db.SCHEMA``). Each row carries
an embedding of its value that is regenerated on every write, so similarity
search always reflects the current value. Distance is computed inside
libSQL with ``vector_distance_cos``.

Every operation returns a :class:`MemoryResult`; validation, embedding and
database failures are reported in it rather than raised.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from src.db import ensure_schema, get_connection
from src.memory.embeddings import EmbeddingClient
from src.memory.models import MAX_LIMIT, MemoryInput, MemoryRecord, MemoryResult

if TYPE_CHECKING:
    from pathlib import Path

    from src.context import RequestContext

logger = logging.getLogger(__name__)

_UPSERT = """
INSERT INTO memory (key, value, tags, user_id, embedding, created_at)
VALUES (?, ?, ?, ?, vector32(?), ?)
ON CONFLICT (key, user_id) DO UPDATE SET
    value = excluded.value,
    tags = excluded.tags,
    embedding = excluded.embedding
"""

_COLUMNS = "id, key, value, tags, created_at"


def _escape_like(pattern: str) -> str:
    return pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _row_to_record(row: tuple) -> MemoryRecord:
    tags = json.loads(row[3]) if row[3] else []
    score = float(row[5]) if len(row) > 5 and row[5] is not None else None
    return MemoryRecord(
        id=row[0],
        key=row[1],
        value=row[2],
        tags=tags,
        created_at=row[4] or "",
        similarity_score=score,
    )


def _check_limit(limit: int) -> str | None:
    if isinstance(limit, bool) or not isinstance(limit, int):
        return "limit must be an integer"
    if not 1 <= limit <= MAX_LIMIT:
        return f"limit must be between 1 and {MAX_LIMIT}"
    return None


class MemoryStore:
    """Persists memories in libSQL / Turso.

    Singleton accessed via ``MemoryStore.get()``.  Pass an explicit *db_path*
    and *embedder* for test isolation.
    """

    _instance: MemoryStore | None = None

    def __init__(
        self,
        db_path: Path | None = None,
        embedder: EmbeddingClient | None = None,
    ) -> None:
        self._db_path = db_path
        self._embedder = embedder

    @classmethod
    def get(cls) -> MemoryStore:
        """Return the shared MemoryStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    @property
    def embedder(self) -> EmbeddingClient:
        return self._embedder or EmbeddingClient.get()

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self):  # noqa: ANN202
        db = await get_connection(local_path_override=self._db_path)
        await ensure_schema(db)
        return db

    async def _select(self, sql: str, params: tuple) -> list[MemoryRecord]:
        db = await self._connect()
        try:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()
            return [_row_to_record(row) for row in rows]
        finally:
            await db.close()

    # -- Write -----------------------------------------------------------------

    async def upsert(
        self,
        ctx: RequestContext,
        key: str,
        value: str,
        tags: list[str] | None = None,
    ) -> MemoryResult:
        """Insert a memory or overwrite the existing one with the same key.

        Value, tags and embedding are replaced together; ``created_at`` of an
        existing row is kept.
        """
        return await self.upsert_many(
            ctx,
            [{"key": key, "value": value, "tags": tags if tags is not None else []}],
            message="Memory stored successfully",
        )

    async def upsert_many(
        self,
        ctx: RequestContext,
        entries: list[dict[str, Any]] | list[MemoryInput],
        message: str = "Memories stored successfully",
    ) -> MemoryResult:
        """Upsert a batch of memories atomically.

        The whole batch is validated before anything else happens. Embeddings
        are generated concurrently, then all rows are written in a single
        transaction: either every entry is committed or none is.
        """
        try:
            items = [
                e if isinstance(e, MemoryInput) else MemoryInput.model_validate(e)
                for e in entries
            ]
        except ValidationError as exc:
            return MemoryResult.failure(f"Invalid memory input: {exc}")
        if not items:
            return MemoryResult.failure("Invalid memory input: at least one memory is required")

        try:
            vectors = await self.embedder.embed_many([item.value for item in items])
        except Exception as exc:
            logger.exception("Embedding failed (request=%s)", ctx.request_id)
            return MemoryResult.failure(f"Embedding failed: {exc}")

        now = datetime.now(UTC).isoformat()
        rows = [
            (item.key, item.value, json.dumps(item.tags), ctx.user_id, json.dumps(vector), now)
            for item, vector in zip(items, vectors, strict=True)
        ]

        def write(conn: Any) -> None:
            for row in rows:
                conn.execute(_UPSERT, row)

        try:
            db = await self._connect()
            try:
                await db.transaction(write)
            finally:
                await db.close()
        except Exception as exc:
            logger.exception(
                "Failed to store %d memories (request=%s)", len(items), ctx.request_id
            )
            return MemoryResult.failure(str(exc))

        logger.info(
            "Stored %d memories for %s (request=%s): %s",
            len(items),
            ctx.user_id,
            ctx.request_id,
            ", ".join(item.key for item in items),
        )
        return MemoryResult(success=True, count=len(items), message=message)

    async def delete(self, ctx: RequestContext, key: str) -> MemoryResult:
        """Delete the owner's memory with exactly this key."""
        if not key:
            return MemoryResult.failure("Invalid memory input: key must not be empty")
        try:
            db = await self._connect()
            try:
                deleted = await db.transaction(
                    lambda conn: conn.execute(
                        "DELETE FROM memory WHERE key = ? AND user_id = ?",
                        (key, ctx.user_id),
                    ).rowcount
                )
            finally:
                await db.close()
        except Exception as exc:
            logger.exception("Failed to delete memory %r (request=%s)", key, ctx.request_id)
            return MemoryResult.failure(str(exc))

        if deleted == 0:
            return MemoryResult.failure(f"Memory not found: {key}")
        logger.info("Deleted memory %r (request=%s)", key, ctx.request_id)
        return MemoryResult(success=True, count=deleted, message="Memory deleted successfully")

    # -- Read ------------------------------------------------------------------

    async def retrieve_by_similarity(
        self,
        ctx: RequestContext,
        query: str,
        limit: int = 5,
    ) -> MemoryResult:
        """Return the *limit* memories nearest to *query*, nearest first.

        ``similarity_score`` is the cosine distance (0 = identical). Equal
        distances fall back to insertion order.
        """
        if not query or not query.strip():
            return MemoryResult.failure("Invalid search input: query must not be empty")
        if err := _check_limit(limit):
            return MemoryResult.failure(f"Invalid search input: {err}")

        try:
            vector = await self.embedder.embed(query)
            records = await self._select(
                f"""
                SELECT {_COLUMNS},
                       vector_distance_cos(embedding, vector32(?)) AS similarity_score
                FROM memory
                WHERE user_id = ?
                ORDER BY similarity_score ASC, id ASC
                LIMIT ?
                """,
                (json.dumps(vector), ctx.user_id, limit),
            )
        except Exception as exc:
            logger.exception("Semantic search failed (request=%s)", ctx.request_id)
            return MemoryResult.failure(str(exc))

        return MemoryResult(
            success=True,
            results=records,
            count=len(records),
            message="Memory semantic search completed successfully",
        )

    async def search_by_tags(
        self,
        ctx: RequestContext,
        tags: list[str],
        limit: int = 10,
    ) -> MemoryResult:
        """Return memories carrying any of *tags*, most recent first."""
        if not tags or not all(isinstance(t, str) and t for t in tags):
            return MemoryResult.failure("Invalid search input: tags must be non-empty strings")
        if err := _check_limit(limit):
            return MemoryResult.failure(f"Invalid search input: {err}")

        placeholders = ", ".join("?" for _ in tags)
        try:
            records = await self._select(
                f"""
                SELECT {_COLUMNS}
                FROM memory
                WHERE user_id = ?
                  AND EXISTS (
                      SELECT 1 FROM json_each(memory.tags)
                      WHERE json_each.value IN ({placeholders})
                  )
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (ctx.user_id, *tags, limit),
            )
        except Exception as exc:
            logger.exception("Tag search failed (request=%s)", ctx.request_id)
            return MemoryResult.failure(str(exc))

        return MemoryResult(
            success=True,
            results=records,
            count=len(records),
            message=f"Found {len(records)} memories with tags: {', '.join(tags)}",
        )

    async def search_by_key(
        self,
        ctx: RequestContext,
        pattern: str,
        exact_match: bool = False,
        limit: int = 10,
    ) -> MemoryResult:
        """Return memories whose key equals (or contains) *pattern*, most recent first."""
        if not pattern:
            return MemoryResult.failure("Invalid search input: key pattern must not be empty")
        if err := _check_limit(limit):
            return MemoryResult.failure(f"Invalid search input: {err}")

        if exact_match:
            condition, arg = "key = ?", pattern
        else:
            condition, arg = "key LIKE ? ESCAPE '\\'", f"%{_escape_like(pattern)}%"

        try:
            records = await self._select(
                f"""
                SELECT {_COLUMNS}
                FROM memory
                WHERE user_id = ? AND {condition}
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (ctx.user_id, arg, limit),
            )
        except Exception as exc:
            logger.exception("Key search failed (request=%s)", ctx.request_id)
            return MemoryResult.failure(str(exc))

        match_type = "exact" if exact_match else "partial"
        return MemoryResult(
            success=True,
            results=records,
            count=len(records),
            message=f'Found {len(records)} memories with {match_type} key match: "{pattern}"',
        )
