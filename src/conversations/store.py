"""ConversationStore: conversation metadata and ordered message history.

Conversations are created lazily on first save, titled from the first user
message. Messages are written as the complete history every time; their
position in the supplied list becomes ``message_index``, which is the only
ordering key used on load.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from src.conversations.models import (
    DEFAULT_TITLE,
    Conversation,
    ConversationResult,
    UIMessage,
)
from src.db import ensure_schema, get_connection
from src.llm.title import generate_title

if TYPE_CHECKING:
    from pathlib import Path

    from src.context import RequestContext

logger = logging.getLogger(__name__)

NOT_FOUND = "Conversation not found"

_CONVERSATION_COLUMNS = "id, user_id, title, last_message_at, created_at, updated_at"

_UPSERT_MESSAGE = """
INSERT INTO messages
    (id, conversation_id, user_id, role, parts, metadata, created_at, message_index)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO UPDATE SET
    parts = excluded.parts,
    metadata = excluded.metadata,
    message_index = excluded.message_index
WHERE messages.conversation_id = excluded.conversation_id
  AND messages.user_id = excluded.user_id
"""

_INSERT_CONVERSATION = f"""
INSERT INTO conversations ({_CONVERSATION_COLUMNS})
VALUES (?, ?, ?, ?, ?, ?)
ON CONFLICT (id) DO NOTHING
"""


class _Rejected(Exception):
    """Raised inside a write transaction to roll it back with a failure message."""


def _claim_conversation(
    conn: Any, conversation_id: str, user_id: str, title: str, now: str
) -> bool:
    """Create the conversation unless it exists. True if it was created.

    Raises _Rejected when the id belongs to another owner.
    """
    created = conn.execute(
        _INSERT_CONVERSATION, (conversation_id, user_id, title, now, now, now)
    ).rowcount
    row = conn.execute(
        "SELECT user_id FROM conversations WHERE id = ?", (conversation_id,)
    ).fetchone()
    if row is None or row[0] != user_id:
        raise _Rejected(NOT_FOUND)
    return created == 1


def _row_to_conversation(row: tuple) -> Conversation:
    return Conversation(
        id=row[0],
        user_id=row[1],
        title=row[2],
        last_message_at=row[3],
        created_at=row[4],
        updated_at=row[5],
    )


def _row_to_message(row: tuple) -> UIMessage:
    return UIMessage(
        id=row[0],
        role=row[1],
        parts=json.loads(row[2]),
        metadata=json.loads(row[3]) if row[3] else None,
    )


async def derive_title(message: UIMessage) -> str:
    """Title for a conversation starting with *message*.

    Falls back to ``DEFAULT_TITLE`` when the message has no text or the
    title model fails or answers with nothing.
    """
    text = message.first_text() if message.role == "user" else None
    if not text:
        return DEFAULT_TITLE
    try:
        title = await generate_title(text)
    except Exception:
        logger.exception("Title generation failed, using default")
        return DEFAULT_TITLE
    return title or DEFAULT_TITLE


class ConversationStore:
    """Persists conversations and messages in libSQL / Turso.

    Singleton accessed via ``ConversationStore.get()``.  Pass an explicit
    *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).
    """

    _instance: ConversationStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path

    @classmethod
    def get(cls) -> ConversationStore:
        """Return the shared ConversationStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self):  # noqa: ANN202
        db = await get_connection(local_path_override=self._db_path)
        await ensure_schema(db)
        return db

    async def _owner_of(self, db, conversation_id: str) -> str | None:  # noqa: ANN001
        cursor = await db.execute(
            "SELECT user_id FROM conversations WHERE id = ?", (conversation_id,)
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    # -- Queries ---------------------------------------------------------------

    async def exists(self, ctx: RequestContext, conversation_id: str) -> bool:
        """True if the conversation exists and belongs to the request's owner."""
        db = await self._connect()
        try:
            return await self._owner_of(db, conversation_id) == ctx.user_id
        finally:
            await db.close()

    async def load(self, ctx: RequestContext, conversation_id: str) -> ConversationResult:
        """Fetch conversation metadata and its messages in message_index order."""
        try:
            db = await self._connect()
            try:
                cursor = await db.execute(
                    f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
                    "WHERE id = ? AND user_id = ?",
                    (conversation_id, ctx.user_id),
                )
                row = await cursor.fetchone()
                if not row:
                    return ConversationResult(
                        success=False, error=NOT_FOUND, messages=[]
                    )

                cursor = await db.execute(
                    """
                    SELECT id, role, parts, metadata FROM messages
                    WHERE conversation_id = ?
                    ORDER BY message_index ASC
                    """,
                    (conversation_id,),
                )
                message_rows = await cursor.fetchall()
            finally:
                await db.close()
        except Exception as exc:
            logger.exception("Error loading conversation %s (request=%s)", conversation_id, ctx.request_id)
            return ConversationResult(success=False, error=str(exc), messages=[])

        return ConversationResult(
            success=True,
            conversation_id=conversation_id,
            conversation=_row_to_conversation(row),
            messages=[_row_to_message(r) for r in message_rows],
        )

    async def list_for_owner(self, ctx: RequestContext) -> ConversationResult:
        """All of the owner's conversations, most recently active first."""
        try:
            db = await self._connect()
            try:
                cursor = await db.execute(
                    f"SELECT {_CONVERSATION_COLUMNS} FROM conversations "
                    "WHERE user_id = ? ORDER BY last_message_at DESC",
                    (ctx.user_id,),
                )
                rows = await cursor.fetchall()
            finally:
                await db.close()
        except Exception as exc:
            logger.exception("Error listing conversations (request=%s)", ctx.request_id)
            return ConversationResult(success=False, error=str(exc), conversations=[])

        return ConversationResult(
            success=True, conversations=[_row_to_conversation(r) for r in rows]
        )

    # -- Writes ----------------------------------------------------------------

    async def create(
        self,
        ctx: RequestContext,
        first_message: UIMessage,
        conversation_id: str,
    ) -> ConversationResult:
        """Insert a new conversation titled from *first_message*.

        Creating a conversation the owner already has is a no-op; an id held
        by another owner is reported as not found.
        """
        title = await derive_title(first_message)
        now = datetime.now(UTC).isoformat()
        try:
            db = await self._connect()
            try:
                created = await db.transaction(
                    lambda conn: _claim_conversation(conn, conversation_id, ctx.user_id, title, now)
                )
            finally:
                await db.close()
        except _Rejected as exc:
            logger.warning("Cannot create conversation %s: %s (request=%s)", conversation_id, exc, ctx.request_id)
            return ConversationResult.failure(str(exc))
        except Exception as exc:
            logger.exception("Error creating conversation %s (request=%s)", conversation_id, ctx.request_id)
            return ConversationResult.failure(str(exc))

        if created:
            logger.info("Created conversation %s %r (request=%s)", conversation_id, title, ctx.request_id)
        return ConversationResult(success=True, conversation_id=conversation_id)

    async def save(
        self,
        ctx: RequestContext,
        conversation_id: str,
        messages: list[UIMessage],
    ) -> ConversationResult:
        """Persist the complete message history of a conversation.

        Creates the conversation first if needed. Messages no longer in the
        history are removed, the rest are upserted by id with
        ``message_index`` set to their position. Creation and message writes
        share one transaction. A message id already used by another
        conversation fails the whole save.
        """
        if not conversation_id:
            return ConversationResult.failure("conversation_id must not be empty")
        if not messages:
            return ConversationResult.failure("Cannot save a conversation without messages")

        try:
            db = await self._connect()
            try:
                owner = await self._owner_of(db, conversation_id)
            finally:
                await db.close()
        except Exception as exc:
            logger.exception("Error saving conversation %s (request=%s)", conversation_id, ctx.request_id)
            return ConversationResult.failure(str(exc))

        if owner is not None and owner != ctx.user_id:
            logger.warning(
                "Refusing to save conversation %s for non-owner (request=%s)",
                conversation_id,
                ctx.request_id,
            )
            return ConversationResult.failure(NOT_FOUND)

        title = DEFAULT_TITLE
        if owner is None:
            first_user = next((m for m in messages if m.role == "user"), messages[0])
            title = await derive_title(first_user)

        now = datetime.now(UTC).isoformat()
        ids = [m.id for m in messages]
        placeholders = ", ".join("?" for _ in ids)
        rows = [
            (
                message.id,
                conversation_id,
                ctx.user_id,
                message.role,
                json.dumps(message.parts),
                json.dumps(message.metadata) if message.metadata else None,
                now,
                index,
            )
            for index, message in enumerate(messages)
        ]

        def write(conn: Any) -> bool:
            created = _claim_conversation(conn, conversation_id, ctx.user_id, title, now)
            taken = conn.execute(
                f"SELECT id FROM messages WHERE id IN ({placeholders}) AND conversation_id != ?",
                (*ids, conversation_id),
            ).fetchone()
            if taken:
                raise _Rejected(f"Message id already in use: {taken[0]}")
            conn.execute(
                f"DELETE FROM messages WHERE conversation_id = ? AND id NOT IN ({placeholders})",
                (conversation_id, *ids),
            )
            for row in rows:
                conn.execute(_UPSERT_MESSAGE, row)
            conn.execute(
                "UPDATE conversations SET last_message_at = ?, updated_at = ? "
                "WHERE id = ? AND user_id = ?",
                (now, now, conversation_id, ctx.user_id),
            )
            return created

        try:
            db = await self._connect()
            try:
                created = await db.transaction(write)
            finally:
                await db.close()
        except _Rejected as exc:
            logger.warning("Refusing to save conversation %s: %s (request=%s)", conversation_id, exc, ctx.request_id)
            return ConversationResult.failure(str(exc))
        except Exception as exc:
            logger.exception("Error saving messages for %s (request=%s)", conversation_id, ctx.request_id)
            return ConversationResult.failure(str(exc))

        if created:
            logger.info("Created conversation %s %r (request=%s)", conversation_id, title, ctx.request_id)
        logger.info(
            "Saved %d messages to conversation %s (request=%s)",
            len(messages),
            conversation_id,
            ctx.request_id,
        )
        return ConversationResult(success=True, conversation_id=conversation_id)

    async def delete(self, ctx: RequestContext, conversation_id: str) -> ConversationResult:
        """Delete an owned conversation and all of its messages."""

        def remove(conn: Any) -> None:
            deleted = conn.execute(
                "DELETE FROM conversations WHERE id = ? AND user_id = ?",
                (conversation_id, ctx.user_id),
            ).rowcount
            if deleted == 0:
                raise _Rejected(NOT_FOUND)
            conn.execute("DELETE FROM messages WHERE conversation_id = ?", (conversation_id,))

        try:
            db = await self._connect()
            try:
                await db.transaction(remove)
            finally:
                await db.close()
        except _Rejected as exc:
            return ConversationResult.failure(str(exc))
        except Exception as exc:
            logger.exception("Error deleting conversation %s (request=%s)", conversation_id, ctx.request_id)
            return ConversationResult.failure(str(exc))

        logger.info("Deleted conversation %s (request=%s)", conversation_id, ctx.request_id)
        return ConversationResult(success=True, conversation_id=conversation_id)

    async def update_title(
        self, ctx: RequestContext, conversation_id: str, title: str
    ) -> ConversationResult:
        """Rename an owned conversation."""
        title = title.strip()
        if not title:
            return ConversationResult.failure("Title must not be empty")
        now = datetime.now(UTC).isoformat()
        try:
            db = await self._connect()
            try:
                updated = await db.transaction(
                    lambda conn: conn.execute(
                        "UPDATE conversations SET title = ?, updated_at = ? "
                        "WHERE id = ? AND user_id = ?",
                        (title, now, conversation_id, ctx.user_id),
                    ).rowcount
                )
            finally:
                await db.close()
        except Exception as exc:
            logger.exception("Error updating title of %s (request=%s)", conversation_id, ctx.request_id)
            return ConversationResult.failure(str(exc))

        if updated == 0:
            return ConversationResult.failure(NOT_FOUND)
        return ConversationResult(success=True, conversation_id=conversation_id)
