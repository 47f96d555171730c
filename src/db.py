"""Async database connection abstraction over libsql.

Provides a thin async wrapper around the synchronous ``libsql`` driver using
``asyncio.to_thread()``.  Connection target is determined by settings:

- **Production**: ``TURSO_DATABASE_URL`` + ``TURSO_AUTH_TOKEN`` → remote Turso
- **Dev/test**: no Turso env vars → local libSQL file via ``database_path``

Writes go through :meth:`_AsyncConnection.transaction`: the whole transaction
runs in one worker thread, and writers to the same database take turns on a
per-target lock. No write lock is ever held across an ``await``.

The schema (memory, conversations, messages) lives here too, so every store
creates the same tables with :func:`ensure_schema`.
"""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING, Any, TypeVar

import libsql

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

from src.config import settings

T = TypeVar("T")

SCHEMA: tuple[str, ...] = (
    """
    CREATE TABLE IF NOT EXISTS memory (
        id         INTEGER PRIMARY KEY AUTOINCREMENT NOT NULL,
        key        TEXT NOT NULL,
        value      TEXT NOT NULL,
        tags       TEXT NOT NULL,
        user_id    TEXT NOT NULL,
        embedding  F32_BLOB(1536) NOT NULL,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS unique_key_user ON memory (key, user_id)",
    "CREATE INDEX IF NOT EXISTS memory_embedding_idx ON memory (libsql_vector_idx(embedding))",
    """
    CREATE TABLE IF NOT EXISTS conversations (
        id              TEXT PRIMARY KEY NOT NULL,
        user_id         TEXT NOT NULL,
        title           TEXT NOT NULL,
        last_message_at TEXT NOT NULL,
        created_at      TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at      TEXT DEFAULT CURRENT_TIMESTAMP
    )
    """,
    "CREATE INDEX IF NOT EXISTS conversations_user_id_idx ON conversations (user_id)",
    "CREATE INDEX IF NOT EXISTS conversations_last_message_idx ON conversations (last_message_at)",
    """
    CREATE TABLE IF NOT EXISTS messages (
        id              TEXT PRIMARY KEY NOT NULL,
        conversation_id TEXT NOT NULL,
        user_id         TEXT NOT NULL,
        role            TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
        parts           TEXT NOT NULL,
        metadata        TEXT,
        created_at      TEXT DEFAULT CURRENT_TIMESTAMP,
        message_index   INTEGER NOT NULL,
        FOREIGN KEY (conversation_id) REFERENCES conversations(id)
            ON UPDATE NO ACTION ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS messages_conversation_idx ON messages (conversation_id)",
    "CREATE INDEX IF NOT EXISTS messages_user_idx ON messages (user_id)",
    "CREATE INDEX IF NOT EXISTS messages_order_idx ON messages (conversation_id, message_index)",
)


class _AsyncCursor:
    """Thin async wrapper around a synchronous libsql cursor."""

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def fetchone(self) -> tuple | None:
        return await asyncio.to_thread(self._cursor.fetchone)

    async def fetchall(self) -> list[tuple]:
        return await asyncio.to_thread(self._cursor.fetchall)

    @property
    def rowcount(self) -> int:
        return self._cursor.rowcount


_write_locks: dict[str, threading.Lock] = {}
_write_locks_guard = threading.Lock()
_schema_ready: set[str] = set()


def _write_lock(target: str) -> threading.Lock:
    with _write_locks_guard:
        return _write_locks.setdefault(target, threading.Lock())


class _AsyncConnection:
    """Thin async wrapper around a synchronous libsql connection."""

    def __init__(self, conn: Any, target: str) -> None:
        self._conn = conn
        self.target = target

    async def execute(self, sql: str, params: tuple = ()) -> _AsyncCursor:
        cursor = await asyncio.to_thread(self._conn.execute, sql, params)
        return _AsyncCursor(cursor)

    async def commit(self) -> None:
        await asyncio.to_thread(self._conn.commit)

    async def rollback(self) -> None:
        await asyncio.to_thread(self._conn.rollback)

    async def close(self) -> None:
        await asyncio.to_thread(self._conn.close)

    async def transaction(self, work: Callable[[Any], T]) -> T:
        """Run *work(conn)* as one write transaction in a worker thread.

        *work* receives the synchronous libsql connection. Its return value
        is returned after commit; if it raises, the transaction is rolled
        back and the exception propagates.
        """
        return await asyncio.to_thread(self._run_transaction, work)

    def _run_transaction(self, work: Callable[[Any], T]) -> T:
        with _write_lock(self.target):
            try:
                result = work(self._conn)
                self._conn.commit()
            except BaseException:
                self._conn.rollback()
                raise
            return result


def _open_local(path: str) -> Any:
    """Open a local libsql connection with WAL mode and busy timeout."""
    conn = libsql.connect(path)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


def _open_remote(url: str, auth_token: str) -> Any:
    conn = libsql.connect(database=url, auth_token=auth_token)
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


async def get_connection(local_path_override: Path | None = None) -> _AsyncConnection:
    """Return an async-wrapped libsql connection.

    If *local_path_override* is given (test isolation), it takes priority.
    Otherwise, ``TURSO_DATABASE_URL`` triggers a remote connection, and
    ``database_path`` falls back to a local file.
    """
    if local_path_override:
        local_path_override.parent.mkdir(parents=True, exist_ok=True)
        target = str(local_path_override)
        conn = await asyncio.to_thread(_open_local, target)
        return _AsyncConnection(conn, target)

    if settings.turso_database_url:
        conn = await asyncio.to_thread(
            _open_remote,
            settings.turso_database_url,
            settings.turso_auth_token,
        )
        return _AsyncConnection(conn, settings.turso_database_url)

    # Local file fallback
    settings.database_path.parent.mkdir(parents=True, exist_ok=True)
    target = str(settings.database_path)
    conn = await asyncio.to_thread(_open_local, target)
    return _AsyncConnection(conn, target)


def _create_schema(conn: _AsyncConnection) -> None:
    with _write_lock(conn.target):
        if conn.target in _schema_ready:
            return
        for statement in SCHEMA:
            conn._conn.execute(statement)
        conn._conn.commit()
        _schema_ready.add(conn.target)


async def ensure_schema(conn: _AsyncConnection) -> None:
    """Create all tables and indexes once per database target.

    Runs under the target's write lock, so concurrent first requests create
    the schema exactly once.
    """
    if conn.target in _schema_ready:
        return
    await asyncio.to_thread(_create_schema, conn)
