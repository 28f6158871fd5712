"""DiscoveryStore — aiosqlite persistence for chats, branches, messages and provenance."""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import TYPE_CHECKING

import aiosqlite

from discovery.config import settings
from discovery.errors import ConflictError
from discovery.store.models import (
    Branch,
    Chat,
    Citation,
    ExperienceRecord,
    Message,
    StreamCheckpoint,
    ToolCall,
    utcnow,
)

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

logger = logging.getLogger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS chats (
        id TEXT PRIMARY KEY,
        owner_id TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS branches (
        id TEXT PRIMARY KEY,
        chat_id TEXT NOT NULL REFERENCES chats(id),
        parent_message_id TEXT,
        name TEXT NOT NULL,
        name_key TEXT NOT NULL,
        created_at TEXT NOT NULL,
        parent_branch_id TEXT,
        fork_ordinal INTEGER,
        UNIQUE (chat_id, name_key)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS branches_parent
        ON branches (parent_branch_id, fork_ordinal)
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        branch_id TEXT NOT NULL REFERENCES branches(id),
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        ordinal INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        finalized INTEGER NOT NULL DEFAULT 1,
        degraded INTEGER NOT NULL DEFAULT 0,
        UNIQUE (branch_id, ordinal)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tool_calls (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL REFERENCES messages(id),
        tool_name TEXT NOT NULL,
        arguments TEXT NOT NULL,
        status TEXT NOT NULL,
        result TEXT,
        error TEXT,
        position INTEGER NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS citations (
        id TEXT PRIMARY KEY,
        message_id TEXT NOT NULL REFERENCES messages(id),
        source_record_id TEXT NOT NULL,
        span_start INTEGER NOT NULL,
        span_end INTEGER NOT NULL,
        confidence REAL NOT NULL,
        tool_name TEXT NOT NULL DEFAULT '',
        snippet TEXT NOT NULL DEFAULT '',
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS experiences (
        id TEXT PRIMARY KEY,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        category TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        location TEXT NOT NULL DEFAULT '',
        tags TEXT NOT NULL DEFAULT '[]'
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stream_checkpoints (
        stream_id TEXT PRIMARY KEY,
        prompt TEXT NOT NULL,
        content TEXT NOT NULL DEFAULT '',
        done INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT NOT NULL
    )
    """,
)

_BRANCH_COLUMNS = (
    "id, chat_id, parent_message_id, name, name_key, created_at, parent_branch_id, fork_ordinal"
)
_MESSAGE_COLUMNS = "id, branch_id, role, content, ordinal, created_at, finalized, degraded"
_TOOL_CALL_COLUMNS = (
    "id, message_id, tool_name, arguments, status, result, error, position, created_at"
)
_CITATION_COLUMNS = (
    "id, message_id, source_record_id, span_start, span_end, confidence, "
    "tool_name, snippet, created_at"
)


class DiscoveryStore:
    """Persists discovery state in SQLite.

    Singleton accessed via ``DiscoveryStore.get()``.  Pass an explicit
    *db_path* for test isolation (e.g. ``tmp_path / "test.db"``).

    Besides row storage it owns the per-branch single-writer locks: callers
    that assign ordinals must hold ``writer(branch_id)``.
    """

    _instance: DiscoveryStore | None = None

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path or settings.database_path
        self._initialised = False
        # Entries vanish once no coroutine holds or waits on the lock.
        self._writers: weakref.WeakValueDictionary[str, asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @classmethod
    def get(cls) -> DiscoveryStore:
        """Return the shared DiscoveryStore instance."""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def _reset(cls) -> None:
        """Reset the singleton (for testing)."""
        cls._instance = None

    # -- Internal helpers ------------------------------------------------------

    async def _connect(self) -> aiosqlite.Connection:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(str(self._db_path), timeout=5.0)
        if not self._initialised:
            await db.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                await db.execute(statement)
            await db.commit()
            self._initialised = True
        return db

    def writer(self, branch_id: str) -> asyncio.Lock:
        """Return the single-writer lock for a branch."""
        lock = self._writers.get(branch_id)
        if lock is None:
            lock = self._writers[branch_id] = asyncio.Lock()
        return lock

    # -- Chats -----------------------------------------------------------------

    async def add_chat(self, chat: Chat) -> Chat:
        db = await self._connect()
        try:
            await db.execute(
                "INSERT INTO chats (id, owner_id, created_at) VALUES (?, ?, ?)",
                chat.to_row(),
            )
            await db.commit()
            return chat
        finally:
            await db.close()

    async def get_chat(self, chat_id: str) -> Chat | None:
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT id, owner_id, created_at FROM chats WHERE id = ?", (chat_id,)
            )
            row = await cursor.fetchone()
            return Chat.from_row(row) if row else None
        finally:
            await db.close()

    # -- Branches --------------------------------------------------------------

    async def add_branch(self, branch: Branch) -> Branch:
        """Insert a branch. Raises ConflictError if the name is already taken."""
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO branches ({_BRANCH_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                branch.to_row(),
            )
            await db.commit()
            return branch
        except aiosqlite.IntegrityError as exc:
            msg = f"Branch name '{branch.name}' is already in use"
            raise ConflictError(msg) from exc
        finally:
            await db.close()

    async def get_branch(self, branch_id: str) -> Branch | None:
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_BRANCH_COLUMNS} FROM branches WHERE id = ?",
                (branch_id,),
            )
            row = await cursor.fetchone()
            return Branch.from_row(row) if row else None
        finally:
            await db.close()

    async def list_branches(self, chat_id: str) -> list[Branch]:
        """Return a chat's branches, oldest first."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_BRANCH_COLUMNS} FROM branches "
                "WHERE chat_id = ? ORDER BY created_at, rowid",
                (chat_id,),
            )
            rows = await cursor.fetchall()
            return [Branch.from_row(row) for row in rows]
        finally:
            await db.close()

    async def list_forks_of_branch(self, branch_id: str) -> list[tuple[str, int]]:
        """Return ``(child_branch_id, fork_ordinal)`` for forks taken from a branch."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT id, fork_ordinal FROM branches "
                "WHERE parent_branch_id = ? ORDER BY fork_ordinal",
                (branch_id,),
            )
            rows = await cursor.fetchall()
            return [(row[0], row[1]) for row in rows]
        finally:
            await db.close()

    # -- Messages --------------------------------------------------------------

    async def add_message(self, message: Message) -> Message:
        """Insert a message. Raises ConflictError if its ordinal is taken."""
        db = await self._connect()
        try:
            await db.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                message.to_row(),
            )
            await db.commit()
            return message
        except aiosqlite.IntegrityError as exc:
            msg = f"Ordinal {message.ordinal} already used in branch {message.branch_id}"
            raise ConflictError(msg) from exc
        finally:
            await db.close()

    async def get_message(self, message_id: str) -> Message | None:
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,)
            )
            row = await cursor.fetchone()
            return Message.from_row(row) if row else None
        finally:
            await db.close()

    async def list_messages(
        self,
        branch_id: str,
        *,
        after_ordinal: int | None = None,
        through_ordinal: int | None = None,
        include_pending: bool = False,
    ) -> list[Message]:
        """Return a branch's own messages ordered by ordinal.

        ``after_ordinal`` is exclusive, ``through_ordinal`` inclusive.
        """
        clauses = ["branch_id = ?"]
        params: list = [branch_id]
        if after_ordinal is not None:
            clauses.append("ordinal > ?")
            params.append(after_ordinal)
        if through_ordinal is not None:
            clauses.append("ordinal <= ?")
            params.append(through_ordinal)
        if not include_pending:
            clauses.append("finalized = 1")

        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_MESSAGE_COLUMNS} FROM messages "
                f"WHERE {' AND '.join(clauses)} ORDER BY ordinal",
                tuple(params),
            )
            rows = await cursor.fetchall()
            return [Message.from_row(row) for row in rows]
        finally:
            await db.close()

    async def max_ordinal(self, branch_id: str) -> int | None:
        """Highest ordinal in a branch, pending messages included."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT MAX(ordinal) FROM messages WHERE branch_id = ?", (branch_id,)
            )
            row = await cursor.fetchone()
            return row[0] if row else None
        finally:
            await db.close()

    async def delete_pending_messages(self, message_ids: Iterable[str]) -> int:
        """Remove unfinalised messages (cancelled turns). Returns rows deleted."""
        ids = list(message_ids)
        if not ids:
            return 0
        db = await self._connect()
        try:
            placeholders = ", ".join("?" for _ in ids)
            cursor = await db.execute(
                f"DELETE FROM messages WHERE finalized = 0 AND id IN ({placeholders})",
                tuple(ids),
            )
            await db.commit()
            return cursor.rowcount
        finally:
            await db.close()

    async def finalize_turn(
        self,
        user_message_id: str | None,
        assistant: Message,
        tool_calls: list[ToolCall],
        citations: list[Citation] | None = None,
    ) -> Message:
        """Finalise a turn atomically.

        Marks the pending user message finalised and inserts the assistant
        message with its tool calls and citations in a single transaction,
        so a failure never leaves a half-written turn behind.
        """
        db = await self._connect()
        try:
            if user_message_id is not None:
                await db.execute(
                    "UPDATE messages SET finalized = 1 WHERE id = ?", (user_message_id,)
                )
            await db.execute(
                f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                assistant.to_row(),
            )
            for call in tool_calls:
                call.message_id = assistant.id
                await db.execute(
                    f"INSERT INTO tool_calls ({_TOOL_CALL_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    call.to_row(),
                )
            if citations:
                await db.executemany(
                    f"INSERT INTO citations ({_CITATION_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    [c.to_row() for c in citations],
                )
            await db.commit()
            logger.info(
                "Finalised turn: assistant=%s ordinal=%d tool_calls=%d citations=%d",
                assistant.id,
                assistant.ordinal,
                len(tool_calls),
                len(citations or []),
            )
            return assistant
        except aiosqlite.IntegrityError as exc:
            await db.rollback()
            msg = f"Could not finalise turn in branch {assistant.branch_id}"
            raise ConflictError(msg) from exc
        finally:
            await db.close()

    # -- Tool calls ------------------------------------------------------------

    async def list_tool_calls(self, message_id: str) -> list[ToolCall]:
        """Return a message's tool calls in plan order."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_TOOL_CALL_COLUMNS} FROM tool_calls "
                "WHERE message_id = ? ORDER BY position",
                (message_id,),
            )
            rows = await cursor.fetchall()
            return [ToolCall.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Citations -------------------------------------------------------------

    async def add_citations(self, citations: list[Citation]) -> list[Citation]:
        """Insert a batch of citations in one transaction."""
        db = await self._connect()
        try:
            await db.executemany(
                f"INSERT INTO citations ({_CITATION_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [c.to_row() for c in citations],
            )
            await db.commit()
            return citations
        finally:
            await db.close()

    async def list_citations(self, message_id: str) -> list[Citation]:
        """Return a message's citations ordered by span start."""
        db = await self._connect()
        try:
            cursor = await db.execute(
                f"SELECT {_CITATION_COLUMNS} FROM citations "
                "WHERE message_id = ? ORDER BY span_start, span_end, rowid",
                (message_id,),
            )
            rows = await cursor.fetchall()
            return [Citation.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Experience corpus -----------------------------------------------------

    async def add_experiences(self, records: Iterable[ExperienceRecord]) -> int:
        """Insert or replace corpus records. Returns the number written."""
        rows = [r.to_row() for r in records]
        db = await self._connect()
        try:
            await db.executemany(
                """
                INSERT OR REPLACE INTO experiences
                    (id, title, description, category, occurred_at, location, tags)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                rows,
            )
            await db.commit()
            return len(rows)
        finally:
            await db.close()

    async def find_experiences(
        self,
        *,
        category: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        location: str | None = None,
    ) -> list[ExperienceRecord]:
        """Return corpus records matching structured filters, oldest first."""
        clauses: list[str] = []
        params: list = []
        if category:
            clauses.append("category = ? COLLATE NOCASE")
            params.append(category)
        if date_from:
            clauses.append("substr(occurred_at, 1, 10) >= ?")
            params.append(date_from[:10])
        if date_to:
            clauses.append("substr(occurred_at, 1, 10) <= ?")
            params.append(date_to[:10])
        if location:
            clauses.append("location LIKE ?")
            params.append(f"%{location}%")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT id, title, description, category, occurred_at, location, tags "
                f"FROM experiences {where} ORDER BY occurred_at, id",
                tuple(params),
            )
            rows = await cursor.fetchall()
            return [ExperienceRecord.from_row(row) for row in rows]
        finally:
            await db.close()

    # -- Stream checkpoints ----------------------------------------------------

    async def save_checkpoint(
        self, stream_id: str, prompt: str, content: str, *, done: bool = False
    ) -> None:
        db = await self._connect()
        try:
            await db.execute(
                """
                INSERT INTO stream_checkpoints (stream_id, prompt, content, done, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (stream_id) DO UPDATE SET
                    content = excluded.content,
                    done = excluded.done,
                    updated_at = excluded.updated_at
                """,
                (stream_id, prompt, content, int(done), utcnow()),
            )
            await db.commit()
        finally:
            await db.close()

    async def get_checkpoint(self, stream_id: str) -> StreamCheckpoint | None:
        db = await self._connect()
        try:
            cursor = await db.execute(
                "SELECT stream_id, prompt, content, done, updated_at "
                "FROM stream_checkpoints WHERE stream_id = ?",
                (stream_id,),
            )
            row = await cursor.fetchone()
            return StreamCheckpoint.from_row(row) if row else None
        finally:
            await db.close()

    async def delete_checkpoint(self, stream_id: str) -> None:
        db = await self._connect()
        try:
            await db.execute(
                "DELETE FROM stream_checkpoints WHERE stream_id = ?", (stream_id,)
            )
            await db.commit()
        finally:
            await db.close()
