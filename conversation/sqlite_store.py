"""
conversation/sqlite_store.py — SQLite-backed Conversation Store

Durable conversation records with TTL expiry.

Tables:
  - conversations : one row per conversation (summary, counters, expiry)
  - messages      : explicit message log, ordered by a per-conversation seq

replace_with_summary() deletes the oldest rows and writes the new summary
inside one transaction, serialized with every other write by an
asyncio.Lock held around the shared connection.

Usage:
    store = SQLiteConversationStore("./data/sqlite/conversations.db")
    await store.init()
    conv = await store.create_conversation("user-1")
    await store.append_message(conv.id, Message.user("hello"))
"""

from __future__ import annotations

import asyncio
import json
import time
from pathlib import Path
from typing import Callable, Optional

import aiosqlite

from conversation.models import (
    DEFAULT_TTL_SECONDS,
    Conversation,
    Message,
    Role,
    new_conversation_id,
)
from conversation.store import ConversationStore, check_cutoff
from exceptions import ConversationNotFoundError, StoreError
from observability.logger import get_logger

log = get_logger(__name__)

_TIE_BREAK = 1e-6

# ── Schema DDL ────────────────────────────────────────────────────────────────

_SCHEMA = """
CREATE TABLE IF NOT EXISTS conversations (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    connection_id       TEXT,
    summary             TEXT,
    summarized_count    INTEGER DEFAULT 0,
    total_tokens        INTEGER DEFAULT 0,
    response_count      INTEGER DEFAULT 0,
    average_response_ms REAL DEFAULT 0,
    created_at          REAL NOT NULL,
    updated_at          REAL NOT NULL,
    expires_at          REAL NOT NULL,
    metadata            TEXT DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS messages (
    conversation_id TEXT NOT NULL,
    seq             INTEGER NOT NULL,
    id              TEXT NOT NULL,
    role            TEXT NOT NULL,
    content         TEXT NOT NULL,
    timestamp       REAL NOT NULL,
    PRIMARY KEY (conversation_id, seq),
    FOREIGN KEY (conversation_id) REFERENCES conversations(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_conversations_user ON conversations(user_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_conversations_expiry ON conversations(expires_at);
"""


class SQLiteConversationStore(ConversationStore):

    def __init__(
        self,
        db_path: str = "./data/sqlite/conversations.db",
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = db_path
        self._ttl = ttl_seconds
        self._clock = clock
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def init(self) -> None:
        """Create the database file and tables if they don't exist."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            await self._db.execute("PRAGMA journal_mode = WAL")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        log.info("sqlite_store.initialized", db_path=self.db_path)

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    def _require_db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise StoreError(
                "SQLiteConversationStore is not initialised (or has been closed). "
                "Call `await store.init()` before use."
            )
        return self._db

    # ── Helpers ───────────────────────────────────────────────────────────────

    async def _fetch_live(self, conversation_id: str) -> Optional[aiosqlite.Row]:
        db = self._require_db()
        cursor = await db.execute(
            "SELECT * FROM conversations WHERE id=? AND expires_at > ?",
            (conversation_id, self._clock()),
        )
        return await cursor.fetchone()

    async def _require_live(self, conversation_id: str) -> aiosqlite.Row:
        row = await self._fetch_live(conversation_id)
        if row is None:
            raise ConversationNotFoundError(conversation_id)
        return row

    async def _messages(self, conversation_id: str) -> list[Message]:
        db = self._require_db()
        cursor = await db.execute(
            "SELECT id, role, content, timestamp FROM messages "
            "WHERE conversation_id=? ORDER BY seq",
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        return [
            Message(role=Role(r["role"]), content=r["content"], id=r["id"], timestamp=r["timestamp"])
            for r in rows
        ]

    async def _touch(self, conversation_id: str) -> None:
        now = self._clock()
        await self._require_db().execute(
            "UPDATE conversations SET updated_at=?, expires_at=? WHERE id=?",
            (now, now + self._ttl, conversation_id),
        )

    def _row_to_conversation(self, row: aiosqlite.Row, messages: list[Message]) -> Conversation:
        return Conversation(
            id=row["id"],
            user_id=row["user_id"],
            connection_id=row["connection_id"],
            messages=messages,
            summary=row["summary"],
            summarized_count=row["summarized_count"],
            total_tokens=row["total_tokens"],
            response_count=row["response_count"],
            average_response_ms=row["average_response_ms"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            ttl_seconds=self._ttl,
            metadata=json.loads(row["metadata"] or "{}"),
        )

    # ── ConversationStore ─────────────────────────────────────────────────────

    async def create_conversation(
        self,
        user_id: str,
        connection_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Conversation:
        now = self._clock()
        conv = Conversation(
            id=new_conversation_id(user_id, now),
            user_id=user_id,
            connection_id=connection_id,
            created_at=now,
            updated_at=now,
            ttl_seconds=self._ttl,
            metadata=dict(metadata or {}),
        )
        async with self._lock:
            db = self._require_db()
            await db.execute(
                """INSERT INTO conversations
                   (id, user_id, connection_id, created_at, updated_at, expires_at, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (conv.id, user_id, connection_id, now, now, conv.expires_at,
                 json.dumps(conv.metadata)),
            )
            await db.commit()
        log.info("store.conversation_created", conversation_id=conv.id, user_id=user_id)
        return conv

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            row = await self._fetch_live(conversation_id)
            if row is None:
                return None
            return self._row_to_conversation(row, await self._messages(conversation_id))

    async def latest_for_user(self, user_id: str) -> Optional[Conversation]:
        async with self._lock:
            cursor = await self._require_db().execute(
                "SELECT * FROM conversations WHERE user_id=? AND expires_at > ? "
                "ORDER BY updated_at DESC LIMIT 1",
                (user_id, self._clock()),
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            return self._row_to_conversation(row, await self._messages(row["id"]))

    async def attach_connection(self, conversation_id: str, connection_id: Optional[str]) -> None:
        async with self._lock:
            await self._require_live(conversation_id)
            db = self._require_db()
            await db.execute(
                "UPDATE conversations SET connection_id=? WHERE id=?",
                (connection_id, conversation_id),
            )
            await self._touch(conversation_id)
            await db.commit()

    async def append_message(self, conversation_id: str, message: Message) -> Message:
        async with self._lock:
            await self._require_live(conversation_id)
            db = self._require_db()
            cursor = await db.execute(
                "SELECT seq, timestamp FROM messages WHERE conversation_id=? "
                "ORDER BY seq DESC LIMIT 1",
                (conversation_id,),
            )
            last = await cursor.fetchone()
            seq = 0
            if last is not None:
                seq = last["seq"] + 1
                if message.timestamp <= last["timestamp"]:
                    message = message.with_timestamp(last["timestamp"] + _TIE_BREAK)
            await db.execute(
                "INSERT INTO messages (conversation_id, seq, id, role, content, timestamp) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (conversation_id, seq, message.id, message.role.value,
                 message.content, message.timestamp),
            )
            await self._touch(conversation_id)
            await db.commit()
        return message

    async def get_history(self, conversation_id: str) -> list[Message]:
        async with self._lock:
            row = await self._require_live(conversation_id)
            conv = self._row_to_conversation(row, await self._messages(conversation_id))
        return conv.history()

    async def replace_with_summary(
        self, conversation_id: str, summary: str, cutoff_index: int
    ) -> None:
        async with self._lock:
            await self._require_live(conversation_id)
            db = self._require_db()
            cursor = await db.execute(
                "SELECT COUNT(*) AS n FROM messages WHERE conversation_id=?",
                (conversation_id,),
            )
            explicit = (await cursor.fetchone())["n"]
            check_cutoff(conversation_id, cutoff_index, explicit)
            try:
                await db.execute(
                    """DELETE FROM messages WHERE conversation_id=? AND seq IN (
                           SELECT seq FROM messages WHERE conversation_id=?
                           ORDER BY seq LIMIT ?)""",
                    (conversation_id, conversation_id, cutoff_index),
                )
                await db.execute(
                    "UPDATE conversations SET summary=?, summarized_count=summarized_count+? "
                    "WHERE id=?",
                    (summary, cutoff_index, conversation_id),
                )
                await self._touch(conversation_id)
                await db.commit()
            except aiosqlite.Error as e:
                await db.rollback()
                raise StoreError(f"Summary replacement failed: {e}") from e
        log.info("store.summary_replaced", conversation_id=conversation_id, folded=cutoff_index)

    async def update_metadata(
        self, conversation_id: str, tokens: int, response_time_ms: float
    ) -> None:
        async with self._lock:
            row = await self._require_live(conversation_id)
            conv = self._row_to_conversation(row, [])
            conv.record_response(tokens, response_time_ms)
            db = self._require_db()
            await db.execute(
                "UPDATE conversations SET total_tokens=?, response_count=?, "
                "average_response_ms=? WHERE id=?",
                (conv.total_tokens, conv.response_count, conv.average_response_ms, conversation_id),
            )
            await self._touch(conversation_id)
            await db.commit()

    async def clear_conversation(self, conversation_id: str) -> None:
        async with self._lock:
            await self._require_live(conversation_id)
            db = self._require_db()
            await db.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
            await db.execute(
                "UPDATE conversations SET summary=NULL, summarized_count=0 WHERE id=?",
                (conversation_id,),
            )
            await self._touch(conversation_id)
            await db.commit()

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._lock:
            db = self._require_db()
            await db.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
            cursor = await db.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))
            await db.commit()
            return cursor.rowcount > 0

    async def purge_expired(self, now: Optional[float] = None) -> int:
        now = now if now is not None else self._clock()
        async with self._lock:
            db = self._require_db()
            await db.execute(
                "DELETE FROM messages WHERE conversation_id IN "
                "(SELECT id FROM conversations WHERE expires_at <= ?)",
                (now,),
            )
            cursor = await db.execute("DELETE FROM conversations WHERE expires_at <= ?", (now,))
            await db.commit()
            removed = cursor.rowcount
        if removed:
            log.info("store.purged", count=removed)
        return removed
