"""
conversation/store.py — Conversation Context Store

Durable owner of conversation state. The orchestrator is the only writer
for a given conversation at any moment (it holds the per-conversation lock),
but reads may come from anywhere, so every implementation makes
replace_with_summary() atomic with respect to get_history().

Implementations:
  - InMemoryConversationStore (this module) — dict + asyncio.Lock
  - SQLiteConversationStore (conversation/sqlite_store.py) — aiosqlite

Ordering: append_message() keeps the explicit log strictly chronological.
A message whose timestamp is not after the previous one is re-stamped to
previous + 1µs, so receipt order always wins over clock skew.
"""

from __future__ import annotations

import asyncio
import copy
import time
from abc import ABC, abstractmethod
from typing import Callable, Optional

from conversation.models import (
    DEFAULT_TTL_SECONDS,
    Conversation,
    Message,
    new_conversation_id,
)
from exceptions import ConversationNotFoundError, StoreError
from observability.logger import get_logger

log = get_logger(__name__)

_TIE_BREAK = 1e-6


class ConversationStore(ABC):
    """Async interface every conversation store implements."""

    @abstractmethod
    async def create_conversation(
        self,
        user_id: str,
        connection_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> Conversation: ...

    @abstractmethod
    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        """Return a snapshot, or None if missing or expired."""

    @abstractmethod
    async def latest_for_user(self, user_id: str) -> Optional[Conversation]:
        """Most recently active, unexpired conversation for the user."""

    @abstractmethod
    async def attach_connection(self, conversation_id: str, connection_id: Optional[str]) -> None: ...

    @abstractmethod
    async def append_message(self, conversation_id: str, message: Message) -> Message:
        """Append and return the stored message (possibly re-stamped)."""

    @abstractmethod
    async def get_history(self, conversation_id: str) -> list[Message]:
        """Summary message first (if any), then explicit messages oldest first."""

    @abstractmethod
    async def replace_with_summary(
        self, conversation_id: str, summary: str, cutoff_index: int
    ) -> None:
        """Atomically drop explicit messages [0:cutoff_index) and store the summary."""

    @abstractmethod
    async def update_metadata(
        self, conversation_id: str, tokens: int, response_time_ms: float
    ) -> None: ...

    @abstractmethod
    async def clear_conversation(self, conversation_id: str) -> None:
        """Drop all messages and the summary, keeping the conversation record."""

    @abstractmethod
    async def delete_conversation(self, conversation_id: str) -> bool: ...

    @abstractmethod
    async def purge_expired(self, now: Optional[float] = None) -> int:
        """Delete every expired conversation. Returns how many were removed."""

    async def init(self) -> None:
        """Open resources. No-op for stores that need none."""

    async def close(self) -> None:
        """Release resources."""


def check_cutoff(conversation_id: str, cutoff_index: int, explicit: int) -> None:
    if not (0 <= cutoff_index <= explicit):
        raise StoreError(
            f"cutoff_index {cutoff_index} out of range for conversation "
            f"'{conversation_id}' with {explicit} explicit message(s)"
        )


# ─────────────────────────────────────────────────────────────────────────────
# In-memory implementation
# ─────────────────────────────────────────────────────────────────────────────

class InMemoryConversationStore(ConversationStore):
    """
    Process-local store. Every public method takes the same asyncio.Lock,
    so a summary replacement is never observed half-done.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._conversations: dict[str, Conversation] = {}
        self._lock = asyncio.Lock()
        self._ttl = ttl_seconds
        self._clock = clock

    def _live(self, conversation_id: str) -> Optional[Conversation]:
        conv = self._conversations.get(conversation_id)
        if conv is None:
            return None
        if conv.is_expired(self._clock()):
            del self._conversations[conversation_id]
            log.info("store.conversation_expired", conversation_id=conversation_id)
            return None
        return conv

    def _require(self, conversation_id: str) -> Conversation:
        conv = self._live(conversation_id)
        if conv is None:
            raise ConversationNotFoundError(conversation_id)
        return conv

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
            self._conversations[conv.id] = conv
        log.info("store.conversation_created", conversation_id=conv.id, user_id=user_id)
        return copy.deepcopy(conv)

    async def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        async with self._lock:
            conv = self._live(conversation_id)
            return copy.deepcopy(conv) if conv else None

    async def latest_for_user(self, user_id: str) -> Optional[Conversation]:
        async with self._lock:
            candidates = [
                c for c in list(self._conversations.values())
                if c.user_id == user_id and self._live(c.id) is not None
            ]
            if not candidates:
                return None
            return copy.deepcopy(max(candidates, key=lambda c: c.updated_at))

    async def attach_connection(self, conversation_id: str, connection_id: Optional[str]) -> None:
        async with self._lock:
            conv = self._require(conversation_id)
            conv.connection_id = connection_id
            conv.updated_at = self._clock()

    async def append_message(self, conversation_id: str, message: Message) -> Message:
        async with self._lock:
            conv = self._require(conversation_id)
            if conv.messages and message.timestamp <= conv.messages[-1].timestamp:
                message = message.with_timestamp(conv.messages[-1].timestamp + _TIE_BREAK)
            conv.messages.append(message)
            conv.updated_at = self._clock()
        return message

    async def get_history(self, conversation_id: str) -> list[Message]:
        async with self._lock:
            return self._require(conversation_id).history()

    async def replace_with_summary(
        self, conversation_id: str, summary: str, cutoff_index: int
    ) -> None:
        async with self._lock:
            conv = self._require(conversation_id)
            check_cutoff(conversation_id, cutoff_index, len(conv.messages))
            del conv.messages[:cutoff_index]
            conv.summary = summary
            conv.summarized_count += cutoff_index
            conv.updated_at = self._clock()
        log.info(
            "store.summary_replaced",
            conversation_id=conversation_id,
            folded=cutoff_index,
        )

    async def update_metadata(
        self, conversation_id: str, tokens: int, response_time_ms: float
    ) -> None:
        async with self._lock:
            conv = self._require(conversation_id)
            conv.record_response(tokens, response_time_ms)
            conv.updated_at = self._clock()

    async def clear_conversation(self, conversation_id: str) -> None:
        async with self._lock:
            conv = self._require(conversation_id)
            conv.messages.clear()
            conv.summary = None
            conv.summarized_count = 0
            conv.updated_at = self._clock()

    async def delete_conversation(self, conversation_id: str) -> bool:
        async with self._lock:
            return self._conversations.pop(conversation_id, None) is not None

    async def purge_expired(self, now: Optional[float] = None) -> int:
        now = now if now is not None else self._clock()
        async with self._lock:
            expired = [cid for cid, c in self._conversations.items() if c.is_expired(now)]
            for cid in expired:
                del self._conversations[cid]
        if expired:
            log.info("store.purged", count=len(expired))
        return len(expired)

    @property
    def count(self) -> int:
        """Synchronous count — use only from non-async contexts (e.g. tests)."""
        return len(self._conversations)
