"""
conversation/models.py — Conversation and Message records

Message is immutable once written. Conversation is the store's record:
an append-only explicit message log, plus an optional rolling summary that
stands in for every message already folded into it.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional

DEFAULT_TTL_SECONDS = 30 * 24 * 3600


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"       # only used for the synthetic summary message


def _message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str
    id: str = field(default_factory=_message_id)
    timestamp: float = field(default_factory=time.time)
    is_streaming: bool = False
    is_summary: bool = False

    @classmethod
    def user(cls, content: str, **kwargs) -> "Message":
        return cls(role=Role.USER, content=content, **kwargs)

    @classmethod
    def assistant(cls, content: str, **kwargs) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, **kwargs)

    def with_timestamp(self, timestamp: float) -> "Message":
        return replace(self, timestamp=timestamp)

    def finalized(self, content: str) -> "Message":
        """Return the completed copy of a streaming message."""
        if not self.is_streaming:
            raise ValueError("Only a streaming message can be finalized")
        return replace(self, content=content, is_streaming=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }


def new_conversation_id(user_id: str, now: Optional[float] = None) -> str:
    ms = int((now if now is not None else time.time()) * 1000)
    return f"conv_{user_id}_{ms}_{uuid.uuid4().hex[:4]}"


@dataclass
class Conversation:
    id: str
    user_id: str
    connection_id: Optional[str] = None
    messages: list[Message] = field(default_factory=list)
    summary: Optional[str] = None
    summarized_count: int = 0
    total_tokens: int = 0
    response_count: int = 0
    average_response_ms: float = 0.0
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    ttl_seconds: float = DEFAULT_TTL_SECONDS
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def expires_at(self) -> float:
        return self.updated_at + self.ttl_seconds

    def is_expired(self, now: Optional[float] = None) -> bool:
        return (now if now is not None else time.time()) >= self.expires_at

    @property
    def message_count(self) -> int:
        """Every message ever appended, including those folded into the summary."""
        return self.summarized_count + len(self.messages)

    def summary_message(self) -> Optional[Message]:
        if not self.summary:
            return None
        first_ts = self.messages[0].timestamp if self.messages else self.updated_at
        return Message(
            role=Role.SYSTEM,
            content=f"Summary of earlier conversation: {self.summary}",
            id=f"sum_{self.id}",
            timestamp=first_ts - 1e-6,
            is_summary=True,
        )

    def history(self) -> list[Message]:
        """Summary message (if any) followed by the explicit messages, oldest first."""
        head = self.summary_message()
        return ([head] if head else []) + list(self.messages)

    def record_response(self, tokens: int, response_time_ms: float) -> None:
        self.total_tokens += max(0, tokens)
        self.response_count += 1
        n = self.response_count
        self.average_response_ms += (response_time_ms - self.average_response_ms) / n
