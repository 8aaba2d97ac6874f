"""
conversation/context.py — Context budget and summarization policy

Keeps each conversation's representable context under a token budget.

Token estimate: ceil(len(text) / 4). Monotonic in text length, which is all
the budget check needs.

Policy (run after each turn by the orchestrator):
  - Summarize when the explicit message count exceeds summarization_threshold,
    or when the estimated footprint exceeds max_tokens.
  - Keep the most recent keep_recent messages verbatim — fewer if those alone
    would not fit next to the summary.
  - Fold everything older (plus any previous summary) into one summary,
    produced by the reasoning backend. If that fails, an extractive summary
    is built locally instead; summarization never fails a conversation.
  - The summary is clipped to summary_max_tokens, so after replacement the
    footprint is always <= max_tokens.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

from conversation.models import Message, Role
from conversation.store import ConversationStore
from exceptions import ReasoningError
from observability.logger import get_logger

if TYPE_CHECKING:
    from brain.backend import ReasoningBackend

log = get_logger(__name__)

_SUMMARY_PROMPT = """\
Summarize the following supply-chain copilot conversation for future context.
Keep node IDs, locations, simulation IDs and any unresolved requests.
Write at most {max_words} words of plain prose.

{previous}Conversation:
{transcript}

Summary:"""


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / 4)


def footprint(history: list[Message]) -> int:
    return sum(estimate_tokens(m.content) for m in history)


def clip_to_tokens(text: str, max_tokens: int) -> str:
    max_chars = max_tokens * 4
    if len(text) <= max_chars:
        return text
    return text[: max(0, max_chars - 3)].rstrip() + "..."


@dataclass(frozen=True)
class ContextSize:
    explicit_messages: int
    estimated_tokens: int
    has_summary: bool
    max_tokens: int

    @property
    def within_budget(self) -> bool:
        return self.estimated_tokens <= self.max_tokens


class ContextManager:
    """Summarization policy over a ConversationStore."""

    def __init__(
        self,
        store: ConversationStore,
        backend: Optional["ReasoningBackend"] = None,
        *,
        max_tokens: int = 8000,
        summarization_threshold: int = 10,
        keep_recent: int = 5,
        summary_max_tokens: int = 2000,
        summary_timeout_seconds: float = 30.0,
    ):
        if summary_max_tokens >= max_tokens:
            raise ValueError("summary_max_tokens must be smaller than max_tokens")
        self._store = store
        self._backend = backend
        self.max_tokens = max_tokens
        self.summarization_threshold = summarization_threshold
        self.keep_recent = keep_recent
        self.summary_max_tokens = summary_max_tokens
        self._summary_timeout = summary_timeout_seconds

    # ── Inspection ────────────────────────────────────────────────────────────

    def size_of(self, history: list[Message]) -> ContextSize:
        return ContextSize(
            explicit_messages=sum(1 for m in history if not m.is_summary),
            estimated_tokens=footprint(history),
            has_summary=any(m.is_summary for m in history),
            max_tokens=self.max_tokens,
        )

    async def size(self, conversation_id: str) -> ContextSize:
        return self.size_of(await self._store.get_history(conversation_id))

    def needs_summarization(self, history: list[Message]) -> bool:
        size = self.size_of(history)
        return (
            size.explicit_messages > self.summarization_threshold
            or size.estimated_tokens > self.max_tokens
        )

    # ── Summarization ─────────────────────────────────────────────────────────

    async def summarize(self, conversation_id: str) -> bool:
        """
        Fold older messages into the summary if the policy says so.

        Returns True if a replacement happened. The caller must hold the
        conversation's single-writer lock.
        """
        history = await self._store.get_history(conversation_id)
        if not self.needs_summarization(history):
            return False

        previous = next((m for m in history if m.is_summary), None)
        explicit = [m for m in history if not m.is_summary]

        keep = self._choose_keep(explicit)
        cutoff = len(explicit) - keep
        if cutoff <= 0 and previous is None:
            return False

        older = explicit[:cutoff]
        summary = await self._build_summary(previous, older)
        summary = clip_to_tokens(summary, self.summary_max_tokens)

        await self._store.replace_with_summary(conversation_id, summary, cutoff)
        log.info(
            "context.summarized",
            conversation_id=conversation_id,
            folded=cutoff,
            kept=keep,
            before_tokens=footprint(history),
        )
        return True

    def _choose_keep(self, explicit: list[Message]) -> int:
        """How many trailing messages fit beside a maximal summary."""
        # The synthetic summary message adds a fixed prefix; leave room for it.
        room = self.max_tokens - self.summary_max_tokens - 16
        keep = 0
        used = 0
        for message in reversed(explicit[-self.keep_recent:] if self.keep_recent else []):
            cost = estimate_tokens(message.content)
            if used + cost > room:
                break
            used += cost
            keep += 1
        return keep

    async def _build_summary(self, previous: Optional[Message], older: list[Message]) -> str:
        previous_text = previous.content if previous else ""
        if self._backend is not None:
            prompt = _SUMMARY_PROMPT.format(
                max_words=int(self.summary_max_tokens * 0.6),
                previous=f"Earlier summary:\n{previous_text}\n\n" if previous_text else "",
                transcript=_transcript(older),
            )
            try:
                text = await asyncio.wait_for(self._collect(prompt), self._summary_timeout)
                if text.strip():
                    return text.strip()
            except (ReasoningError, asyncio.TimeoutError) as e:
                log.warning("context.summary_fallback", error=str(e), error_type=type(e).__name__)
        return _extractive_summary(previous_text, older)

    async def _collect(self, prompt: str) -> str:
        parts: list[str] = []
        async for fragment in self._backend.generate(prompt):
            parts.append(fragment)
        return "".join(parts)


def _transcript(messages: list[Message]) -> str:
    return "\n".join(f"{m.role.value}: {m.content}" for m in messages)


def _extractive_summary(previous: str, older: list[Message]) -> str:
    prefix = "Summary of earlier conversation: "
    if previous.startswith(prefix):
        previous = previous[len(prefix):]
    asks = [m.content.strip() for m in older if m.role == Role.USER]
    parts = [previous] if previous else []
    if asks:
        parts.append("The user asked: " + "; ".join(a[:160] for a in asks))
    return " ".join(parts) or "Earlier messages were summarized."
