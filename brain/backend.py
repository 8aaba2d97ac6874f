"""
brain/backend.py — Reasoning Backend interface + shared LLM plumbing

Every reasoning provider subclasses ReasoningBackend and implements:
  - classify()  -> one Classification for a user message
  - generate()  -> async iterator of text fragments (streamed response)

LLMReasoningBackend holds everything that is provider-independent:
building the classification prompt from the action catalogue, and turning
the model's reply (bare JSON or a ```json fenced block) into a
Classification. A reply that can't be parsed is not an error: it becomes
intent "unknown" with confidence 0, which the intent resolver turns into
a clarification question.

Retries are NOT done here. The intent resolver owns the retry policy so
that every caller sees the same backoff behaviour.
"""

from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, AsyncIterator, Iterable, Optional, Sequence

from actions.types import ActionDefinition
from brain.prompts import (
    CLASSIFY_SYSTEM_PROMPT,
    RESPONSE_SYSTEM_PROMPT,
    build_classification_prompt,
)
from brain.types import Classification, ReasoningOptions, TokenUsage
from conversation.models import Message
from observability.logger import get_logger

if TYPE_CHECKING:
    from config.settings import Settings

log = get_logger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)


class ReasoningBackend(ABC):
    """Abstract base for every reasoning provider."""

    @abstractmethod
    async def classify(self, text: str, history: Sequence[Message]) -> Classification:
        """Classify one user message against the action catalogue."""

    @abstractmethod
    def generate(self, prompt: str, system: Optional[str] = None) -> AsyncIterator[str]:
        """Stream a free-text completion. Implementations are async generators."""

    async def close(self) -> None:
        """Release HTTP clients. No-op by default."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


# ─────────────────────────────────────────────────────────────────────────────
# Reply parsing
# ─────────────────────────────────────────────────────────────────────────────

def extract_json_object(reply: str) -> Optional[dict]:
    """
    Pull the first JSON object out of a model reply.

    Accepts a bare object, a ```json fenced block, or an object surrounded
    by prose. Returns None when nothing parses to a dict.
    """
    if not reply:
        return None
    candidates = [m.group(1) for m in _FENCE_RE.finditer(reply)]
    candidates.append(reply)
    start, end = reply.find("{"), reply.rfind("}")
    if 0 <= start < end:
        candidates.append(reply[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate.strip())
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(data, dict):
            return data
    return None


def parse_classification(reply: str, usage: Optional[TokenUsage] = None) -> Classification:
    usage = usage or TokenUsage()
    data = extract_json_object(reply)
    if data is None:
        log.warning("reasoning.unparseable_reply", reply_preview=reply[:120] if reply else "")
        return Classification.unknown(usage)

    params = data.get("params")
    if not isinstance(params, dict):
        params = {}
    question = data.get("clarification_question")
    return Classification(
        intent=data.get("intent"),
        confidence=data.get("confidence", 0.0),
        params=params,
        clarification_question=question if isinstance(question, str) and question.strip() else None,
        usage=usage,
    )


# ─────────────────────────────────────────────────────────────────────────────
# LLMReasoningBackend — provider-independent half
# ─────────────────────────────────────────────────────────────────────────────

class LLMReasoningBackend(ReasoningBackend):
    """
    Subclasses implement two provider calls:
      - _complete(system, user) -> (reply_text, TokenUsage)
      - _stream(system, user)   -> async iterator of fragments
    Both must map provider exceptions onto the ReasoningError hierarchy.
    """

    provider: str = ""

    def __init__(self, options: ReasoningOptions, catalogue: Iterable[ActionDefinition] = ()):
        self.options = options
        self._catalogue = list(catalogue)

    def set_catalogue(self, catalogue: Iterable[ActionDefinition]) -> None:
        self._catalogue = list(catalogue)

    @abstractmethod
    async def _complete(self, system: str, user: str) -> tuple[str, TokenUsage]: ...

    @abstractmethod
    def _stream(self, system: str, user: str) -> AsyncIterator[str]: ...

    async def classify(self, text: str, history: Sequence[Message]) -> Classification:
        prompt = build_classification_prompt(text, history, self._catalogue)
        log.debug(
            f"{self.provider}.classify.start",
            model=self.options.model,
            history_len=len(history),
        )
        reply, usage = await self._complete(CLASSIFY_SYSTEM_PROMPT, prompt)
        result = parse_classification(reply, usage)
        log.debug(
            f"{self.provider}.classify.complete",
            intent=result.intent,
            confidence=result.confidence,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
        return result

    async def generate(self, prompt: str, system: Optional[str] = None) -> AsyncIterator[str]:
        async for fragment in self._stream(system or RESPONSE_SYSTEM_PROMPT, prompt):
            if fragment:
                yield fragment


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────

def create_reasoning_backend(
    settings: "Settings",
    catalogue: Iterable[ActionDefinition] = (),
) -> LLMReasoningBackend:
    """Build the backend named by settings.reasoning.provider."""
    cfg = settings.reasoning
    options = ReasoningOptions(
        model=cfg.model,
        temperature=cfg.temperature,
        max_tokens=cfg.max_tokens,
        timeout_seconds=cfg.timeout_seconds,
    )
    api_key = settings.reasoning_api_key

    if cfg.provider == "openai":
        from brain.openai_backend import OpenAIReasoningBackend
        backend: LLMReasoningBackend = OpenAIReasoningBackend(
            api_key=api_key, options=options, catalogue=catalogue, base_url=cfg.base_url,
        )
    elif cfg.provider == "anthropic":
        from brain.anthropic_backend import AnthropicReasoningBackend
        backend = AnthropicReasoningBackend(
            api_key=api_key, options=options, catalogue=catalogue, base_url=cfg.base_url,
        )
    else:
        raise ValueError(f"Unknown reasoning provider: {cfg.provider!r}")

    log.info("reasoning.backend_created", provider=cfg.provider, model=cfg.model)
    return backend
