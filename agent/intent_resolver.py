"""
agent/intent_resolver.py — Intent Resolver

Turns one user message into an Intent, calling the reasoning backend with
a bounded history and a retry policy.

Decision rules:
  - confidence below min_confidence               -> clarification
  - intent "unknown" or not in the action registry -> clarification
  - known action, required params missing          -> clarification naming them
  - otherwise                                      -> executable intent

Retry policy (transient errors only: timeout, connection, rate limit):
  delay = min(base_delay * factor ** (attempt - 1), max_delay)
  With the defaults that is 2s then 4s, three attempts in total.
  A rate-limit error's retry_after is honoured (capped at max_delay).
Permanent errors and exhausted retries raise ReasoningUnavailableError.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Sequence

from actions.registry import ActionRegistry
from actions.validator import ParameterValidator
from brain.backend import ReasoningBackend
from brain.types import Classification, TokenUsage
from conversation.models import Message
from exceptions import (
    ReasoningConnectionError,
    ReasoningError,
    ReasoningRateLimitError,
    ReasoningTimeoutError,
    ReasoningUnavailableError,
)
from observability.logger import get_logger

log = get_logger(__name__)

_TRANSIENT = (ReasoningTimeoutError, ReasoningConnectionError, ReasoningRateLimitError)

UNKNOWN_INTENT_QUESTION = (
    "I'm not sure what you want to do. Could you be more specific? "
    "You can ask for 'help' to see available commands."
)


# ─────────────────────────────────────────────────────────────────────────────
# Types
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Intent:
    name: str
    confidence: float
    params: dict[str, Any] = field(default_factory=dict)
    requires_clarification: bool = False
    clarification_question: Optional[str] = None
    tokens_used: int = 0


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 2.0
    factor: float = 2.0
    max_delay: float = 30.0
    jitter: bool = False

    def delay_for_attempt(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        if retry_after:
            return min(retry_after, self.max_delay)
        delay = self.base_delay * (self.factor ** (attempt - 1))
        if self.jitter:
            delay += random.uniform(0, 0.5)
        return min(delay, self.max_delay)


# ─────────────────────────────────────────────────────────────────────────────
# IntentResolver
# ─────────────────────────────────────────────────────────────────────────────

class IntentResolver:

    def __init__(
        self,
        backend: ReasoningBackend,
        registry: ActionRegistry,
        validator: Optional[ParameterValidator] = None,
        *,
        min_confidence: float = 0.5,
        timeout_seconds: float = 10.0,
        policy: Optional[RetryPolicy] = None,
        history_window: int = 5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._backend = backend
        self._registry = registry
        self._validator = validator or ParameterValidator()
        self.min_confidence = min_confidence
        self.timeout_seconds = timeout_seconds
        self.policy = policy or RetryPolicy()
        self.history_window = history_window
        self._sleep = sleep

    async def resolve(self, message: str, history: Sequence[Message] = ()) -> Intent:
        window = list(history)[-self.history_window:] if self.history_window else []
        classification = await self._classify_with_retry(message, window)
        return self._decide(classification)

    # ── Backend call ──────────────────────────────────────────────────────────

    async def _classify_with_retry(self, message: str, history: list[Message]) -> Classification:
        last_error: Optional[ReasoningError] = None
        attempts = 0

        for attempt in range(1, self.policy.max_attempts + 1):
            attempts = attempt
            try:
                return await asyncio.wait_for(
                    self._backend.classify(message, history), self.timeout_seconds
                )
            except asyncio.TimeoutError:
                last_error = ReasoningTimeoutError(
                    f"classification timed out after {self.timeout_seconds}s"
                )
            except _TRANSIENT as e:
                last_error = e
            except ReasoningError as e:
                log.error("intent.permanent_error", error=str(e), error_type=type(e).__name__)
                raise ReasoningUnavailableError(
                    "Reasoning backend rejected the request", attempts=attempt, cause=e
                ) from e

            if attempt == self.policy.max_attempts:
                break

            retry_after = getattr(last_error, "retry_after", None)
            delay = self.policy.delay_for_attempt(attempt, retry_after)
            log.warning(
                "intent.retrying",
                attempt=attempt,
                max_attempts=self.policy.max_attempts,
                delay_s=round(delay, 2),
                error=str(last_error),
                error_type=type(last_error).__name__,
            )
            await self._sleep(delay)

        log.error("intent.retries_exhausted", attempts=attempts, error=str(last_error))
        raise ReasoningUnavailableError(
            "Reasoning backend unavailable", attempts=attempts, cause=last_error
        ) from last_error

    # ── Decision ──────────────────────────────────────────────────────────────

    def _decide(self, c: Classification) -> Intent:
        tokens = c.usage.total if isinstance(c.usage, TokenUsage) else 0
        action = None if c.is_unknown else self._registry.get_or_none(c.intent)

        if action is None or c.confidence < self.min_confidence:
            question = self._vague_question(c, action)
            log.info(
                "intent.clarification",
                intent=c.intent,
                confidence=c.confidence,
                known=action is not None,
            )
            return Intent(
                name=c.intent,
                confidence=c.confidence,
                params=dict(c.params),
                requires_clarification=True,
                clarification_question=question,
                tokens_used=tokens,
            )

        missing = self._validator.missing_required(action.definition, c.params)
        if missing:
            log.info("intent.missing_params", intent=c.intent, missing=missing)
            return Intent(
                name=c.intent,
                confidence=c.confidence,
                params=dict(c.params),
                requires_clarification=True,
                clarification_question=_missing_params_question(action.definition.description, missing),
                tokens_used=tokens,
            )

        log.info("intent.resolved", intent=c.intent, confidence=c.confidence)
        return Intent(
            name=c.intent,
            confidence=c.confidence,
            params=dict(c.params),
            tokens_used=tokens,
        )

    def _vague_question(self, c: Classification, action) -> str:
        if action is None:
            return UNKNOWN_INTENT_QUESTION
        if c.clarification_question:
            return c.clarification_question
        return f"Did you want to {_lower_first(action.definition.description)}?"


def _lower_first(text: str) -> str:
    text = text.rstrip(". ")
    return text[:1].lower() + text[1:] if text else text


def _missing_params_question(description: str, missing: list[str]) -> str:
    return (
        f"To {_lower_first(description)}, I need to know: {', '.join(missing)}. "
        f"Could you provide that information?"
    )
