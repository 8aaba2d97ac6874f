"""
agent/responses.py — User-facing responses and error normalisation

Everything the user sees on failure goes through normalize_error(), which
picks an ErrorKind and a fixed, safe message. Exception text is only ever
shown for business failures (an action's own explanation), and even then
it is passed through sanitize_text() first.

Kinds:
  user_input  — bad request (empty, too long, too many steps)     retryable=False
  dependency  — reasoning backend, store, domain service, timeout  retryable=True
  business    — an action refused (unknown node, duplicate link)   retryable=False
  rate_limit  — per-user budget exhausted                          retryable=True
  internal    — anything else                                      retryable=True
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

from actions.types import ExecutionResult
from exceptions import (
    ConversationNotFoundError,
    DomainUnavailableError,
    ParameterValidationError,
    PlanTooLongError,
    ProtocolError,
    ReasoningError,
    StoreError,
)

DEPENDENCY_MESSAGE = "I'm having trouble reaching a service right now. Please try again in a moment."
INTERNAL_MESSAGE = "I encountered an unexpected error. Please try again or rephrase your request."
CONVERSATION_EXPIRED_MESSAGE = "This conversation has expired. Please start a new one."
TOKEN_BUDGET_MESSAGE = "You've reached today's usage limit. Please try again later."

SUCCESS_SUGGESTIONS = ("View network summary", "Run a simulation", "Check for alerts")
FAILURE_SUGGESTIONS = ("Try again", "Ask for help")


class ErrorKind(str, Enum):
    USER_INPUT = "user_input"
    DEPENDENCY = "dependency"
    BUSINESS = "business"
    RATE_LIMIT = "rate_limit"
    INTERNAL = "internal"


_RETRYABLE = {
    ErrorKind.USER_INPUT: False,
    ErrorKind.DEPENDENCY: True,
    ErrorKind.BUSINESS: False,
    ErrorKind.RATE_LIMIT: True,
    ErrorKind.INTERNAL: True,
}


@dataclass(frozen=True)
class ErrorResponse:
    kind: ErrorKind
    message: str
    suggestions: tuple[str, ...] = ()
    retryable: bool = False
    correlation_id: str = ""
    retry_after_s: Optional[int] = None

    @classmethod
    def of(
        cls,
        kind: ErrorKind,
        message: str,
        correlation_id: str = "",
        suggestions: Sequence[str] = (),
        retry_after_s: Optional[int] = None,
    ) -> "ErrorResponse":
        return cls(
            kind=kind,
            message=message,
            suggestions=tuple(suggestions),
            retryable=_RETRYABLE[kind],
            correlation_id=correlation_id,
            retry_after_s=retry_after_s,
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "kind": self.kind.value,
            "message": self.message,
            "retryable": self.retryable,
            "correlationId": self.correlation_id,
        }
        if self.suggestions:
            data["suggestions"] = list(self.suggestions)
        if self.retry_after_s is not None:
            data["retryAfter"] = self.retry_after_s
        return data


# ─────────────────────────────────────────────────────────────────────────────
# Sanitising
# ─────────────────────────────────────────────────────────────────────────────

_SANITIZERS = [
    (re.compile(r"Traceback \(most recent call last\):.*", re.DOTALL), ""),
    (re.compile(r'File "[^"]+", line \d+.*'), ""),
    (re.compile(r"\b[a-z][a-z0-9+.-]*://\S+", re.IGNORECASE), "[service]"),
    (re.compile(r"(?:[A-Za-z]:)?(?:[\\/][\w.-]+){2,}[\\/]?"), "[path]"),
    (re.compile(r"\b(?:localhost|\d{1,3}(?:\.\d{1,3}){3})(?::\d+)?\b"), "[service]"),
    (re.compile(r"\b[a-z_][a-z0-9_]*(?:\.[a-z_][a-z0-9_]*)+\(\)"), "[internal]"),
]


def sanitize_text(text: str) -> str:
    """Strip tracebacks, file paths, URLs/hosts and qualified function names."""
    for pattern, replacement in _SANITIZERS:
        text = pattern.sub(replacement, text)
    return re.sub(r"\s{2,}", " ", text).strip()


# ─────────────────────────────────────────────────────────────────────────────
# Exception -> ErrorResponse
# ─────────────────────────────────────────────────────────────────────────────

def normalize_error(exc: BaseException, correlation_id: str = "") -> ErrorResponse:
    if isinstance(exc, (PlanTooLongError, ProtocolError)):
        return ErrorResponse.of(ErrorKind.USER_INPUT, str(exc), correlation_id)
    if isinstance(exc, ParameterValidationError):
        return ErrorResponse.of(
            ErrorKind.USER_INPUT,
            invalid_params_message(exc),
            correlation_id,
            suggestions=FAILURE_SUGGESTIONS,
        )
    if isinstance(exc, ConversationNotFoundError):
        return ErrorResponse.of(ErrorKind.USER_INPUT, CONVERSATION_EXPIRED_MESSAGE, correlation_id)
    if isinstance(exc, (ReasoningError, StoreError, DomainUnavailableError, asyncio.TimeoutError)):
        return ErrorResponse.of(
            ErrorKind.DEPENDENCY, DEPENDENCY_MESSAGE, correlation_id, suggestions=("Try again",)
        )
    return ErrorResponse.of(
        ErrorKind.INTERNAL, INTERNAL_MESSAGE, correlation_id, suggestions=FAILURE_SUGGESTIONS
    )


def rate_limited(
    retry_after_s: Optional[int],
    correlation_id: str = "",
    message: Optional[str] = None,
) -> ErrorResponse:
    seconds = retry_after_s or 1
    return ErrorResponse.of(
        ErrorKind.RATE_LIMIT,
        message or f"You're sending messages too quickly. Please wait {seconds} seconds.",
        correlation_id,
        retry_after_s=seconds,
    )


def business_failure(result: ExecutionResult, correlation_id: str = "") -> ErrorResponse:
    return ErrorResponse.of(
        ErrorKind.BUSINESS,
        sanitize_text(result.error or "The action could not be completed."),
        correlation_id,
        suggestions=result.suggestions or FAILURE_SUGGESTIONS,
    )


def invalid_params_message(exc: ParameterValidationError) -> str:
    reasons = "; ".join(e.reason for e in exc.errors)
    return f"Some details in your request are invalid: {reasons}."


# ─────────────────────────────────────────────────────────────────────────────
# Templated summaries (used when response generation is unavailable)
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class StepOutcome:
    index: int
    text: str
    intent: Optional[str] = None
    result: Optional[ExecutionResult] = None
    error: Optional[str] = None
    attempted: bool = True

    @property
    def succeeded(self) -> bool:
        return self.result is not None and self.result.success


def _describe(report: StepOutcome) -> str:
    if report.result is not None:
        return report.result.describe()
    return report.text


def _failure_reason(report: StepOutcome) -> str:
    if report.error:
        return report.error
    if report.result is not None and report.result.error:
        return report.result.error
    return "unknown error"


def summarize_steps(reports: Sequence[StepOutcome]) -> str:
    """Plain-text summary of a (possibly partial) plan run."""
    attempted = [r for r in reports if r.attempted]
    if not attempted:
        return "Your request was completed successfully."

    if len(reports) == 1:
        only = attempted[0]
        if only.succeeded:
            return only.result.describe() or "Your request was completed successfully."
        return f"I encountered an issue: {sanitize_text(_failure_reason(only))}"

    done = [r for r in attempted if r.succeeded]
    failed = next((r for r in attempted if not r.succeeded), None)

    if failed is None:
        lines = [f"I successfully completed all {len(done)} steps:"]
        lines += [f"{r.index}. {_describe(r)}" for r in done]
        return "\n".join(lines)

    lines = []
    if done:
        lines.append(f"I completed {len(done)} step(s):")
        lines += [f"{r.index}. {_describe(r)}" for r in done]
    lines.append(f"However, step {failed.index} failed: {sanitize_text(_failure_reason(failed))}")
    skipped = [r for r in reports if not r.attempted]
    if skipped:
        lines.append(
            "Not attempted: " + ", ".join(f"step {r.index} ({r.text})" for r in skipped) + "."
        )
    return "\n".join(lines)


def with_completed_steps(reports: Sequence[StepOutcome], text: str) -> str:
    """Prefix `text` with the steps that already succeeded (mid-plan clarification)."""
    done = [r for r in reports if r.succeeded]
    if not done:
        return text
    lines = [f"I completed {len(done)} step(s):"]
    lines += [f"{r.index}. {_describe(r)}" for r in done]
    lines.append(text)
    return "\n".join(lines)


def step_lines(reports: Sequence[StepOutcome]) -> list[str]:
    """Result lines fed to the response-generation prompt."""
    lines = []
    for r in reports:
        if not r.attempted:
            lines.append(f"Step {r.index} ({r.text}): not attempted")
        elif r.succeeded:
            lines.append(f"Step {r.index} ({r.text}): succeeded. {_describe(r)}")
        else:
            lines.append(f"Step {r.index} ({r.text}): failed. {sanitize_text(_failure_reason(r))}")
    return lines


def suggestions_for(reports: Sequence[StepOutcome]) -> tuple[str, ...]:
    failed = next((r for r in reports if r.attempted and not r.succeeded), None)
    if failed is None:
        return SUCCESS_SUGGESTIONS
    if failed.result is not None and failed.result.suggestions:
        return tuple(failed.result.suggestions)
    return FAILURE_SUGGESTIONS
