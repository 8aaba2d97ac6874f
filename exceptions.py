"""
exceptions.py — Copilot Unified Error Hierarchy

All copilot-specific exceptions live here. Every layer of the stack
raises typed subclasses of CopilotError — never bare Exception.

Import from here, not from individual modules:
    from exceptions import ActionNotFoundError, ReasoningUnavailableError

Hierarchy:
    CopilotError
    ├── ActionError
    │   ├── DuplicateActionError
    │   ├── ActionNotFoundError
    │   ├── RegistryFrozenError
    │   └── ParameterValidationError
    ├── ReasoningError
    │   ├── ReasoningConnectionError
    │   ├── ReasoningTimeoutError
    │   ├── ReasoningRateLimitError
    │   ├── ReasoningInvalidRequestError
    │   └── ReasoningUnavailableError
    ├── StoreError
    │   └── ConversationNotFoundError
    ├── DomainError
    │   ├── DomainNotFoundError
    │   ├── DomainConflictError
    │   └── DomainUnavailableError
    ├── OrchestrationError
    │   ├── InvalidTransitionError
    │   └── PlanTooLongError
    └── GatewayError
        ├── ProtocolError
        ├── ConnectionGoneError
        ├── DuplicateConnectionError
        └── StreamCancelledError
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


# ─────────────────────────────────────────────────────────────────────────────
# Root
# ─────────────────────────────────────────────────────────────────────────────

class CopilotError(Exception):
    """Base class for all copilot exceptions."""


# ─────────────────────────────────────────────────────────────────────────────
# Action layer
# ─────────────────────────────────────────────────────────────────────────────

class ActionError(CopilotError):
    """Base for action registry / validation errors."""


class DuplicateActionError(ActionError):
    """An action with the same name is already registered."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(
            f"Action '{name}' is already registered. "
            f"Action names must be globally unique."
        )


class ActionNotFoundError(ActionError):
    """Requested action is not registered in the ActionRegistry."""

    def __init__(self, name: str, available: Optional[list[str]] = None) -> None:
        self.name = name
        self.available = available or []
        super().__init__(
            f"Action '{name}' is not registered. Available actions: {self.available}"
        )


class RegistryFrozenError(ActionError):
    """register() was called after the registry was frozen at startup."""


@dataclass(frozen=True)
class FieldError:
    """One rejected parameter: which field and why."""
    field: str
    reason: str

    def __str__(self) -> str:
        return self.reason


class ParameterValidationError(ActionError):
    """
    Raw parameters failed the action's declared schema.

    `errors` lists every problem found; `field` / `reason` mirror the first
    one for callers that only report a single cause.
    """

    def __init__(self, errors: list[FieldError], action: str = "") -> None:
        if not errors:
            raise ValueError("ParameterValidationError requires at least one FieldError")
        self.errors = list(errors)
        self.action = action
        self.field = errors[0].field
        self.reason = errors[0].reason
        super().__init__("; ".join(e.reason for e in self.errors))

    @property
    def fields(self) -> list[str]:
        return [e.field for e in self.errors]


# ─────────────────────────────────────────────────────────────────────────────
# Reasoning layer
# ─────────────────────────────────────────────────────────────────────────────

class ReasoningError(CopilotError):
    """Base exception for all reasoning backend errors."""

    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ReasoningConnectionError(ReasoningError):
    """Provider unreachable, 5xx, or authentication failed."""


class ReasoningTimeoutError(ReasoningError):
    """A backend call exceeded its hard timeout."""


class ReasoningRateLimitError(ReasoningError):
    """Provider rate limit hit — retry with exponential backoff."""

    def __init__(self, message: str, provider: str = "", retry_after: Optional[float] = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class ReasoningInvalidRequestError(ReasoningError):
    """Bad request — invalid parameters, context overflow, unsupported feature."""


class ReasoningUnavailableError(ReasoningError):
    """Retries exhausted (or a permanent failure) — the backend cannot answer now."""

    def __init__(self, message: str, attempts: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


# ─────────────────────────────────────────────────────────────────────────────
# Conversation store
# ─────────────────────────────────────────────────────────────────────────────

class StoreError(CopilotError):
    """A conversation store operation (read or write) failed."""


class ConversationNotFoundError(StoreError):
    """The conversation does not exist or has expired."""

    def __init__(self, conversation_id: str) -> None:
        self.conversation_id = conversation_id
        super().__init__(f"Conversation '{conversation_id}' not found")


# ─────────────────────────────────────────────────────────────────────────────
# Domain backend
# ─────────────────────────────────────────────────────────────────────────────

class DomainError(CopilotError):
    """Base for errors raised by the supply-chain domain backend."""


class DomainNotFoundError(DomainError):
    """Referenced node / link does not exist."""


class DomainConflictError(DomainError):
    """Operation violates a domain constraint (duplicate link, self-link, ...)."""


class DomainUnavailableError(DomainError):
    """The domain service could not be reached."""


# ─────────────────────────────────────────────────────────────────────────────
# Orchestration
# ─────────────────────────────────────────────────────────────────────────────

class OrchestrationError(CopilotError):
    """Base for session orchestrator errors."""


class InvalidTransitionError(OrchestrationError):
    """The state machine was asked to make an illegal transition."""

    def __init__(self, current: str, target: str) -> None:
        self.current = current
        self.target = target
        super().__init__(f"Illegal transition {current} -> {target}")


class PlanTooLongError(OrchestrationError):
    """A multi-step message encodes more steps than the configured maximum."""

    def __init__(self, steps: int, max_steps: int) -> None:
        self.steps = steps
        self.max_steps = max_steps
        super().__init__(
            f"That request has {steps} steps; I can handle at most {max_steps} at a time."
        )


# ─────────────────────────────────────────────────────────────────────────────
# Gateway / transport
# ─────────────────────────────────────────────────────────────────────────────

class GatewayError(CopilotError):
    """Base for connection / wire protocol errors."""


class ProtocolError(GatewayError):
    """Inbound frame is not valid JSON or does not match the wire shape."""


class ConnectionGoneError(GatewayError):
    """send() targeted a connection that is unknown or already closed."""

    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        super().__init__(f"Connection '{connection_id}' is gone")


class DuplicateConnectionError(GatewayError):
    """on_connect() was called twice for the same connection id."""


class StreamCancelledError(GatewayError):
    """The response stream was cancelled before the end-of-stream marker."""

    def __init__(self, partial: str = "", sequence: int = 0) -> None:
        self.partial = partial
        self.sequence = sequence
        super().__init__(f"Stream cancelled after {sequence} fragment(s)")


# ─────────────────────────────────────────────────────────────────────────────
# Convenience: all public names
# ─────────────────────────────────────────────────────────────────────────────

__all__ = [
    "CopilotError",
    # Action
    "ActionError",
    "DuplicateActionError",
    "ActionNotFoundError",
    "RegistryFrozenError",
    "FieldError",
    "ParameterValidationError",
    # Reasoning
    "ReasoningError",
    "ReasoningConnectionError",
    "ReasoningTimeoutError",
    "ReasoningRateLimitError",
    "ReasoningInvalidRequestError",
    "ReasoningUnavailableError",
    # Store
    "StoreError",
    "ConversationNotFoundError",
    # Domain
    "DomainError",
    "DomainNotFoundError",
    "DomainConflictError",
    "DomainUnavailableError",
    # Orchestration
    "OrchestrationError",
    "InvalidTransitionError",
    "PlanTooLongError",
    # Gateway
    "GatewayError",
    "ProtocolError",
    "ConnectionGoneError",
    "DuplicateConnectionError",
    "StreamCancelledError",
]
