"""
actions/base.py — ActionBase Abstract Base Class

Every copilot action subclasses ActionBase and declares a ClassVar definition.

Rules for action authors:
  1. Declare `definition: ClassVar[ActionDefinition]` — static, not per-instance.
  2. Implement `async execute(params, context) -> ExecutionResult`.
  3. Domain-level failures (unknown node, self-link) are returned as
     ExecutionResult.fail() with a user-readable reason; unexpected
     exceptions may propagate and are normalised by the orchestrator.
  4. Override validate() for semantic checks beyond the parameter schema.
  5. Actions are stateless — do not store call-specific state on self.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, ClassVar, Optional

from actions.types import ActionContext, ActionDefinition, ExecutionResult


class ActionBase(ABC):
    """Uniform {validate, execute} capability pair looked up by name."""

    definition: ClassVar[ActionDefinition]

    @property
    def name(self) -> str:
        return self.definition.name

    async def validate(self, params: dict[str, Any], context: ActionContext) -> Optional[str]:
        """
        Optional semantic pre-check run after schema validation.

        Return a user-readable rejection reason, or None to proceed.
        """
        return None

    @abstractmethod
    async def execute(self, params: dict[str, Any], context: ActionContext) -> ExecutionResult:
        """Perform the action against the domain backend."""
        ...

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.definition.name!r}>"
