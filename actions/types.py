"""
actions/types.py — Action System Data Contracts

All dataclasses and enums shared across the action layer.

  - ActionDefinition:  static metadata every action must declare
  - ParameterSpec:     one declared parameter (ordered inside the definition)
  - ActionContext:     per-invocation collaborators handed to execute()
  - ExecutionResult:   typed result returned from every execution
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Optional

if TYPE_CHECKING:
    from domain.backend import DomainBackend


# ─────────────────────────────────────────────────────────────────────────────
# Enums
# ─────────────────────────────────────────────────────────────────────────────

class ParamType(str, Enum):
    STRING  = "string"
    NUMBER  = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    OBJECT  = "object"
    ARRAY   = "array"


class ActionCategory(str, Enum):
    BUILD     = "build"
    CONFIGURE = "configure"
    ANALYZE   = "analyze"
    SIMULATE  = "simulate"
    QUERY     = "query"


_MISSING = object()


# ─────────────────────────────────────────────────────────────────────────────
# ParameterSpec
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ParameterSpec:
    """
    One declared parameter.

    predicate is an optional callable(value) -> bool applied after type
    coercion. default is only used when the parameter is optional and absent.
    """
    name: str
    type: ParamType
    required: bool = False
    description: str = ""
    default: Any = _MISSING
    predicate: Optional[Callable[[Any], bool]] = field(default=None, compare=False)

    @property
    def has_default(self) -> bool:
        return self.default is not _MISSING

    def to_prompt_line(self) -> str:
        flag = "required" if self.required else "optional"
        return f"{self.name} ({self.type.value}, {flag}): {self.description}"


# ─────────────────────────────────────────────────────────────────────────────
# ActionDefinition — static, declared as ClassVar on every action
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ActionDefinition:
    """
    Static metadata for an action. Declared as a ClassVar on ActionBase subclasses.

    Rules:
      - name is kebab-case and globally unique in the registry.
      - parameters is an ordered tuple; the schema never changes after registration.
      - examples are fed to the reasoning backend's classification prompt.
    """
    name: str
    category: ActionCategory
    description: str
    parameters: tuple[ParameterSpec, ...] = ()
    examples: tuple[str, ...] = ()
    suggestions: tuple[str, ...] = ()

    def parameter(self, name: str) -> Optional[ParameterSpec]:
        for spec in self.parameters:
            if spec.name == name:
                return spec
        return None

    @property
    def required_names(self) -> list[str]:
        return [p.name for p in self.parameters if p.required]

    def to_catalogue_entry(self) -> dict[str, Any]:
        """Return the shape the classification prompt lists for this action."""
        return {
            "name": self.name,
            "category": self.category.value,
            "description": self.description,
            "parameters": [p.to_prompt_line() for p in self.parameters],
            "examples": list(self.examples),
        }


# ─────────────────────────────────────────────────────────────────────────────
# ActionContext — collaborators for one invocation
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ActionContext:
    user_id: str
    conversation_id: str
    backend: "DomainBackend"
    correlation_id: str = ""
    registry: Any = None      # ActionRegistry, for actions that describe capabilities


# ─────────────────────────────────────────────────────────────────────────────
# ExecutionResult — typed result from every execution
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ExecutionResult:
    """
    The outcome of one action invocation.

    Rules:
      - success=False implies error is a non-empty string.
      - success=True never carries an error.
      - summary is a one-line human description used by templated responses.
    """
    success: bool
    data: Any = None
    error: Optional[str] = None
    suggestions: tuple[str, ...] = ()
    summary: str = ""

    def __post_init__(self) -> None:
        if not self.success and not self.error:
            raise ValueError("A failed ExecutionResult must carry a non-empty error")
        if self.success and self.error:
            raise ValueError("A successful ExecutionResult must not carry an error")

    @classmethod
    def ok(
        cls,
        data: Any = None,
        summary: str = "",
        suggestions: tuple[str, ...] | list[str] = (),
    ) -> "ExecutionResult":
        return cls(success=True, data=data, summary=summary, suggestions=tuple(suggestions))

    @classmethod
    def fail(
        cls,
        error: str,
        suggestions: tuple[str, ...] | list[str] = (),
        data: Any = None,
    ) -> "ExecutionResult":
        return cls(success=False, error=error, suggestions=tuple(suggestions), data=data)

    def describe(self) -> str:
        if self.success:
            return self.summary or "Done."
        return self.error or "Unknown error"
