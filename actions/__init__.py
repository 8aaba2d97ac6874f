"""
actions/__init__.py — Copilot Action System

Public interface for the action layer: named, schema-validated operations
the orchestrator dispatches to once an intent is resolved.

Usage:
    from actions import ActionRegistry, ParameterValidator
    from actions.builtin import register_builtin_actions

    registry = register_builtin_actions(ActionRegistry())
    registry.freeze()

    action = registry.lookup("add-supplier")
    params = ParameterValidator().validate(action.definition, {"location": "Tokyo"})
    result = await action.execute(params.as_dict(), context)
"""

from actions.base import ActionBase
from actions.registry import ActionRegistry
from actions.types import (
    ActionCategory,
    ActionContext,
    ActionDefinition,
    ExecutionResult,
    ParameterSpec,
    ParamType,
)
from actions.validator import ParameterValidator, ValidatedParams, apply_defaults

__all__ = [
    "ActionBase",
    "ActionRegistry",
    "ActionCategory",
    "ActionContext",
    "ActionDefinition",
    "ExecutionResult",
    "ParameterSpec",
    "ParamType",
    "ParameterValidator",
    "ValidatedParams",
    "apply_defaults",
]
