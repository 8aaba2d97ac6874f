"""
actions/validator.py — Parameter Validator

Checks a raw parameter bag (as extracted by the reasoning backend) against
an action's declared ParameterSpec list.

Rules:
  - Fails closed: any missing required field, type mismatch, or predicate
    rejection rejects the whole call. All problems are collected and raised
    together in one ParameterValidationError.
  - Unknown extra fields are ignored (logged at debug) and never copied into
    the validated result.
  - Optional parameters with a declared default receive it.
  - Pure: the input mapping is never mutated; calling twice with the same
    input yields the same verdict.

Common predicates (non_empty_string, positive_number, one_of, ...) live at
the bottom of this module for action authors.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

from actions.types import ActionDefinition, ParameterSpec, ParamType
from exceptions import FieldError, ParameterValidationError
from observability.logger import get_logger

log = get_logger(__name__)

_TRUE_STRINGS = {"true", "yes", "y", "1"}
_FALSE_STRINGS = {"false", "no", "n", "0"}


class _Reject(Exception):
    """Internal signal: coercion failed with a reason."""


# ─────────────────────────────────────────────────────────────────────────────
# Result
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ValidatedParams(Mapping):
    """Immutable, schema-conforming parameters for one action call."""
    action: str
    params: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.params[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self.params)

    def __len__(self) -> int:
        return len(self.params)

    def as_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.params)


# ─────────────────────────────────────────────────────────────────────────────
# Validator
# ─────────────────────────────────────────────────────────────────────────────

class ParameterValidator:
    """Stateless schema checker. One instance can be shared process-wide."""

    def validate(self, definition: ActionDefinition, raw_params: Any) -> ValidatedParams:
        """
        Return ValidatedParams or raise ParameterValidationError listing
        every rejected field.
        """
        if raw_params is None:
            raw_params = {}
        if not isinstance(raw_params, Mapping):
            raise ParameterValidationError(
                [FieldError("<params>", "Parameters must be an object")],
                action=definition.name,
            )

        errors: list[FieldError] = []
        values: dict[str, Any] = {}

        for spec in definition.parameters:
            raw = raw_params.get(spec.name)
            if raw is None:
                if spec.required:
                    errors.append(FieldError(
                        spec.name, f"Required parameter '{spec.name}' is missing"
                    ))
                elif spec.has_default:
                    values[spec.name] = copy.deepcopy(spec.default)
                continue

            try:
                value = _coerce(spec, raw)
            except _Reject as e:
                errors.append(FieldError(spec.name, str(e)))
                continue

            reason = _run_predicate(spec, value)
            if reason:
                errors.append(FieldError(spec.name, reason))
                continue
            values[spec.name] = value

        extras = sorted(set(raw_params) - {p.name for p in definition.parameters})
        if extras:
            log.debug("validator.extra_fields_ignored", action=definition.name, fields=extras)

        if errors:
            raise ParameterValidationError(errors, action=definition.name)
        return ValidatedParams(action=definition.name, params=values)

    def missing_required(self, definition: ActionDefinition, raw_params: Any) -> list[str]:
        """Names of required parameters absent from raw_params."""
        if not isinstance(raw_params, Mapping):
            return definition.required_names
        return [
            p.name for p in definition.parameters
            if p.required and raw_params.get(p.name) is None
        ]


def apply_defaults(definition: ActionDefinition, params: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of params with declared defaults filled in for absent optionals."""
    result = dict(params)
    for spec in definition.parameters:
        if result.get(spec.name) is None and not spec.required and spec.has_default:
            result[spec.name] = copy.deepcopy(spec.default)
    return result


# ─────────────────────────────────────────────────────────────────────────────
# Coercion
# ─────────────────────────────────────────────────────────────────────────────

def _type_error(spec: ParameterSpec, value: Any) -> _Reject:
    return _Reject(
        f"Parameter '{spec.name}' must be of type {spec.type.value}, "
        f"got {_type_name(value)}"
    )


def _type_name(value: Any) -> str:
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, Mapping):
        return "object"
    return type(value).__name__


def _coerce(spec: ParameterSpec, value: Any) -> Any:
    t = spec.type

    if t == ParamType.STRING:
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        raise _type_error(spec, value)

    if t == ParamType.NUMBER:
        if isinstance(value, bool):
            raise _type_error(spec, value)
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                raise _type_error(spec, value) from None
        if not isinstance(value, (int, float)):
            raise _type_error(spec, value)
        if math.isnan(value) or math.isinf(value):
            raise _Reject(f"Parameter '{spec.name}' must be a finite number")
        return value

    if t == ParamType.INTEGER:
        if isinstance(value, bool):
            raise _type_error(spec, value)
        if isinstance(value, str):
            try:
                value = float(value.strip())
            except ValueError:
                raise _type_error(spec, value) from None
        if isinstance(value, float):
            if not value.is_integer():
                raise _Reject(f"Parameter '{spec.name}' must be a whole number")
            return int(value)
        if isinstance(value, int):
            return value
        raise _type_error(spec, value)

    if t == ParamType.BOOLEAN:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in _TRUE_STRINGS:
                return True
            if lowered in _FALSE_STRINGS:
                return False
        raise _type_error(spec, value)

    if t == ParamType.OBJECT:
        if isinstance(value, Mapping):
            return copy.deepcopy(dict(value))
        raise _type_error(spec, value)

    if t == ParamType.ARRAY:
        if isinstance(value, (list, tuple)):
            return copy.deepcopy(list(value))
        raise _type_error(spec, value)

    raise _Reject(f"Parameter '{spec.name}' has unsupported type {t!r}")


def _run_predicate(spec: ParameterSpec, value: Any) -> str | None:
    if spec.predicate is None:
        return None
    try:
        passed = spec.predicate(value)
    except Exception as e:  # predicates are author code; a crash is a rejection
        log.debug("validator.predicate_raised", param=spec.name, error=str(e))
        return f"Parameter '{spec.name}' failed validation: {e}"
    if not passed:
        return f"Parameter '{spec.name}' failed validation"
    return None


# ─────────────────────────────────────────────────────────────────────────────
# Common predicates
# ─────────────────────────────────────────────────────────────────────────────

Predicate = Callable[[Any], bool]


def non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


def positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def number_in_range(lo: float, hi: float) -> Predicate:
    def _check(value: Any) -> bool:
        return isinstance(value, (int, float)) and lo <= value <= hi
    return _check


def matches_pattern(pattern: str) -> Predicate:
    compiled = re.compile(pattern)

    def _check(value: Any) -> bool:
        return isinstance(value, str) and compiled.search(value) is not None
    return _check


def one_of(*allowed: Any) -> Predicate:
    choices = frozenset(allowed)

    def _check(value: Any) -> bool:
        return value in choices
    return _check


def max_length(n: int) -> Predicate:
    def _check(value: Any) -> bool:
        return hasattr(value, "__len__") and len(value) <= n
    return _check


def all_of(*predicates: Predicate) -> Predicate:
    def _check(value: Any) -> bool:
        return all(p(value) for p in predicates)
    return _check
