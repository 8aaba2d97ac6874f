"""
observability/trace.py — Correlation ids for copilot requests

A TraceContext attaches `correlation_id` (one per inbound message) and an
optional `step_id` (one per plan step) to every structured log line in
scope, using structlog's contextvars integration.

Usage (orchestrator):
    from observability.trace import TraceContext

    ctx = TraceContext.for_request()
    ctx.bind()

    for step in plan:
        ctx.new_step(step.index).bind_step()
        log.info("orchestrator.step.start")
        # → {"event": ..., "correlation_id": "req_a1b2c3d4", "step_id": "stp_1", ...}

    ctx.clear()

The correlation id is the only identifier that is ever shown to users
(inside ErrorResponse); everything else stays in the logs.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field

import structlog.contextvars as _scv


def _short_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}"


def new_correlation_id() -> str:
    return _short_id("req")


@dataclass
class TraceContext:
    correlation_id: str = field(default_factory=new_correlation_id)
    _step_id: str | None = field(default=None, repr=False)

    # ─────────────────────────────────────────────
    # Factory
    # ─────────────────────────────────────────────

    @classmethod
    def for_request(cls, correlation_id: str | None = None) -> "TraceContext":
        return cls(correlation_id=correlation_id or new_correlation_id())

    # ─────────────────────────────────────────────
    # Step handling
    # ─────────────────────────────────────────────

    def new_step(self, index: int) -> "TraceContext":
        """Mutates in-place and returns self so callers can chain."""
        self._step_id = f"stp_{index}"
        return self

    @property
    def step_id(self) -> str | None:
        return self._step_id

    # ─────────────────────────────────────────────
    # Binding
    # ─────────────────────────────────────────────

    def bind(self) -> None:
        # Module reference so patch("structlog.contextvars.bind_contextvars") intercepts
        if self._step_id is not None:
            _scv.bind_contextvars(correlation_id=self.correlation_id, step_id=self._step_id)
        else:
            _scv.bind_contextvars(correlation_id=self.correlation_id)

    def bind_step(self) -> None:
        if self._step_id is not None:
            _scv.bind_contextvars(step_id=self._step_id)

    def clear_step(self) -> None:
        self._step_id = None
        _scv.unbind_contextvars("step_id")

    def clear(self) -> None:
        self._step_id = None
        _scv.unbind_contextvars("correlation_id", "step_id")

    def as_dict(self) -> dict:
        data = {"correlation_id": self.correlation_id}
        if self._step_id is not None:
            data["step_id"] = self._step_id
        return data
