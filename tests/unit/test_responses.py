"""
tests/unit/test_responses.py — Error normalisation and templated summaries
"""

from __future__ import annotations

import asyncio

import pytest

from actions.types import ExecutionResult
from agent.responses import (
    CONVERSATION_EXPIRED_MESSAGE,
    DEPENDENCY_MESSAGE,
    FAILURE_SUGGESTIONS,
    INTERNAL_MESSAGE,
    SUCCESS_SUGGESTIONS,
    ErrorKind,
    StepOutcome,
    business_failure,
    normalize_error,
    rate_limited,
    sanitize_text,
    step_lines,
    summarize_steps,
    suggestions_for,
)
from exceptions import (
    ConversationNotFoundError,
    FieldError,
    ParameterValidationError,
    PlanTooLongError,
    ReasoningUnavailableError,
    StoreError,
)


class TestSanitize:

    @pytest.mark.parametrize("raw, clean", [
        ("Could not open /var/lib/copilot/conv.db", "Could not open [path]"),
        ("POST http://10.0.0.1:8080/nodes returned 500", "POST [service] returned 500"),
        ("connect to localhost:5432 refused", "connect to [service] refused"),
        ("Call to domain.http_backend.connect() failed", "Call to [internal] failed"),
        ("boom Traceback (most recent call last):\n  File \"x.py\", line 3", "boom"),
    ])
    def test_strips_internals(self, raw, clean):
        assert sanitize_text(raw) == clean

    def test_business_text_untouched(self):
        text = "Source node with ID supplier-9 not found."
        assert sanitize_text(text) == text


class TestNormalizeError:

    def test_plan_too_long_is_user_input(self):
        err = normalize_error(PlanTooLongError(7, 5), "req_1")
        assert err.kind is ErrorKind.USER_INPUT
        assert err.retryable is False
        assert "at most 5" in err.message
        assert err.correlation_id == "req_1"

    def test_invalid_params_lists_reasons(self):
        exc = ParameterValidationError([
            FieldError("capacity", "capacity must be positive"),
            FieldError("location", "location is required"),
        ])
        err = normalize_error(exc)
        assert err.kind is ErrorKind.USER_INPUT
        assert err.message == (
            "Some details in your request are invalid: "
            "capacity must be positive; location is required."
        )
        assert err.suggestions == FAILURE_SUGGESTIONS

    def test_expired_conversation(self):
        err = normalize_error(ConversationNotFoundError("conv_1"))
        assert err.message == CONVERSATION_EXPIRED_MESSAGE
        assert "conv_1" not in err.message

    @pytest.mark.parametrize("exc", [
        ReasoningUnavailableError("provider 503 at https://api.internal", attempts=3),
        StoreError("database is locked"),
        asyncio.TimeoutError(),
    ])
    def test_dependencies_get_fixed_message(self, exc):
        err = normalize_error(exc)
        assert err.kind is ErrorKind.DEPENDENCY
        assert err.retryable is True
        assert err.message == DEPENDENCY_MESSAGE

    def test_anything_else_is_internal(self):
        err = normalize_error(RuntimeError("/srv/app/secret.py exploded"))
        assert err.kind is ErrorKind.INTERNAL
        assert err.message == INTERNAL_MESSAGE
        assert "secret" not in str(err.to_dict())

    def test_to_dict_shape(self):
        data = rate_limited(12, "req_9").to_dict()
        assert data == {
            "kind": "rate_limit",
            "message": "You're sending messages too quickly. Please wait 12 seconds.",
            "retryable": True,
            "correlationId": "req_9",
            "retryAfter": 12,
        }

    def test_rate_limited_never_zero(self):
        assert rate_limited(None).retry_after_s == 1

    def test_business_failure_sanitised(self):
        err = business_failure(ExecutionResult.fail("Call to domain.store.save() failed"))
        assert err.kind is ErrorKind.BUSINESS
        assert err.message == "Call to [internal] failed"
        assert err.suggestions == FAILURE_SUGGESTIONS

    def test_business_failure_keeps_action_suggestions(self):
        result = ExecutionResult.fail("Node not found.", suggestions=["List nodes"])
        assert business_failure(result).suggestions == ("List nodes",)


# ─────────────────────────────────────────────────────────────────────────────
# Summaries
# ─────────────────────────────────────────────────────────────────────────────

def _ok(index, summary):
    return StepOutcome(index, f"step {index}", "x", ExecutionResult.ok(summary=summary))


def _failed(index, error):
    return StepOutcome(index, f"step {index}", "x", ExecutionResult.fail(error))


class TestSummaries:

    def test_nothing_attempted(self):
        assert summarize_steps([]) == "Your request was completed successfully."

    def test_single_success_uses_summary(self):
        assert summarize_steps([_ok(1, "Added supplier in Shanghai.")]) == "Added supplier in Shanghai."

    def test_single_failure(self):
        assert summarize_steps([_failed(1, "Node not found.")]) == "I encountered an issue: Node not found."

    def test_all_steps_done(self):
        text = summarize_steps([_ok(1, "A."), _ok(2, "B.")])
        assert text == "I successfully completed all 2 steps:\n1. A.\n2. B."

    def test_partial_run_names_skipped_steps(self):
        reports = [
            _ok(1, "Added supplier."),
            _failed(2, "Target node with ID warehouse-9 not found."),
            StepOutcome(3, "run a simulation", attempted=False),
        ]
        text = summarize_steps(reports)
        assert text.splitlines() == [
            "I completed 1 step(s):",
            "1. Added supplier.",
            "However, step 2 failed: Target node with ID warehouse-9 not found.",
            "Not attempted: step 3 (run a simulation).",
        ]

    def test_rejected_step_uses_error(self):
        reports = [_ok(1, "A."), StepOutcome(2, "connect it", error="target is required")]
        assert summarize_steps(reports).endswith("step 2 failed: target is required")

    def test_step_lines(self):
        reports = [_ok(1, "A."), _failed(2, "nope"), StepOutcome(3, "c", attempted=False)]
        assert step_lines(reports) == [
            "Step 1 (step 1): succeeded. A.",
            "Step 2 (step 2): failed. nope",
            "Step 3 (c): not attempted",
        ]

    def test_suggestions(self):
        assert suggestions_for([_ok(1, "A.")]) == SUCCESS_SUGGESTIONS
        assert suggestions_for([_failed(1, "x")]) == FAILURE_SUGGESTIONS
        custom = StepOutcome(1, "s", result=ExecutionResult.fail("x", suggestions=["Add a node"]))
        assert suggestions_for([custom]) == ("Add a node",)
