"""
tests/unit/test_orchestrator.py — Session Orchestrator Unit Tests

Drives whole turns through SessionOrchestrator with a scripted reasoning
backend, the in-memory store and the in-memory domain backend.

Test groups:
  - SessionStateMachine: legal / illegal transitions, ERRORED from anywhere
  - End-to-end scenarios: single action, gibberish, partial multi-step plan,
    summarization after the 11th message, rate-limit and token-budget deny
  - Request validation: empty, too long, too many steps
  - Failure handling: reasoning outage, invalid params, action timeout,
    crashing action, sanitized error text
  - Streaming: sequence numbers, complete frame last, connection loss
  - Single writer: concurrent messages on one conversation never interleave;
    idle conversation locks can be forgotten
"""

from __future__ import annotations

import asyncio
import json
import re
from types import SimpleNamespace

import pytest

from actions import ActionRegistry
from actions.base import ActionBase
from actions.builtin import register_builtin_actions
from actions.types import ActionCategory, ActionDefinition, ExecutionResult
from agent.intent_resolver import UNKNOWN_INTENT_QUESTION, IntentResolver, RetryPolicy
from agent.orchestrator import (
    ACTION_CRASHED_MESSAGE,
    ACTION_TIMEOUT_MESSAGE,
    PROGRESS_NOTICE,
    SessionOrchestrator,
    SessionState,
    SessionStateMachine,
)
from agent.responses import DEPENDENCY_MESSAGE, TOKEN_BUDGET_MESSAGE, ErrorKind
from brain.types import Classification
from config.settings import Settings
from conversation.context import ContextManager
from conversation.models import Role
from conversation.store import InMemoryConversationStore
from domain.backend import InMemoryDomainBackend
from exceptions import InvalidTransitionError, ReasoningConnectionError
from ratelimit.limiter import RateLimiter


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

class _SlowReportAction(ActionBase):
    definition = ActionDefinition(
        name="slow-report",
        category=ActionCategory.ANALYZE,
        description="Build a slow report",
    )

    def __init__(self, delay: float = 0.1):
        self.delay = delay

    async def execute(self, params, context):
        await asyncio.sleep(self.delay)
        return ExecutionResult.ok(summary="Report ready.")


class _CrashingAction(ActionBase):
    definition = ActionDefinition(
        name="crash-report",
        category=ActionCategory.ANALYZE,
        description="Always crashes",
    )

    async def execute(self, params, context):
        raise RuntimeError("boom in /srv/copilot/actions/report.py at http://10.0.0.7:8080/x")


_EXTRA_RULES = [
    (re.compile(r"^slow report$"), lambda m: Classification(intent="slow-report", confidence=0.9)),
    (re.compile(r"^crash report$"), lambda m: Classification(intent="crash-report", confidence=0.9)),
    (re.compile(r"^add a supplier$"), lambda m: Classification(intent="add-supplier", confidence=0.9)),
]


async def _build(backend, *, limiter=None, extra_actions=(), context_kwargs=None, **orc_kwargs):
    registry = register_builtin_actions(ActionRegistry())
    for action in extra_actions:
        registry.register(action)
    registry.freeze()

    sleeps: list[float] = []

    async def _record_sleep(delay: float) -> None:
        sleeps.append(delay)

    store = InMemoryConversationStore()
    domain = InMemoryDomainBackend()
    resolver = IntentResolver(backend, registry, policy=RetryPolicy(), sleep=_record_sleep)
    context = ContextManager(store, None, **(context_kwargs or {}))
    limiter = limiter or RateLimiter()
    orc = SessionOrchestrator(
        registry, resolver, store, context, limiter, domain,
        reasoning_backend=backend,
        **orc_kwargs,
    )
    conv = await store.create_conversation("user-1")
    return SimpleNamespace(
        orc=orc, store=store, domain=domain, limiter=limiter,
        conv_id=conv.id, backend=backend, sleeps=sleeps,
    )


def _fragments(frames) -> list:
    return [f for f in frames if f.type == "message" and f.metadata and "sequence" in f.metadata]


# ─────────────────────────────────────────────────────────────────────────────
# State machine
# ─────────────────────────────────────────────────────────────────────────────

class TestSessionStateMachine:

    def test_happy_path_transitions(self):
        m = SessionStateMachine("conv_1")
        for target in (
            SessionState.RECEIVED,
            SessionState.CLASSIFYING,
            SessionState.VALIDATING,
            SessionState.EXECUTING,
            SessionState.RESPONDING,
            SessionState.COMPLETE,
        ):
            m.transition(target)
        assert m.state is SessionState.COMPLETE
        assert m.is_terminal
        assert m.history[0] is SessionState.IDLE

    def test_executing_can_loop_back_to_classifying(self):
        m = SessionStateMachine()
        for target in (SessionState.RECEIVED, SessionState.CLASSIFYING,
                       SessionState.VALIDATING, SessionState.EXECUTING,
                       SessionState.CLASSIFYING):
            m.transition(target)
        assert m.state is SessionState.CLASSIFYING

    def test_illegal_transition_raises(self):
        m = SessionStateMachine()
        with pytest.raises(InvalidTransitionError):
            m.transition(SessionState.EXECUTING)

    def test_errored_reachable_from_any_live_state(self):
        m = SessionStateMachine()
        m.transition(SessionState.RECEIVED)
        m.transition(SessionState.ERRORED)
        assert m.is_terminal

    def test_no_transition_out_of_terminal_state(self):
        m = SessionStateMachine()
        m.transition(SessionState.RECEIVED)
        m.transition(SessionState.RATE_LIMITED)
        with pytest.raises(InvalidTransitionError):
            m.transition(SessionState.CLASSIFYING)

    def test_errored_twice_is_illegal(self):
        m = SessionStateMachine()
        m.transition(SessionState.ERRORED)
        with pytest.raises(InvalidTransitionError):
            m.transition(SessionState.ERRORED)


# ─────────────────────────────────────────────────────────────────────────────
# End-to-end scenarios
# ─────────────────────────────────────────────────────────────────────────────

class TestScenarios:

    @pytest.mark.asyncio
    async def test_add_supplier_in_shanghai(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Shanghai", collector)

        assert outcome.final_state is SessionState.COMPLETE
        assert outcome.succeeded
        assert outcome.intent == "add-supplier"
        assert outcome.confidence >= 0.5
        assert "supplier-1" in outcome.response_text
        assert "Shanghai" in outcome.response_text
        assert len(await env.domain.list_nodes()) == 1

        assert collector.types == ["message", "complete"]
        complete = collector.frames[-1]
        assert complete.metadata["intent"] == "add-supplier"
        assert complete.metadata["suggestions"]
        assert complete.content == outcome.response_text

    @pytest.mark.asyncio
    async def test_gibberish_asks_for_clarification(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "asdkjf qwoeiru", collector)

        assert outcome.final_state is SessionState.CLARIFYING
        assert outcome.response_text == UNKNOWN_INTENT_QUESTION
        assert outcome.steps == []
        assert await env.domain.list_nodes() == []
        assert collector.types == ["message", "complete"]

    @pytest.mark.asyncio
    async def test_multi_step_stops_at_first_failure(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        outcome = await env.orc.handle_message(
            env.conv_id, "user-1",
            "add a supplier in Tokyo, then connect it to warehouse-1, then run a simulation",
            collector,
        )

        assert outcome.final_state is SessionState.COMPLETE
        first, second, third = outcome.steps
        assert first.succeeded
        assert not second.succeeded and second.attempted
        assert not third.attempted

        # "it" resolved to the supplier created by step 1; step 3 never classified
        assert env.backend.classified == ["add a supplier in Tokyo", "connect supplier-1 to warehouse-1"]

        text = outcome.response_text
        assert "supplier-1" in text
        assert "step 2 failed" in text
        assert "warehouse-1" in text
        assert "Not attempted: step 3 (run a simulation)" in text

        # Business failure: reported in the response, not as an error frame
        assert "error" not in collector.types
        assert outcome.error.kind is ErrorKind.BUSINESS
        # Step 1 is not rolled back
        assert [n.id for n in await env.domain.list_nodes()] == ["supplier-1"]

    @pytest.mark.asyncio
    async def test_eleventh_message_triggers_summarization(self, scripted_backend, collector):
        env = await _build(
            scripted_backend(),
            context_kwargs={"summarization_threshold": 10, "keep_recent": 5},
        )
        cities = ["Rotterdam", "Hamburg", "Antwerp", "Lisbon", "Madrid", "Paris"]
        for city in cities:
            await env.orc.handle_message(env.conv_id, "user-1", f"add a warehouse in {city}", collector)
        await env.orc.drain()

        history = await env.store.get_history(env.conv_id)
        summary, explicit = history[0], history[1:]
        assert summary.is_summary
        assert "Rotterdam" in summary.content
        assert len(explicit) == 5
        assert [m.role for m in explicit] == [
            Role.ASSISTANT, Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT,
        ]
        assert explicit[1].content == "add a warehouse in Madrid"
        assert explicit[3].content == "add a warehouse in Paris"

        conv = await env.store.get_conversation(env.conv_id)
        assert conv.summarized_count == 7
        assert conv.message_count == 12

    @pytest.mark.asyncio
    async def test_rate_limited_message_makes_no_backend_call(self, scripted_backend, collector_factory):
        env = await _build(scripted_backend(), limiter=RateLimiter(messages_per_minute=2, burst_allowance=0))
        for city in ("Shanghai", "Tokyo"):
            await env.orc.handle_message(env.conv_id, "user-1", f"add a supplier in {city}", collector_factory())
        assert env.backend.classify_calls == 2

        sink = collector_factory()
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Paris", sink)

        assert outcome.final_state is SessionState.RATE_LIMITED
        assert env.backend.classify_calls == 2
        assert env.backend.generate_calls == 2
        assert sink.types == ["error"]
        assert sink.frames[0].metadata["kind"] == "rate_limit"
        assert sink.frames[0].metadata["retryAfter"] >= 1
        assert sink.frames[0].content.startswith("You're sending messages too quickly")
        assert len(await env.domain.list_nodes()) == 2

    @pytest.mark.asyncio
    async def test_exhausted_token_budget_makes_no_backend_call(self, scripted_backend, collector):
        env = await _build(scripted_backend(), limiter=RateLimiter(tokens_per_day=500))
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Tokyo", collector)

        assert outcome.final_state is SessionState.RATE_LIMITED
        assert outcome.error.kind is ErrorKind.RATE_LIMIT
        assert env.backend.classify_calls == 0
        assert collector.types == ["error"]
        assert collector.frames[0].content == TOKEN_BUDGET_MESSAGE
        assert collector.frames[0].metadata["retryAfter"] >= 1
        assert await env.domain.list_nodes() == []

    @pytest.mark.asyncio
    async def test_token_estimate_is_configurable(self, scripted_backend, collector):
        env = await _build(
            scripted_backend(),
            limiter=RateLimiter(tokens_per_day=500),
            estimated_tokens_per_message=100,
        )
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Tokyo", collector)

        assert outcome.succeeded
        assert env.backend.classify_calls == 1


# ─────────────────────────────────────────────────────────────────────────────
# Request validation
# ─────────────────────────────────────────────────────────────────────────────

class TestRequestValidation:

    @pytest.mark.asyncio
    async def test_empty_message_rejected_without_consuming_budget(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "   ", collector)

        assert outcome.final_state is SessionState.ERRORED
        assert collector.types == ["error"]
        assert collector.frames[0].content == "Please enter a message."
        assert collector.frames[0].metadata["kind"] == "user_input"
        status = await env.limiter.status("user-1")
        assert status.messages_remaining == env.limiter.message_capacity
        assert env.backend.classify_calls == 0

    @pytest.mark.asyncio
    async def test_too_long_message_rejected(self, scripted_backend, collector):
        env = await _build(scripted_backend(), max_message_chars=20)
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "x" * 21, collector)

        assert outcome.final_state is SessionState.ERRORED
        assert "too long" in collector.frames[0].content
        assert await env.store.get_history(env.conv_id) == []

    @pytest.mark.asyncio
    async def test_plan_longer_than_max_steps_rejected(self, scripted_backend, collector):
        env = await _build(scripted_backend(), max_steps=2)
        outcome = await env.orc.handle_message(
            env.conv_id, "user-1",
            "add a supplier in Tokyo, then add a warehouse in Paris, then run a simulation",
            collector,
        )

        assert outcome.final_state is SessionState.ERRORED
        assert outcome.error.kind is ErrorKind.USER_INPUT
        assert "at most 2" in collector.frames[0].content
        assert env.backend.classify_calls == 0


# ─────────────────────────────────────────────────────────────────────────────
# Multi-step success and clarification
# ─────────────────────────────────────────────────────────────────────────────

class TestPlans:

    @pytest.mark.asyncio
    async def test_all_steps_succeed(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        outcome = await env.orc.handle_message(
            env.conv_id, "user-1",
            "add a supplier in Tokyo and then add a warehouse in Osaka and then "
            "connect supplier-1 to warehouse-1",
            collector,
        )

        assert outcome.succeeded
        assert len(outcome.steps) == 3
        assert all(s.succeeded for s in outcome.steps)
        assert outcome.response_text.startswith("I successfully completed all 3 steps:")
        summary = await env.domain.summary()
        assert summary.link_count == 1

    @pytest.mark.asyncio
    async def test_missing_required_param_asks_for_it(self, scripted_backend, collector):
        env = await _build(scripted_backend(extra_rules=_EXTRA_RULES))
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "add a supplier", collector)

        assert outcome.final_state is SessionState.CLARIFYING
        assert "I need to know: location" in outcome.response_text
        assert await env.domain.list_nodes() == []

    @pytest.mark.asyncio
    async def test_clarification_is_persisted_as_assistant_message(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        await env.orc.handle_message(env.conv_id, "user-1", "asdkjf qwoeiru", collector)

        history = await env.store.get_history(env.conv_id)
        assert [m.role for m in history] == [Role.USER, Role.ASSISTANT]
        assert history[1].content == UNKNOWN_INTENT_QUESTION

    @pytest.mark.asyncio
    async def test_history_passed_to_classifier_excludes_current_message(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        await env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Tokyo", collector)
        await env.orc.handle_message(env.conv_id, "user-1", "show me my network", collector)

        second_history = env.backend.histories[1]
        assert [m.content for m in second_history][0] == "add a supplier in Tokyo"
        assert all(m.content != "show me my network" for m in second_history)

    @pytest.mark.asyncio
    async def test_mid_plan_clarification_reports_completed_steps(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        outcome = await env.orc.handle_message(
            env.conv_id, "user-1", "add a supplier in Tokyo and then asdkjf qwoeiru", collector,
        )

        assert outcome.final_state is SessionState.CLARIFYING
        assert outcome.response_text.startswith("I completed 1 step(s):\n1. ")
        assert outcome.response_text.endswith(UNKNOWN_INTENT_QUESTION)
        assert "supplier-1" in outcome.response_text
        [fragment] = _fragments(collector.frames)
        [complete] = collector.of_type("complete")
        assert fragment.content == complete.content == outcome.response_text
        # The first step is not rolled back
        assert [n.id for n in await env.domain.list_nodes()] == ["supplier-1"]
        history = await env.store.get_history(env.conv_id)
        assert history[-1].content == outcome.response_text

    @pytest.mark.asyncio
    async def test_clarification_on_first_step_has_no_preamble(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        outcome = await env.orc.handle_message(
            env.conv_id, "user-1", "asdkjf qwoeiru and then add a supplier in Tokyo", collector,
        )

        assert outcome.final_state is SessionState.CLARIFYING
        assert outcome.response_text == UNKNOWN_INTENT_QUESTION
        assert await env.domain.list_nodes() == []


# ─────────────────────────────────────────────────────────────────────────────
# Failure handling
# ─────────────────────────────────────────────────────────────────────────────

class TestFailures:

    @pytest.mark.asyncio
    async def test_reasoning_outage_is_a_sanitized_dependency_error(self, scripted_backend, collector):
        backend = scripted_backend(
            classify_error=ReasoningConnectionError("connect failed: https://api.internal:443/v1")
        )
        env = await _build(backend)
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Tokyo", collector)

        assert outcome.final_state is SessionState.ERRORED
        assert backend.classify_calls == 3
        assert env.sleeps == [2.0, 4.0]
        assert collector.types == ["error"]
        frame = collector.frames[0]
        assert frame.content == DEPENDENCY_MESSAGE
        assert frame.metadata["kind"] == "dependency"
        assert frame.metadata["retryable"] is True
        assert frame.metadata["correlationId"] == outcome.correlation_id
        assert "api.internal" not in frame.to_json()

    @pytest.mark.asyncio
    async def test_invalid_params_reported_without_executing(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        outcome = await env.orc.handle_message(
            env.conv_id, "user-1", "add a supplier in Paris with capacity 0", collector
        )

        assert outcome.final_state is SessionState.COMPLETE
        assert not outcome.succeeded
        assert outcome.error.kind is ErrorKind.USER_INPUT
        assert "capacity" in outcome.response_text
        assert await env.domain.list_nodes() == []

    @pytest.mark.asyncio
    async def test_action_timeout_becomes_failed_step(self, scripted_backend, collector):
        env = await _build(
            scripted_backend(extra_rules=_EXTRA_RULES),
            extra_actions=[_SlowReportAction(delay=1.0)],
            action_timeout_seconds=0.01,
        )
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "slow report", collector)

        assert outcome.final_state is SessionState.COMPLETE
        assert outcome.steps[0].result.error == ACTION_TIMEOUT_MESSAGE
        assert ACTION_TIMEOUT_MESSAGE in outcome.response_text

    @pytest.mark.asyncio
    async def test_crashing_action_does_not_leak_internals(self, scripted_backend, collector):
        env = await _build(
            scripted_backend(extra_rules=_EXTRA_RULES),
            extra_actions=[_CrashingAction()],
        )
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "crash report", collector)

        assert outcome.final_state is SessionState.COMPLETE
        assert outcome.steps[0].result.error == ACTION_CRASHED_MESSAGE
        wire = json.dumps([f.to_dict() for f in collector.frames])
        assert "/srv/copilot" not in wire
        assert "10.0.0.7" not in wire
        assert "boom" not in wire

    @pytest.mark.asyncio
    async def test_progress_notice_for_slow_turns(self, scripted_backend, collector):
        env = await _build(
            scripted_backend(extra_rules=_EXTRA_RULES),
            extra_actions=[_SlowReportAction(delay=0.1)],
            progress_notice_seconds=0.01,
        )
        await env.orc.handle_message(env.conv_id, "user-1", "slow report", collector)

        notices = [f for f in collector.frames if f.content == PROGRESS_NOTICE]
        assert len(notices) == 1
        assert notices[0].metadata is None
        assert collector.types[-1] == "complete"

    @pytest.mark.asyncio
    async def test_progress_notice_never_lands_between_fragments(self, scripted_backend, collector):
        class _Paced(scripted_backend):
            async def generate(self, prompt, system=None):
                self.generate_calls += 1
                for fragment in ("Added ", "supplier-1 ", "in ", "Tokyo."):
                    await asyncio.sleep(0.05)
                    yield fragment

        env = await _build(_Paced(), progress_notice_seconds=0.07)
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Tokyo", collector)

        assert outcome.succeeded
        assert all(f.content != PROGRESS_NOTICE for f in collector.frames)
        assert collector.types == ["message"] * 4 + ["complete"]
        assert [f.metadata["sequence"] for f in collector.frames[:-1]] == [0, 1, 2, 3]


# ─────────────────────────────────────────────────────────────────────────────
# Streaming
# ─────────────────────────────────────────────────────────────────────────────

class TestStreaming:

    @pytest.mark.asyncio
    async def test_generated_fragments_are_sequenced(self, scripted_backend, collector):
        backend = scripted_backend(fragments=["Added ", "supplier-1 ", "in Shanghai."])
        env = await _build(backend)
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Shanghai", collector)

        fragments = _fragments(collector.frames)
        assert [f.metadata["sequence"] for f in fragments] == [0, 1, 2]
        assert collector.types[-1] == "complete"
        assert collector.frames[-1].content == "Added supplier-1 in Shanghai."
        assert outcome.response_text == "Added supplier-1 in Shanghai."
        assert outcome.tokens_used > 0

        history = await env.store.get_history(env.conv_id)
        assert history[-1].content == "Added supplier-1 in Shanghai."

    @pytest.mark.asyncio
    async def test_connection_loss_mid_stream(self, scripted_backend, collector_factory):
        backend = scripted_backend(fragments=["Added ", "supplier-1 ", "in Shanghai."])
        env = await _build(backend)
        sink = collector_factory(drop_after=1)
        outcome = await env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Shanghai", sink)

        assert not outcome.delivered
        assert sink.types == ["message"]
        # The action itself was not cancelled
        assert len(await env.domain.list_nodes()) == 1
        history = await env.store.get_history(env.conv_id)
        assert history[-1].role is Role.ASSISTANT
        assert history[-1].content == "Added "


# ─────────────────────────────────────────────────────────────────────────────
# Single writer per conversation
# ─────────────────────────────────────────────────────────────────────────────

class TestSerialization:

    @pytest.mark.asyncio
    async def test_concurrent_messages_do_not_interleave(self, scripted_backend, collector):
        class _Tracking(scripted_backend):
            active = 0
            peak = 0

            async def classify(self, text, history):
                type(self).active += 1
                type(self).peak = max(type(self).peak, type(self).active)
                await asyncio.sleep(0.01)
                type(self).active -= 1
                return await super().classify(text, history)

        env = await _build(_Tracking())
        await asyncio.gather(
            env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Tokyo", collector),
            env.orc.handle_message(env.conv_id, "user-1", "add a warehouse in Osaka", collector),
        )

        assert _Tracking.peak == 1
        history = await env.store.get_history(env.conv_id)
        assert [m.role for m in history] == [Role.USER, Role.ASSISTANT, Role.USER, Role.ASSISTANT]
        assert history[0].content == "add a supplier in Tokyo"
        assert history[2].content == "add a warehouse in Osaka"

    @pytest.mark.asyncio
    async def test_different_conversations_run_independently(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        other = await env.store.create_conversation("user-2")
        a, b = await asyncio.gather(
            env.orc.handle_message(env.conv_id, "user-1", "add a supplier in Tokyo", collector),
            env.orc.handle_message(other.id, "user-2", "add a warehouse in Osaka", collector),
        )
        assert a.succeeded and b.succeeded
        assert len(await env.store.get_history(other.id)) == 2

    @pytest.mark.asyncio
    async def test_idle_conversation_locks_are_forgotten(self, scripted_backend, collector):
        env = await _build(scripted_backend())
        other = await env.store.create_conversation("user-2")
        await env.orc.handle_message(env.conv_id, "user-1", "help", collector)
        await env.orc.handle_message(other.id, "user-2", "help", collector)
        assert env.orc.tracked_conversations == 2

        assert env.orc.forget_conversation(env.conv_id) is True
        assert env.orc.forget_conversation(env.conv_id) is False
        assert env.orc.forget_idle() == 1
        assert env.orc.tracked_conversations == 0

    @pytest.mark.asyncio
    async def test_busy_conversation_lock_is_kept(self, scripted_backend, collector):
        env = await _build(
            scripted_backend(extra_rules=_EXTRA_RULES),
            extra_actions=[_SlowReportAction(delay=0.1)],
        )
        turn = asyncio.create_task(
            env.orc.handle_message(env.conv_id, "user-1", "slow report", collector)
        )
        await asyncio.sleep(0.02)

        assert env.orc.forget_conversation(env.conv_id) is False
        assert env.orc.forget_idle() == 0
        assert env.orc.tracked_conversations == 1

        outcome = await turn
        assert outcome.succeeded
        assert env.orc.forget_idle() == 1


# ─────────────────────────────────────────────────────────────────────────────
# Factory
# ─────────────────────────────────────────────────────────────────────────────

class TestFromSettings:

    @pytest.mark.asyncio
    async def test_limits_come_from_settings(self, scripted_backend):
        settings = Settings(orchestrator={"max_steps": 3, "max_message_chars": 500})
        env = await _build(scripted_backend())
        orc = SessionOrchestrator.from_settings(
            settings,
            registry=env.orc._registry,
            resolver=env.orc._resolver,
            store=env.store,
            context_manager=env.orc._context,
            rate_limiter=env.limiter,
            domain_backend=env.domain,
        )
        assert orc.max_steps == 3
        assert orc.max_message_chars == 500
        assert orc.progress_notice_seconds == settings.orchestrator.progress_notice_seconds

    @pytest.mark.asyncio
    async def test_token_estimate_comes_from_settings(self, scripted_backend):
        settings = Settings(rate_limit={"estimated_tokens_per_message": 250})
        env = await _build(scripted_backend())
        orc = SessionOrchestrator.from_settings(
            settings,
            registry=env.orc._registry,
            resolver=env.orc._resolver,
            store=env.store,
            context_manager=env.orc._context,
            rate_limiter=env.limiter,
            domain_backend=env.domain,
        )
        assert orc.estimated_tokens_per_message == 250
