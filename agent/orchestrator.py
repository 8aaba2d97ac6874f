"""
agent/orchestrator.py — Session Orchestrator

The heart of the copilot. Drives one user message through:

    IDLE → RECEIVED → RATE_LIMITED                       (terminal for the message)
                    → CLASSIFYING → CLARIFYING           (terminal, awaits next turn)
                                  → VALIDATING → EXECUTING → (next step: CLASSIFYING)
                                                           → RESPONDING → COMPLETE
    any state → ERRORED                                  (terminal, sanitized error)

For each message the orchestrator:
    1. Validates the request (non-empty, bounded length)
    2. Takes the conversation's lock — one writer per conversation
    3. Appends the user message to the store
    4. Checks the rate limiter: message budget, then the estimated token
       cost against the daily budget (a deny costs no reasoning call)
    5. Plans, then for each step: resolve references → classify →
       validate params → execute. Stops at the first failure.
    6. Streams a generated response (templated fallback if generation fails)
    7. Appends the assistant message, records tokens and timing
    8. Schedules background summarization when the context grows too large

Multi-step plans are not transactional: steps that already succeeded are
never undone. The response says exactly which steps completed.

Usage:
    orc = SessionOrchestrator.from_settings(settings, registry=registry, ...)
    outcome = await orc.handle_message(conversation_id, user_id, "add a supplier in Shanghai", sink)
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from actions.registry import ActionRegistry
from actions.types import ActionContext, ExecutionResult
from actions.validator import ParameterValidator
from agent.intent_resolver import Intent, IntentResolver
from agent.planner import MultiStepPlanner, SubRequest
from agent.responses import (
    FAILURE_SUGGESTIONS,
    TOKEN_BUDGET_MESSAGE,
    ErrorKind,
    ErrorResponse,
    StepOutcome,
    business_failure,
    invalid_params_message,
    normalize_error,
    rate_limited,
    step_lines,
    suggestions_for,
    summarize_steps,
    with_completed_steps,
)
from brain.backend import ReasoningBackend
from brain.prompts import build_response_prompt
from conversation.context import ContextManager, estimate_tokens
from conversation.models import Message
from conversation.references import ReferenceResolver
from conversation.store import ConversationStore
from domain.backend import DomainBackend
from exceptions import (
    ConnectionGoneError,
    DomainUnavailableError,
    InvalidTransitionError,
    ParameterValidationError,
    PlanTooLongError,
    ReasoningError,
    StreamCancelledError,
)
from gateway.protocol import (
    OutboundMessage,
    make_complete,
    make_error_frame,
    make_fragment,
    make_notice,
)
from gateway.streaming import ResponseStream
from observability.logger import bind_conversation, clear_context, get_logger
from observability.trace import TraceContext
from ratelimit.limiter import RateLimiter

log = get_logger(__name__)

Sink = Callable[[OutboundMessage], Awaitable[Any]]

PROGRESS_NOTICE = "Still working on it..."
ACTION_TIMEOUT_MESSAGE = "The operation took too long and was stopped."
ACTION_UNAVAILABLE_MESSAGE = "The supply chain service is unavailable right now."
ACTION_CRASHED_MESSAGE = "The operation failed unexpectedly."
INVALID_STEP_MESSAGE = "That request could not be carried out."


# ─────────────────────────────────────────────────────────────────────────────
# State machine
# ─────────────────────────────────────────────────────────────────────────────

class SessionState(str, Enum):
    IDLE         = "idle"
    RECEIVED     = "received"
    RATE_LIMITED = "rate_limited"
    CLASSIFYING  = "classifying"
    CLARIFYING   = "clarifying"
    VALIDATING   = "validating"
    EXECUTING    = "executing"
    RESPONDING   = "responding"
    COMPLETE     = "complete"
    ERRORED      = "errored"


_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.IDLE:         frozenset({SessionState.RECEIVED}),
    SessionState.RECEIVED:     frozenset({SessionState.RATE_LIMITED, SessionState.CLASSIFYING}),
    SessionState.CLASSIFYING:  frozenset({SessionState.CLARIFYING, SessionState.VALIDATING}),
    SessionState.VALIDATING:   frozenset({SessionState.EXECUTING, SessionState.RESPONDING}),
    SessionState.EXECUTING:    frozenset({SessionState.CLASSIFYING, SessionState.RESPONDING}),
    SessionState.RESPONDING:   frozenset({SessionState.COMPLETE}),
    SessionState.RATE_LIMITED: frozenset(),
    SessionState.CLARIFYING:   frozenset(),
    SessionState.COMPLETE:     frozenset(),
    SessionState.ERRORED:      frozenset(),
}

TERMINAL_STATES = frozenset(s for s, nxt in _TRANSITIONS.items() if not nxt)


class SessionStateMachine:
    """Per-message state tracker. Illegal transitions are programming errors."""

    def __init__(self, conversation_id: str = ""):
        self.conversation_id = conversation_id
        self.state = SessionState.IDLE
        self.history: list[SessionState] = [SessionState.IDLE]

    def transition(self, target: SessionState) -> None:
        allowed = target is SessionState.ERRORED and self.state is not SessionState.ERRORED
        if not allowed and target not in _TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state.value, target.value)
        log.debug(
            "orchestrator.transition",
            conversation_id=self.conversation_id,
            source=self.state.value,
            target=target.value,
        )
        self.state = target
        self.history.append(target)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


# ─────────────────────────────────────────────────────────────────────────────
# Outcome
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class TurnOutcome:
    final_state: SessionState
    correlation_id: str
    intent: Optional[str] = None
    confidence: Optional[float] = None
    steps: list[StepOutcome] = field(default_factory=list)
    response_text: str = ""
    error: Optional[ErrorResponse] = None
    execution_time_ms: float = 0.0
    tokens_used: int = 0
    delivered: bool = True

    @property
    def succeeded(self) -> bool:
        return self.final_state is SessionState.COMPLETE and self.error is None


class _Turn:
    """Mutable bookkeeping for one message; never escapes handle_message()."""

    def __init__(self, conversation_id: str, user_id: str, text: str, sink: Sink,
                 trace: TraceContext, streams: Optional[set] = None):
        self.conversation_id = conversation_id
        self.user_id = user_id
        self.text = text
        self.sink = sink
        self.trace = trace
        self.machine = SessionStateMachine(conversation_id)
        self.started = time.monotonic()
        self.steps: list[StepOutcome] = []
        self.intent: Optional[Intent] = None
        self.tokens = 0
        self.connection_gone = False
        self.streams = streams
        self.notice: Optional[asyncio.Task] = None

    @property
    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started) * 1000


# ─────────────────────────────────────────────────────────────────────────────
# SessionOrchestrator
# ─────────────────────────────────────────────────────────────────────────────

class SessionOrchestrator:
    """
    Coordinates classify → validate → execute → respond for every message.

    Inject all dependencies via the constructor; use from_settings() when
    wiring up the application.
    """

    def __init__(
        self,
        registry: ActionRegistry,
        resolver: IntentResolver,
        store: ConversationStore,
        context_manager: ContextManager,
        rate_limiter: RateLimiter,
        domain_backend: DomainBackend,
        *,
        reasoning_backend: Optional[ReasoningBackend] = None,
        validator: Optional[ParameterValidator] = None,
        planner: Optional[MultiStepPlanner] = None,
        reference_resolver: Optional[ReferenceResolver] = None,
        max_steps: int = 5,
        max_message_chars: int = 2000,
        history_window: int = 5,
        action_timeout_seconds: float = 30.0,
        generation_timeout_seconds: float = 30.0,
        progress_notice_seconds: float = 10.0,
        estimated_tokens_per_message: int = 1000,
    ):
        self._registry = registry
        self._resolver = resolver
        self._store = store
        self._context = context_manager
        self._limiter = rate_limiter
        self._domain = domain_backend
        self._reasoning = reasoning_backend
        self._validator = validator or ParameterValidator()
        self._planner = planner or MultiStepPlanner()
        self._references = reference_resolver or ReferenceResolver()
        self.max_steps = max_steps
        self.max_message_chars = max_message_chars
        self.history_window = history_window
        self.action_timeout = action_timeout_seconds
        self.generation_timeout = generation_timeout_seconds
        self.progress_notice_seconds = progress_notice_seconds
        self.estimated_tokens_per_message = estimated_tokens_per_message

        self._conversation_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._background: set[asyncio.Task] = set()

    def lock_for(self, conversation_id: str) -> asyncio.Lock:
        return self._conversation_locks.setdefault(conversation_id, asyncio.Lock())

    @contextlib.asynccontextmanager
    async def _conversation_lock(self, conversation_id: str):
        """Hold the conversation's lock, counting holders and waiters so idle locks can be dropped."""
        lock = self.lock_for(conversation_id)
        self._lock_users[conversation_id] = self._lock_users.get(conversation_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            remaining = self._lock_users[conversation_id] - 1
            if remaining:
                self._lock_users[conversation_id] = remaining
            else:
                del self._lock_users[conversation_id]

    # ─────────────────────────────────────────────────────────────────────────
    # Public: one message
    # ─────────────────────────────────────────────────────────────────────────

    async def handle_message(
        self,
        conversation_id: str,
        user_id: str,
        text: str,
        sink: Sink,
        correlation_id: Optional[str] = None,
        streams: Optional[set] = None,
    ) -> TurnOutcome:
        """
        Run one message to a terminal state. Frames go to `sink`.

        `streams`, when given, holds the ResponseStream while it is running so
        the connection layer can cancel generation on disconnect.
        """
        trace = TraceContext.for_request(correlation_id)
        trace.bind()
        bind_conversation(conversation_id, user_id)
        turn = _Turn(conversation_id, user_id, text, sink, trace, streams)

        try:
            problem = self._check_request(text)
            if problem is not None:
                turn.machine.transition(SessionState.ERRORED)
                error = ErrorResponse.of(ErrorKind.USER_INPUT, problem, trace.correlation_id)
                await self._emit(turn, make_error_frame(error))
                log.info("orchestrator.rejected_request", reason=problem)
                return self._outcome(turn, error=error)

            async with self._conversation_lock(conversation_id):
                return await self._run_locked(turn)
        finally:
            clear_context()

    async def _run_locked(self, turn: _Turn) -> TurnOutcome:
        notice = turn.notice = asyncio.create_task(self._progress_notice(turn))
        try:
            return await self._process(turn)
        except Exception as e:
            error = normalize_error(e, turn.trace.correlation_id)
            log.error(
                "orchestrator.turn_failed",
                error_type=type(e).__name__,
                kind=error.kind.value,
                exc_info=error.kind is ErrorKind.INTERNAL,
            )
            if turn.machine.state is not SessionState.ERRORED:
                turn.machine.transition(SessionState.ERRORED)
            await self._emit(turn, make_error_frame(error))
            return self._outcome(turn, error=error)
        finally:
            notice.cancel()

    def _check_request(self, text: Any) -> Optional[str]:
        if not isinstance(text, str) or not text.strip():
            return "Please enter a message."
        if len(text) > self.max_message_chars:
            return f"Your message is too long. Please keep it under {self.max_message_chars} characters."
        return None

    # ─────────────────────────────────────────────────────────────────────────
    # The per-message algorithm (lock held)
    # ─────────────────────────────────────────────────────────────────────────

    async def _process(self, turn: _Turn) -> TurnOutcome:
        m = turn.machine
        m.transition(SessionState.RECEIVED)
        log.info("orchestrator.turn_start", user_message=turn.text[:120])

        await self._store.append_message(turn.conversation_id, Message.user(turn.text))

        status = await self._limiter.check_and_consume_message(turn.user_id)
        if not status.allowed:
            m.transition(SessionState.RATE_LIMITED)
            error = rate_limited(status.retry_after_s, turn.trace.correlation_id)
            await self._emit(turn, make_error_frame(error))
            return self._outcome(turn, error=error)

        budget = await self._limiter.check_tokens(turn.user_id, self.estimated_tokens_per_message)
        if not budget.allowed:
            m.transition(SessionState.RATE_LIMITED)
            log.info("orchestrator.token_budget_exhausted", tokens_remaining=budget.tokens_remaining)
            error = rate_limited(budget.retry_after_s, turn.trace.correlation_id, TOKEN_BUDGET_MESSAGE)
            await self._emit(turn, make_error_frame(error))
            return self._outcome(turn, error=error)

        plan = self._planner.plan(turn.text)
        if len(plan) > self.max_steps:
            raise PlanTooLongError(len(plan), self.max_steps)

        history = await self._store.get_history(turn.conversation_id)
        history = history[:-1]      # the message just appended is the request itself

        for step in plan:
            m.transition(SessionState.CLASSIFYING)
            turn.trace.new_step(step.index).bind_step()
            outcome = await self._run_step(turn, step, history)
            if outcome is None:
                # Clarification: the whole message short-circuits, even mid-plan.
                return await self._clarify(turn)
            turn.steps.append(outcome)
            if not outcome.succeeded:
                for later in plan[step.index:]:
                    turn.steps.append(StepOutcome(index=later.index, text=later.text, attempted=False))
                log.info("orchestrator.plan_stopped", failed_step=step.index, total=len(plan))
                break
        turn.trace.clear_step()

        return await self._respond(turn)

    async def _run_step(
        self, turn: _Turn, step: SubRequest, history: list[Message]
    ) -> Optional[StepOutcome]:
        """Classify, validate and execute one step. None means 'ask for clarification'."""
        m = turn.machine
        prior = [s.result.describe() for s in turn.steps if s.result is not None]
        resolved = self._references.resolve(step.text, history, prior)
        if resolved.changed:
            log.debug("orchestrator.references_resolved", substitutions=resolved.substitutions)

        intent = await self._resolver.resolve(resolved.text, history[-self.history_window:])
        turn.intent = intent
        turn.tokens += intent.tokens_used

        if intent.requires_clarification:
            m.transition(SessionState.CLARIFYING)
            return None

        m.transition(SessionState.VALIDATING)
        action = self._registry.lookup(intent.name)
        try:
            validated = self._validator.validate(action.definition, intent.params)
        except ParameterValidationError as e:
            log.info("orchestrator.invalid_params", action=intent.name, fields=e.fields)
            m.transition(SessionState.RESPONDING)
            return StepOutcome(
                index=step.index, text=step.text, intent=intent.name,
                error=invalid_params_message(e),
            )

        m.transition(SessionState.EXECUTING)
        result = await self._execute(turn, action, validated.as_dict())
        if step.is_last or not result.success:
            m.transition(SessionState.RESPONDING)
        return StepOutcome(index=step.index, text=step.text, intent=intent.name, result=result)

    async def _execute(self, turn: _Turn, action, params: dict[str, Any]) -> ExecutionResult:
        context = ActionContext(
            user_id=turn.user_id,
            conversation_id=turn.conversation_id,
            backend=self._domain,
            correlation_id=turn.trace.correlation_id,
            registry=self._registry,
        )
        t0 = time.monotonic()
        try:
            rejection = await action.validate(params, context)
            if rejection:
                result = ExecutionResult.fail(rejection, suggestions=action.definition.suggestions)
            else:
                result = await asyncio.wait_for(action.execute(params, context), self.action_timeout)
        except asyncio.TimeoutError:
            log.warning("orchestrator.action_timeout", action=action.name, timeout_s=self.action_timeout)
            result = ExecutionResult.fail(ACTION_TIMEOUT_MESSAGE, suggestions=("Try again",))
        except DomainUnavailableError as e:
            log.warning("orchestrator.domain_unavailable", action=action.name, error=str(e))
            result = ExecutionResult.fail(ACTION_UNAVAILABLE_MESSAGE, suggestions=("Try again",))
        except Exception as e:
            log.error("orchestrator.action_crashed", action=action.name,
                      error_type=type(e).__name__, exc_info=True)
            result = ExecutionResult.fail(ACTION_CRASHED_MESSAGE, suggestions=("Try again", "Ask for help"))

        log.info(
            "orchestrator.action_executed",
            action=action.name,
            success=result.success,
            duration_ms=round((time.monotonic() - t0) * 1000, 1),
        )
        return result

    # ─────────────────────────────────────────────────────────────────────────
    # Responses
    # ─────────────────────────────────────────────────────────────────────────

    async def _clarify(self, turn: _Turn) -> TurnOutcome:
        self._stop_notice(turn)
        intent = turn.intent
        question = intent.clarification_question or "Could you tell me a bit more?"
        # Steps before the unclear one already ran and are not undone.
        text = with_completed_steps(turn.steps, question)
        await self._emit(turn, make_fragment(text, 0))
        await self._emit(turn, make_complete(
            text,
            intent=intent.name,
            confidence=intent.confidence,
            execution_time_ms=turn.elapsed_ms,
            suggestions=("Ask for help",),
        ))
        await self._finish(turn, text)
        return self._outcome(turn, response_text=text)

    async def _respond(self, turn: _Turn) -> TurnOutcome:
        m = turn.machine
        if m.state is not SessionState.RESPONDING:
            m.transition(SessionState.RESPONDING)
        self._stop_notice(turn)

        text, sequence = await self._generate(turn)
        if not text:
            text = summarize_steps(turn.steps)
            await self._emit(turn, make_fragment(text, sequence))

        intent = turn.intent
        await self._emit(turn, make_complete(
            text,
            intent=intent.name if intent else None,
            confidence=intent.confidence if intent else None,
            execution_time_ms=turn.elapsed_ms,
            suggestions=suggestions_for(turn.steps),
        ))
        await self._finish(turn, text)
        m.transition(SessionState.COMPLETE)

        failed = next((s for s in turn.steps if s.attempted and not s.succeeded), None)
        error = None
        if failed is not None and failed.result is not None:
            error = business_failure(failed.result, turn.trace.correlation_id)
        elif failed is not None:
            error = ErrorResponse.of(
                ErrorKind.USER_INPUT, failed.error or INVALID_STEP_MESSAGE,
                turn.trace.correlation_id, suggestions=FAILURE_SUGGESTIONS,
            )
        return self._outcome(turn, response_text=text, error=error)

    async def _generate(self, turn: _Turn) -> tuple[str, int]:
        """
        Stream a generated response. Returns (text, next_sequence).
        Empty text means 'use the templated summary instead'.
        """
        if self._reasoning is None or turn.connection_gone:
            return "", 0

        prompt = build_response_prompt(turn.text, step_lines(turn.steps))
        stream = ResponseStream(self._reasoning.generate(prompt), emit=lambda msg: self._send(turn, msg))
        if turn.streams is not None:
            turn.streams.add(stream)
        try:
            text = await asyncio.wait_for(stream.run(), self.generation_timeout)
        except StreamCancelledError as e:
            turn.connection_gone = True
            log.info("connection.result_discarded", stage="streaming", chars=len(e.partial))
            return e.partial or summarize_steps(turn.steps), stream.sequence
        except (ReasoningError, asyncio.TimeoutError) as e:
            log.warning("orchestrator.generation_fallback",
                        error_type=type(e).__name__, fragments=stream.sequence)
            return "", stream.sequence
        finally:
            if turn.streams is not None:
                turn.streams.discard(stream)

        turn.tokens += estimate_tokens(prompt) + estimate_tokens(text)
        if not text.strip():
            log.warning("orchestrator.generation_empty")
            return "", stream.sequence
        return text, stream.sequence

    async def _finish(self, turn: _Turn, text: str) -> None:
        """Persist the reply, account for it, and schedule summarization."""
        cid = turn.conversation_id
        await self._store.append_message(cid, Message.assistant(text))
        await self._store.update_metadata(cid, turn.tokens, turn.elapsed_ms)
        await self._limiter.record_token_usage(turn.user_id, turn.tokens)

        history = await self._store.get_history(cid)
        if self._context.needs_summarization(history):
            self._schedule_summarization(cid)

        log.info(
            "orchestrator.turn_complete",
            state=turn.machine.state.value,
            steps=len(turn.steps),
            tokens=turn.tokens,
            duration_ms=round(turn.elapsed_ms, 1),
        )

    def _outcome(
        self,
        turn: _Turn,
        response_text: str = "",
        error: Optional[ErrorResponse] = None,
    ) -> TurnOutcome:
        intent = turn.intent
        return TurnOutcome(
            final_state=turn.machine.state,
            correlation_id=turn.trace.correlation_id,
            intent=intent.name if intent else None,
            confidence=intent.confidence if intent else None,
            steps=list(turn.steps),
            response_text=response_text,
            error=error,
            execution_time_ms=turn.elapsed_ms,
            tokens_used=turn.tokens,
            delivered=not turn.connection_gone,
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Emission
    # ─────────────────────────────────────────────────────────────────────────

    async def _send(self, turn: _Turn, message: OutboundMessage) -> None:
        """Raw send; ConnectionGoneError propagates (the stream handles it)."""
        await turn.sink(message)

    async def _emit(self, turn: _Turn, message: OutboundMessage) -> None:
        """Send, but a vanished connection only discards the frame."""
        if turn.connection_gone:
            return
        try:
            await turn.sink(message)
        except ConnectionGoneError:
            turn.connection_gone = True
            log.info("connection.result_discarded", stage=turn.machine.state.value)

    async def _progress_notice(self, turn: _Turn) -> None:
        await asyncio.sleep(self.progress_notice_seconds)
        # No unsequenced frames once fragments may be flowing.
        if not turn.machine.is_terminal and turn.machine.state is not SessionState.RESPONDING:
            log.info("orchestrator.progress_notice", elapsed_ms=round(turn.elapsed_ms))
            await self._emit(turn, make_notice(PROGRESS_NOTICE))

    def _stop_notice(self, turn: _Turn) -> None:
        if turn.notice is not None and turn.notice is not asyncio.current_task():
            turn.notice.cancel()

    # ─────────────────────────────────────────────────────────────────────────
    # Background summarization
    # ─────────────────────────────────────────────────────────────────────────

    def _schedule_summarization(self, conversation_id: str) -> None:
        task = asyncio.create_task(self._summarize(conversation_id))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _summarize(self, conversation_id: str) -> None:
        async with self._conversation_lock(conversation_id):
            try:
                await self._context.summarize(conversation_id)
            except Exception as e:
                log.error("orchestrator.summarization_failed", conversation_id=conversation_id,
                          error_type=type(e).__name__, exc_info=True)

    async def drain(self) -> None:
        """Wait for outstanding background summarization tasks."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    def forget_conversation(self, conversation_id: str) -> bool:
        """Drop the conversation's lock unless a turn holds or awaits it."""
        if self._lock_users.get(conversation_id):
            return False
        return self._conversation_locks.pop(conversation_id, None) is not None

    def forget_idle(self) -> int:
        """Drop every lock nobody holds or awaits. Returns the number dropped."""
        idle = [cid for cid in self._conversation_locks if not self._lock_users.get(cid)]
        for cid in idle:
            del self._conversation_locks[cid]
        return len(idle)

    @property
    def tracked_conversations(self) -> int:
        return len(self._conversation_locks)

    # ─────────────────────────────────────────────────────────────────────────
    # Factory
    # ─────────────────────────────────────────────────────────────────────────

    @classmethod
    def from_settings(
        cls,
        settings,
        *,
        registry: ActionRegistry,
        resolver: IntentResolver,
        store: ConversationStore,
        context_manager: ContextManager,
        rate_limiter: RateLimiter,
        domain_backend: DomainBackend,
        reasoning_backend: Optional[ReasoningBackend] = None,
    ) -> "SessionOrchestrator":
        """Create an orchestrator from the copilot Settings object."""
        o = settings.orchestrator
        return cls(
            registry=registry,
            resolver=resolver,
            store=store,
            context_manager=context_manager,
            rate_limiter=rate_limiter,
            domain_backend=domain_backend,
            reasoning_backend=reasoning_backend,
            planner=MultiStepPlanner(enabled=o.enable_multi_step),
            max_steps=o.max_steps,
            max_message_chars=o.max_message_chars,
            history_window=o.history_window,
            action_timeout_seconds=o.action_timeout_seconds,
            generation_timeout_seconds=o.generation_timeout_seconds,
            progress_notice_seconds=o.progress_notice_seconds,
            estimated_tokens_per_message=settings.rate_limit.estimated_tokens_per_message,
        )
