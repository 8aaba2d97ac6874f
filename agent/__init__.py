"""
agent/ — Copilot Orchestration Core

Public API:
    from agent import SessionOrchestrator, IntentResolver, MultiStepPlanner

Component overview:
    IntentResolver       Reasoning call + confidence floor + retry/backoff
    MultiStepPlanner     Splits "do X and then Y" into ordered sub-requests
    SessionOrchestrator  Per-message state machine: classify → validate → execute → respond
    responses            ErrorResponse, error normalisation, templated summaries
"""

from agent.intent_resolver import Intent, IntentResolver, RetryPolicy
from agent.orchestrator import SessionOrchestrator, SessionState, TurnOutcome
from agent.planner import MultiStepPlanner, SubRequest
from agent.responses import ErrorKind, ErrorResponse, StepOutcome, normalize_error

__all__ = [
    "ErrorKind",
    "ErrorResponse",
    "Intent",
    "IntentResolver",
    "MultiStepPlanner",
    "RetryPolicy",
    "SessionOrchestrator",
    "SessionState",
    "StepOutcome",
    "SubRequest",
    "TurnOutcome",
    "normalize_error",
]
