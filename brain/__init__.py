"""
brain — Reasoning backends (intent classification + response generation)
"""

from brain.backend import (
    LLMReasoningBackend,
    ReasoningBackend,
    create_reasoning_backend,
    extract_json_object,
    parse_classification,
)
from brain.types import Classification, Provider, ReasoningOptions, TokenUsage, UNKNOWN_INTENT

__all__ = [
    "Classification",
    "LLMReasoningBackend",
    "Provider",
    "ReasoningBackend",
    "ReasoningOptions",
    "TokenUsage",
    "UNKNOWN_INTENT",
    "create_reasoning_backend",
    "extract_json_object",
    "parse_classification",
]
