"""
brain/types.py — Reasoning Data Models

Shared types between the reasoning backends and the intent resolver.
Providers (OpenAI, Anthropic) map their native response shapes into these.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


class Provider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"


UNKNOWN_INTENT = "unknown"


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens


class Classification(BaseModel):
    """
    What the reasoning backend thinks the user wants.

    confidence is clamped into [0, 1] on construction so downstream
    comparisons against the confidence floor never see out-of-range values.
    """
    intent: str = UNKNOWN_INTENT
    confidence: float = 0.0
    params: dict[str, Any] = Field(default_factory=dict)
    clarification_question: Optional[str] = None
    usage: TokenUsage = Field(default_factory=TokenUsage)

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, v: Any) -> float:
        try:
            value = float(v)
        except (TypeError, ValueError):
            return 0.0
        if value != value:      # NaN
            return 0.0
        return min(1.0, max(0.0, value))

    @field_validator("intent", mode="before")
    @classmethod
    def _normalise_intent(cls, v: Any) -> str:
        if not isinstance(v, str) or not v.strip():
            return UNKNOWN_INTENT
        return v.strip().lower()

    @property
    def is_unknown(self) -> bool:
        return self.intent == UNKNOWN_INTENT

    @classmethod
    def unknown(cls, usage: Optional[TokenUsage] = None) -> "Classification":
        return cls(intent=UNKNOWN_INTENT, confidence=0.0, usage=usage or TokenUsage())


class ReasoningOptions(BaseModel):
    """Per-call generation settings, built from the `reasoning:` config section."""
    model: str = "gpt-4o-mini"
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(default=1024, ge=1)
    timeout_seconds: float = Field(default=30.0, gt=0)
