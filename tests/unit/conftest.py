"""
tests/unit/conftest.py — Shared fakes for the unit tests

  - ScriptedReasoningBackend: regex-driven classify(), canned generate(),
    call counters for "no backend call was made" assertions
  - FrameCollector: an async sink that records outbound frames and can
    simulate a connection that drops after N frames
"""

from __future__ import annotations

import re
from typing import Callable, Optional, Sequence

import pytest

from brain.backend import ReasoningBackend
from brain.types import Classification, TokenUsage
from exceptions import ConnectionGoneError, ReasoningConnectionError

Rule = tuple[re.Pattern, Callable[[re.Match], Classification]]


def _add_node(m: re.Match) -> Classification:
    params = {"location": m.group(2).strip()}
    if m.group(3):
        params["capacity"] = int(m.group(3))
    return Classification(
        intent=f"add-{m.group(1).lower()}",
        confidence=0.92,
        params=params,
        usage=TokenUsage(input_tokens=40, output_tokens=12),
    )


DEFAULT_RULES: list[Rule] = [
    (
        re.compile(
            r"^add an? (supplier|manufacturer|warehouse|distributor|retailer) in "
            r"([A-Za-z ]+?)(?: with capacity (\d+))?$",
            re.IGNORECASE,
        ),
        _add_node,
    ),
    (
        re.compile(r"^connect (\S+) to (\S+)$", re.IGNORECASE),
        lambda m: Classification(
            intent="connect-nodes",
            confidence=0.9,
            params={"sourceNodeId": m.group(1), "targetNodeId": m.group(2)},
        ),
    ),
    (
        re.compile(r"^run a simulation$", re.IGNORECASE),
        lambda m: Classification(intent="run-simulation", confidence=0.88),
    ),
    (
        re.compile(r"^(show me my network|summary)$", re.IGNORECASE),
        lambda m: Classification(intent="get-network-summary", confidence=0.95),
    ),
    (
        re.compile(r"^help$", re.IGNORECASE),
        lambda m: Classification(intent="help", confidence=0.99),
    ),
]


class ScriptedReasoningBackend(ReasoningBackend):
    """
    classify() walks the rules in order; no match means intent "unknown"
    at confidence 0.1. generate() streams `fragments`, or raises a
    connection error when fragments is None so callers fall back to the
    templated response.
    """

    def __init__(
        self,
        rules: Optional[Sequence[Rule]] = None,
        fragments: Optional[Sequence[str]] = None,
        classify_error: Optional[Exception] = None,
        extra_rules: Sequence[Rule] = (),
    ):
        self.rules = list(extra_rules) + list(rules if rules is not None else DEFAULT_RULES)
        self.fragments = fragments
        self.classify_error = classify_error
        self.classify_calls = 0
        self.generate_calls = 0
        self.classified: list[str] = []
        self.histories: list[list] = []

    async def classify(self, text, history):
        self.classify_calls += 1
        self.classified.append(text)
        self.histories.append(list(history))
        if self.classify_error is not None:
            raise self.classify_error
        for pattern, build in self.rules:
            m = pattern.search(text.strip())
            if m:
                return build(m)
        return Classification(intent="unknown", confidence=0.1)

    async def generate(self, prompt, system=None):
        self.generate_calls += 1
        if self.fragments is None:
            raise ReasoningConnectionError("generation disabled in tests")
        for fragment in self.fragments:
            yield fragment


class FrameCollector:
    """Async sink. With drop_after=N the (N+1)th send raises ConnectionGoneError."""

    def __init__(self, drop_after: Optional[int] = None):
        self.frames = []
        self.drop_after = drop_after

    async def __call__(self, message) -> None:
        if self.drop_after is not None and len(self.frames) >= self.drop_after:
            raise ConnectionGoneError("conn_test")
        self.frames.append(message)

    @property
    def types(self) -> list[str]:
        return [f.type for f in self.frames]

    def of_type(self, kind: str) -> list:
        return [f for f in self.frames if f.type == kind]


@pytest.fixture
def scripted_backend():
    """Factory fixture: scripted_backend(fragments=[...], rules=[...])."""
    return ScriptedReasoningBackend


@pytest.fixture
def collector():
    return FrameCollector()


@pytest.fixture
def collector_factory():
    return FrameCollector
