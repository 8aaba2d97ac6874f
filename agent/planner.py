"""
agent/planner.py — Multi-Step Planner

Splits one user message into an ordered list of sub-requests.

Recognised cues (case-insensitive):
  - numbered lists: "1. add a supplier 2. add a warehouse" (inline or one
    per line, "1." or "1)"); at least two items are required
  - "and then", "after that", ", then", "; then"

A message with no cue is a single-step plan. Splitting is purely lexical;
each fragment is classified on its own by the intent resolver later.

Usage:
    planner = MultiStepPlanner()
    for step in planner.plan("Add a supplier in Tokyo and then connect it to warehouse-1"):
        print(step.index, step.text)
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from observability.logger import get_logger

log = get_logger(__name__)

# "1." / "2)" at the start of the text, a line, or after whitespace.
_NUMBERED_RE = re.compile(r"(?:^|(?<=\s))(\d{1,2})[.)]\s+", re.MULTILINE)

_SEQUENCE_RE = re.compile(
    r"\s*(?:\band\s+then\b|\bafter\s+that\b|[,;]\s*then\b)\s*,?\s*",
    re.IGNORECASE,
)

_STRIP_CHARS = " \t\r\n,;.:-"


@dataclass(frozen=True)
class SubRequest:
    index: int      # 1-based
    text: str
    total: int

    @property
    def is_last(self) -> bool:
        return self.index == self.total


class MultiStepPlanner:

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    def plan(self, message: str) -> list[SubRequest]:
        """Always returns at least one SubRequest."""
        text = message.strip()
        fragments = self._split(text) if self.enabled else []
        if len(fragments) < 2:
            fragments = [text.strip(_STRIP_CHARS) or text]

        total = len(fragments)
        steps = [SubRequest(index=i + 1, text=f, total=total) for i, f in enumerate(fragments)]
        if total > 1:
            log.info("planner.multi_step", steps=total)
        return steps

    def is_multi_step(self, message: str) -> bool:
        return self.enabled and len(self._split(message.strip())) > 1

    def _split(self, text: str) -> list[str]:
        numbered = _split_numbered(text)
        if len(numbered) >= 2:
            return numbered
        return _clean(_SEQUENCE_RE.split(text))


def _split_numbered(text: str) -> list[str]:
    markers = list(_NUMBERED_RE.finditer(text))
    if len(markers) < 2:
        return []
    # Numbering must start at 1 and count up, otherwise "add 2. units" would split.
    numbers = [int(m.group(1)) for m in markers]
    if numbers != list(range(1, len(numbers) + 1)):
        return []
    parts = []
    for i, marker in enumerate(markers):
        end = markers[i + 1].start() if i + 1 < len(markers) else len(text)
        parts.append(text[marker.end():end])
    return _clean(parts)


def _clean(parts: list[str]) -> list[str]:
    cleaned = []
    for part in parts:
        part = part.strip(_STRIP_CHARS)
        if part:
            cleaned.append(part)
    return cleaned
