"""
conversation/references.py — Pronoun resolution against recent entities

"Add a supplier in Tokyo, then connect it to warehouse-1" only works if
"it" becomes the id created by the first step. ReferenceResolver scans the
history (newest first) for entity ids like `supplier-3` or `sim-1a2b3c` and
substitutes the most recent one for standalone pronouns.

Resolution is purely textual and conservative: if no entity is known, or
the pronoun is part of a larger phrase ("it is", "that's"), the text is
left as-is and the reasoning backend sees the original wording.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Iterable

from conversation.models import Message

_ENTITY_RE = re.compile(
    r"\b(?:supplier|manufacturer|warehouse|distributor|retailer)-\d+\b|\bsim-[0-9a-f]{6}\b",
    re.IGNORECASE,
)
_SINGULAR = ("it", "that", "this")
_PLURAL = ("them", "those", "these")

# Standalone pronoun: followed by a preposition, punctuation or end of text.
# "run this simulation" and "that is" stay untouched.
_PRONOUN_RE = re.compile(
    r"\b(it|that|this|them|those|these)\b"
    r"(?=\s+(?:to|with|from|and|in|into|on|at|for|as|by)\b|\s*[,.;:!?]|\s*$)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ResolvedText:
    text: str
    original: str
    substitutions: dict[str, str] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.text != self.original


def extract_entities(texts: Iterable[str]) -> list[str]:
    """Entity ids in order of last mention, most recent first, de-duplicated."""
    seen: list[str] = []
    for text in texts:
        for match in reversed(_ENTITY_RE.findall(text)):
            entity = match.lower()
            if entity not in seen:
                seen.append(entity)
    return seen


class ReferenceResolver:

    def resolve(
        self,
        text: str,
        history: list[Message],
        recent_results: Iterable[str] = (),
    ) -> ResolvedText:
        """
        Replace pronouns in text.

        recent_results are step summaries from earlier in the same message;
        they are more recent than anything in history.
        """
        sources = list(reversed(list(recent_results))) + [m.content for m in reversed(history)]
        entities = extract_entities(sources)
        if not entities:
            return ResolvedText(text=text, original=text)

        singular = entities[0]
        plural = ", ".join(entities[:2]) if len(entities) > 1 else entities[0]
        substitutions: dict[str, str] = {}

        def _swap(match: re.Match) -> str:
            word = match.group(1).lower()
            replacement = singular if word in _SINGULAR else plural
            substitutions[match.group(1)] = replacement
            return replacement

        resolved = _PRONOUN_RE.sub(_swap, text)
        return ResolvedText(text=resolved, original=text, substitutions=substitutions)
