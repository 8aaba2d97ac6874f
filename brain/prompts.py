"""
brain/prompts.py — Prompt builders for classification and responses
"""

from __future__ import annotations

import json
from typing import Iterable, Sequence

from actions.types import ActionDefinition
from conversation.models import Message

CLASSIFY_SYSTEM_PROMPT = """\
You are the intent classifier of a supply-chain design copilot.
Map the user's message to exactly one action from the catalogue, or to "unknown".

Reply with a single JSON object and nothing else:
{"intent": "<action name or unknown>",
 "confidence": <number between 0 and 1>,
 "params": {<parameter name>: <value>, ...},
 "clarification_question": "<question, only if something essential is missing>"}

Rules:
- Only use parameter names listed for the chosen action.
- Leave a parameter out rather than guessing its value.
- Use "unknown" with low confidence when the message matches no action.
"""

RESPONSE_SYSTEM_PROMPT = """\
You are a helpful supply-chain design copilot. Summarize what was just done
for the user in two or three friendly sentences. Mention node IDs exactly as
given. Do not invent results that are not listed."""


def render_catalogue(definitions: Iterable[ActionDefinition]) -> str:
    lines = []
    for definition in definitions:
        entry = definition.to_catalogue_entry()
        lines.append(f"- {entry['name']} ({entry['category']}): {entry['description']}")
        for param_line in entry["parameters"]:
            lines.append(f"    {param_line}")
        for example in entry["examples"]:
            lines.append(f'    e.g. "{example}"')
    return "\n".join(lines)


def render_history(history: Sequence[Message]) -> str:
    if not history:
        return "(no earlier messages)"
    return "\n".join(f"{m.role.value}: {m.content}" for m in history)


def build_classification_prompt(
    text: str,
    history: Sequence[Message],
    definitions: Iterable[ActionDefinition],
) -> str:
    return (
        f"Actions:\n{render_catalogue(definitions)}\n\n"
        f"Recent conversation:\n{render_history(history)}\n\n"
        f"User message:\n{json.dumps(text)}"
    )


def build_response_prompt(user_text: str, step_lines: Sequence[str]) -> str:
    results = "\n".join(step_lines) if step_lines else "(nothing was executed)"
    return f"User asked: {user_text}\n\nResults:\n{results}\n\nResponse:"
