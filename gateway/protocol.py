"""
gateway/protocol.py — Gateway WebSocket Message Protocol

Typed message schema for client↔server communication.

Client → Server:
    {"action": "connect" | "message" | "disconnect",
     "connectionId": "...", "message": "...", "context": {...}}

Server → Client:
    {"type": "message" | "error" | "complete", "content": "...", "metadata": {...}}

A streamed response is zero or more `message` frames carrying
metadata.sequence (0, 1, 2, ...) followed by exactly one `complete` frame.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Sequence

from exceptions import ProtocolError

if TYPE_CHECKING:
    from agent.responses import ErrorResponse


# ─────────────────────────────────────────────────────────────────────────────
# Message types
# ─────────────────────────────────────────────────────────────────────────────

class InboundAction(str, Enum):
    CONNECT    = "connect"
    MESSAGE    = "message"
    DISCONNECT = "disconnect"


class OutboundType(str, Enum):
    MESSAGE  = "message"
    ERROR    = "error"
    COMPLETE = "complete"


# ─────────────────────────────────────────────────────────────────────────────
# Inbound
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class InboundMessage:
    action: InboundAction
    connection_id: str
    message: Optional[str] = None
    context: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_json(cls, raw: str | bytes, default_connection_id: Optional[str] = None) -> "InboundMessage":
        """
        Parse one client frame. Raises ProtocolError on anything malformed.

        default_connection_id fills in connectionId when the client leaves
        it out; the server always knows which socket a frame arrived on.
        """
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError) as e:
            raise ProtocolError(f"Frame is not valid JSON: {e.__class__.__name__}") from e
        if not isinstance(data, dict):
            raise ProtocolError("Frame must be a JSON object")

        try:
            action = InboundAction(data.get("action"))
        except ValueError:
            raise ProtocolError(
                f"Unknown action {data.get('action')!r}; expected one of "
                f"{[a.value for a in InboundAction]}"
            ) from None

        connection_id = data.get("connectionId") or default_connection_id
        if not isinstance(connection_id, str) or not connection_id:
            raise ProtocolError("Frame is missing connectionId")

        message = data.get("message")
        if message is not None and not isinstance(message, str):
            raise ProtocolError("message must be a string")
        if action is InboundAction.MESSAGE and message is None:
            raise ProtocolError("A 'message' frame must carry a message")

        context = data.get("context") or {}
        if not isinstance(context, dict):
            raise ProtocolError("context must be an object")

        return cls(action=action, connection_id=connection_id, message=message, context=context)

    def to_json(self) -> str:
        d: dict[str, Any] = {"action": self.action.value, "connectionId": self.connection_id}
        if self.message is not None:
            d["message"] = self.message
        if self.context:
            d["context"] = self.context
        return json.dumps(d)


# ─────────────────────────────────────────────────────────────────────────────
# Outbound
# ─────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class OutboundMessage:
    type: str
    content: str
    metadata: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        """Dict form, dropping None fields at every level of metadata."""
        d = {k: v for k, v in asdict(self).items() if v is not None}
        if "metadata" in d:
            d["metadata"] = {k: v for k, v in d["metadata"].items() if v is not None}
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_json(cls, raw: str) -> "OutboundMessage":
        d = json.loads(raw)
        return cls(type=d.get("type", "error"), content=d.get("content", ""), metadata=d.get("metadata"))


# ─────────────────────────────────────────────────────────────────────────────
# Factory helpers — Server → Client messages
# ─────────────────────────────────────────────────────────────────────────────

def make_fragment(content: str, sequence: int) -> OutboundMessage:
    """One streamed fragment of an assistant response."""
    return OutboundMessage(
        type=OutboundType.MESSAGE.value,
        content=content,
        metadata={"sequence": sequence},
    )


def make_notice(content: str) -> OutboundMessage:
    """An out-of-band status line (e.g. a progress notice) with no sequence."""
    return OutboundMessage(type=OutboundType.MESSAGE.value, content=content)


def make_complete(
    content: str,
    *,
    intent: Optional[str] = None,
    confidence: Optional[float] = None,
    execution_time_ms: Optional[float] = None,
    suggestions: Sequence[str] = (),
) -> OutboundMessage:
    """The terminal frame of a response; carries the full text."""
    return OutboundMessage(
        type=OutboundType.COMPLETE.value,
        content=content,
        metadata={
            "intent": intent,
            "confidence": confidence,
            "executionTimeMs": round(execution_time_ms) if execution_time_ms is not None else None,
            "suggestions": list(suggestions) if suggestions else None,
        },
    )


def make_error_frame(error: "ErrorResponse") -> OutboundMessage:
    meta = error.to_dict()
    meta.pop("message", None)
    return OutboundMessage(type=OutboundType.ERROR.value, content=error.message, metadata=meta)
