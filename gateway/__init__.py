"""
gateway/ — WebSocket transport for the copilot

The server terminates client connections; the ConnectionManager maps each
connection to a user and conversation and hands messages to the
orchestrator; ResponseStream delivers generated replies fragment by fragment.
"""

from gateway.connections import ConnectionManager, ConnectionRecord
from gateway.protocol import InboundAction, InboundMessage, OutboundMessage, OutboundType
from gateway.streaming import ResponseStream

__all__ = [
    "ConnectionManager",
    "ConnectionRecord",
    "InboundAction",
    "InboundMessage",
    "OutboundMessage",
    "OutboundType",
    "ResponseStream",
]
