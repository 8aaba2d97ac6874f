"""
gateway/connections.py — Connection Manager

Owns the mapping connectionId → {userId, conversation}. The transport layer
(gateway/server.py) reports connect / message / disconnect events here;
the manager turns messages into orchestrator turns.

Rules:
  - one ConnectionRecord per connection id; registering twice is an error
  - a connection is attached to the user's most recent live conversation,
    or a fresh one; the conversation outlives the connection
  - on disconnect the record is marked closed and any response still
    streaming for it is cancelled at once, closing the generation source.
    Actions already running finish; their results are discarded (logged as
    connection.result_discarded). Once the last turn drains, the
    orchestrator forgets the conversation's lock
  - `context.newSession: true` on a connect or message frame (or
    ?newSession=true on the socket URL) starts a fresh conversation
    instead of resuming the latest one
  - each inbound message becomes one task; turns for the same conversation
    still run one at a time because the orchestrator holds a lock per
    conversation, acquired in arrival order

Usage:
    manager = ConnectionManager(orchestrator, store)
    await manager.on_connect("conn_1", "user-1", send=websocket_send)
    await manager.on_message("conn_1", '{"action": "message", "connectionId": "conn_1", "message": "help"}')
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from conversation.store import ConversationStore
from exceptions import ConnectionGoneError, DuplicateConnectionError, StoreError
from gateway.protocol import InboundAction, InboundMessage, OutboundMessage, make_notice
from observability.logger import get_logger

if TYPE_CHECKING:
    from agent.orchestrator import SessionOrchestrator

log = get_logger(__name__)

SendFn = Callable[[str], Awaitable[Any]]

NEW_SESSION_NOTICE = "Started a new conversation."


@dataclass
class ConnectionRecord:
    connection_id: str
    user_id: str
    conversation_id: str
    send: SendFn = field(repr=False)
    connected_at: float = field(default_factory=time.time)
    last_activity_at: float = field(default_factory=time.time)
    closed: bool = False
    tasks: set = field(default_factory=set, repr=False)
    streams: set = field(default_factory=set, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {
            "connectionId": self.connection_id,
            "userId": self.user_id,
            "conversationId": self.conversation_id,
            "connectedAt": self.connected_at,
            "lastActivityAt": self.last_activity_at,
            "inFlight": len(self.tasks),
        }


class ConnectionManager:

    def __init__(
        self,
        orchestrator: "SessionOrchestrator",
        store: ConversationStore,
        clock: Callable[[], float] = time.time,
    ):
        self._orchestrator = orchestrator
        self._store = store
        self._clock = clock
        self._connections: dict[str, ConnectionRecord] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle events
    # ─────────────────────────────────────────────────────────────────────────

    async def on_connect(
        self,
        connection_id: str,
        user_id: str,
        send: SendFn,
        new_session: bool = False,
    ) -> ConnectionRecord:
        if connection_id in self._connections:
            raise DuplicateConnectionError(f"Connection '{connection_id}' is already registered")

        conv = None if new_session else await self._store.latest_for_user(user_id)
        if conv is None:
            conv = await self._store.create_conversation(user_id, connection_id=connection_id)
            resumed = False
        else:
            await self._store.attach_connection(conv.id, connection_id)
            resumed = True

        now = self._clock()
        record = ConnectionRecord(
            connection_id=connection_id,
            user_id=user_id,
            conversation_id=conv.id,
            send=send,
            connected_at=now,
            last_activity_at=now,
        )
        self._connections[connection_id] = record
        log.info(
            "connection.opened",
            connection_id=connection_id,
            user_id=user_id,
            conversation_id=conv.id,
            resumed=resumed,
        )
        return record

    async def on_disconnect(self, connection_id: str) -> bool:
        record = self._connections.pop(connection_id, None)
        if record is None:
            return False
        record.closed = True
        for stream in list(record.streams):
            await stream.cancel()
        try:
            await self._store.attach_connection(record.conversation_id, None)
        except StoreError as e:
            # The conversation may have expired; the disconnect itself still succeeds.
            log.warning("connection.detach_failed", connection_id=connection_id,
                        error_type=type(e).__name__)
        log.info(
            "connection.closed",
            connection_id=connection_id,
            user_id=record.user_id,
            in_flight=len(record.tasks),
        )
        if not record.tasks:
            self._orchestrator.forget_conversation(record.conversation_id)
        return True

    async def on_message(
        self, connection_id: str, payload: str | bytes | InboundMessage
    ) -> Optional[asyncio.Task]:
        """
        Handle one inbound frame. Returns the turn task for `message` frames.

        Raises ConnectionGoneError for an unknown connection and ProtocolError
        for a malformed frame; the server answers both with an error frame.
        """
        record = self._connections.get(connection_id)
        if record is None or record.closed:
            raise ConnectionGoneError(connection_id)

        inbound = (
            payload if isinstance(payload, InboundMessage)
            else InboundMessage.from_json(payload, default_connection_id=connection_id)
        )
        record.last_activity_at = self._clock()

        if inbound.action is InboundAction.DISCONNECT:
            await self.on_disconnect(connection_id)
            return None
        if wants_new_session(inbound.context):
            await self.start_new_conversation(connection_id)
            if inbound.action is InboundAction.CONNECT or not (inbound.message or "").strip():
                await self.send(connection_id, make_notice(NEW_SESSION_NOTICE))
                return None
        if inbound.action is InboundAction.CONNECT:
            log.debug("connection.already_connected", connection_id=connection_id)
            return None

        conversation_id = await self._ensure_conversation(record)
        task = asyncio.create_task(
            self._orchestrator.handle_message(
                conversation_id,
                record.user_id,
                inbound.message or "",
                sink=lambda message: self.send(connection_id, message),
                streams=record.streams,
            ),
            name=f"turn:{connection_id}",
        )
        record.tasks.add(task)
        task.add_done_callback(lambda t: self._turn_done(record, t))
        return task

    async def start_new_conversation(self, connection_id: str) -> str:
        """Detach the connection from its conversation and attach a fresh one."""
        record = self._connections.get(connection_id)
        if record is None or record.closed:
            raise ConnectionGoneError(connection_id)
        old = record.conversation_id
        try:
            await self._store.attach_connection(old, None)
        except StoreError as e:
            log.warning("connection.detach_failed", connection_id=connection_id,
                        error_type=type(e).__name__)
        conv = await self._store.create_conversation(record.user_id, connection_id=connection_id)
        record.conversation_id = conv.id
        if not record.tasks:
            self._orchestrator.forget_conversation(old)
        log.info("connection.new_session", connection_id=connection_id, old=old, new=conv.id)
        return conv.id

    async def _ensure_conversation(self, record: ConnectionRecord) -> str:
        """Start a fresh conversation if the attached one has expired."""
        if await self._store.get_conversation(record.conversation_id) is not None:
            return record.conversation_id
        conv = await self._store.create_conversation(record.user_id, connection_id=record.connection_id)
        log.info("connection.conversation_renewed", connection_id=record.connection_id,
                 old=record.conversation_id, new=conv.id)
        record.conversation_id = conv.id
        return conv.id

    def _turn_done(self, record: ConnectionRecord, task: asyncio.Task) -> None:
        record.tasks.discard(task)
        if record.closed and not record.tasks:
            self._orchestrator.forget_conversation(record.conversation_id)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("connection.turn_crashed", connection_id=record.connection_id,
                      error_type=type(exc).__name__, exc_info=exc)
        elif record.closed:
            log.info("connection.result_discarded", connection_id=record.connection_id,
                     conversation_id=record.conversation_id)

    # ─────────────────────────────────────────────────────────────────────────
    # Outbound
    # ─────────────────────────────────────────────────────────────────────────

    async def send(self, connection_id: str, payload: OutboundMessage | dict | str) -> None:
        record = self._connections.get(connection_id)
        if record is None or record.closed:
            raise ConnectionGoneError(connection_id)

        if isinstance(payload, OutboundMessage):
            text = payload.to_json()
        elif isinstance(payload, dict):
            text = OutboundMessage(
                type=payload.get("type", "message"),
                content=payload.get("content", ""),
                metadata=payload.get("metadata"),
            ).to_json()
        else:
            text = payload

        try:
            await record.send(text)
        except ConnectionGoneError:
            record.closed = True
            raise

    # ─────────────────────────────────────────────────────────────────────────
    # Introspection / shutdown
    # ─────────────────────────────────────────────────────────────────────────

    def get(self, connection_id: str) -> Optional[ConnectionRecord]:
        return self._connections.get(connection_id)

    @property
    def count(self) -> int:
        return len(self._connections)

    def list_connections(self) -> list[dict[str, Any]]:
        return [r.to_dict() for r in self._connections.values()]

    async def join(self, connection_id: Optional[str] = None) -> None:
        """Wait for in-flight turns (one connection, or all)."""
        records = (
            [self._connections[connection_id]] if connection_id in self._connections
            else list(self._connections.values()) if connection_id is None
            else []
        )
        tasks = [t for r in records for t in r.tasks]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def close_all(self) -> None:
        for connection_id in list(self._connections):
            await self.on_disconnect(connection_id)


def wants_new_session(context: dict[str, Any]) -> bool:
    value = context.get("newSession")
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return value is True
