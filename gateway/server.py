"""
gateway/server.py — WebSocket Gateway Server

Terminates client WebSocket connections and feeds their frames to the
ConnectionManager. Uses the `websockets` library.

User identity comes from the `userId` query parameter
(ws://host:9090/?userId=alice) or, failing that, from the first `connect`
frame's context.userId. Anything else is served as "anonymous".
`?newSession=true` (or context.newSession on that first `connect` frame)
skips resuming the user's latest conversation.

Usage:
    server = GatewayServer(manager, orchestrator, host="127.0.0.1", port=9090)
    await server.start()          # starts listening
    await server.wait_closed()    # blocks until shutdown
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Optional
from urllib.parse import parse_qs, urlsplit

import websockets
from websockets.asyncio.server import ServerConnection, serve

from agent.responses import ErrorKind, ErrorResponse, normalize_error
from exceptions import ConnectionGoneError, ProtocolError
from gateway.connections import ConnectionManager, wants_new_session
from gateway.protocol import InboundAction, InboundMessage, make_error_frame
from observability.logger import get_logger
from observability.trace import new_correlation_id

if TYPE_CHECKING:
    from agent.orchestrator import SessionOrchestrator

log = get_logger(__name__)

ANONYMOUS_USER = "anonymous"
_FIRST_FRAME_TIMEOUT = 10.0


def new_connection_id() -> str:
    return f"conn_{uuid.uuid4().hex[:12]}"


def user_from_path(path: Optional[str]) -> Optional[str]:
    if not path:
        return None
    values = parse_qs(urlsplit(path).query).get("userId")
    return values[0] if values and values[0] else None


def new_session_from_path(path: Optional[str]) -> bool:
    if not path:
        return False
    values = parse_qs(urlsplit(path).query).get("newSession")
    return bool(values) and values[0].lower() in ("1", "true", "yes")


class GatewayServer:
    """
    WebSocket gateway server.

    One handler coroutine per connection. Frames from a connection are
    handed to the ConnectionManager in arrival order.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        orchestrator: "SessionOrchestrator",
        *,
        host: str = "127.0.0.1",
        port: int = 9090,
        max_connections: int = 100,
        max_message_bytes: int = 2**20,
    ):
        self._manager = manager
        self._orchestrator = orchestrator
        self._host = host
        self._port = port
        self._max_connections = max_connections
        self._max_message_bytes = max_message_bytes
        self._server = None

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Start the WebSocket server."""
        self._server = await serve(
            self._handler,
            self._host,
            self._port,
            max_size=self._max_message_bytes,
        )
        log.info(
            "gateway.started",
            host=self._host,
            port=self._port,
            max_connections=self._max_connections,
        )

    @property
    def port(self) -> int:
        """The bound port; differs from the configured one when that was 0."""
        if self._server is not None:
            for sock in self._server.sockets:
                return sock.getsockname()[1]
        return self._port

    async def wait_closed(self) -> None:
        """Block until the server is closed."""
        if self._server:
            await self._server.wait_closed()

    async def shutdown(self) -> None:
        """Stop accepting, drop every connection, let background work finish."""
        if self._server:
            self._server.close()
        await self._manager.close_all()
        await self._orchestrator.drain()
        if self._server:
            await self._server.wait_closed()
        log.info("gateway.stopped")

    # ─────────────────────────────────────────────────────────────────────────
    # Connection handler
    # ─────────────────────────────────────────────────────────────────────────

    async def _handler(self, websocket: ServerConnection) -> None:
        """Handle a single WebSocket connection."""
        if self._manager.count >= self._max_connections:
            error = ErrorResponse.of(
                ErrorKind.RATE_LIMIT,
                "The server is at its connection limit. Please try again shortly.",
                new_correlation_id(),
            )
            await websocket.send(make_error_frame(error).to_json())
            await websocket.close()
            log.warning("gateway.connection_refused", reason="max_connections")
            return

        connection_id = new_connection_id()
        pending: Optional[str] = None
        request = getattr(websocket, "request", None)
        path = getattr(request, "path", None)
        user_id = user_from_path(path)
        new_session = new_session_from_path(path)

        try:
            if user_id is None:
                user_id, pending, asked = await self._identify(websocket, connection_id)
                new_session = new_session or asked

            async def _send(text: str) -> None:
                try:
                    await websocket.send(text)
                except websockets.ConnectionClosed as e:
                    raise ConnectionGoneError(connection_id) from e

            await self._manager.on_connect(connection_id, user_id, _send, new_session=new_session)
            remote = getattr(websocket, "remote_address", ("?", 0))
            log.info("gateway.client_connected", connection_id=connection_id, remote=str(remote))

            if pending is not None:
                await self._dispatch(websocket, connection_id, pending)
            async for raw in websocket:
                await self._dispatch(websocket, connection_id, raw)
        except websockets.ConnectionClosed:
            pass
        finally:
            await self._manager.on_disconnect(connection_id)
            log.info("gateway.client_disconnected", connection_id=connection_id)

    async def _identify(
        self, websocket: ServerConnection, connection_id: str
    ) -> tuple[str, Optional[str], bool]:
        """
        Read the first frame to learn the user id.

        Returns (user_id, frame_to_replay, new_session). A first frame that is not a
        `connect` is replayed as a normal frame once the connection exists.
        """
        try:
            raw = await asyncio.wait_for(websocket.recv(), timeout=_FIRST_FRAME_TIMEOUT)
        except asyncio.TimeoutError:
            return ANONYMOUS_USER, None, False
        try:
            first = InboundMessage.from_json(raw, default_connection_id=connection_id)
        except ProtocolError:
            return ANONYMOUS_USER, raw, False
        if first.action is InboundAction.CONNECT:
            user_id = first.context.get("userId")
            new_session = wants_new_session(first.context)
            return (user_id if isinstance(user_id, str) and user_id else ANONYMOUS_USER), None, new_session
        return ANONYMOUS_USER, raw, False

    async def _dispatch(self, websocket: ServerConnection, connection_id: str, raw) -> None:
        try:
            await self._manager.on_message(connection_id, raw)
        except (ProtocolError, ConnectionGoneError) as e:
            error = normalize_error(e, new_correlation_id())
            if isinstance(e, ConnectionGoneError):
                error = ErrorResponse.of(
                    ErrorKind.USER_INPUT, "This connection is no longer active.", error.correlation_id
                )
            log.info("gateway.frame_rejected", connection_id=connection_id,
                     error_type=type(e).__name__)
            await websocket.send(make_error_frame(error).to_json())
