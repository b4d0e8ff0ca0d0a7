"""Session router: owns live agent connections.

Lifecycle of one connection session:

    (no id) POST initialize  -> UNINITIALIZED -> ACTIVE   (id minted)
    POST/GET with known id   -> routed to the session's transport
    transport closed         -> CLOSED, entry removed, keepalive cancelled

Requests with an unknown or missing id that are not a fresh initialize
are answered with a -32000 error and change nothing.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from mcp.types import InitializeRequestParams, JSONRPCRequest
from pydantic import ValidationError

from ..errors import InvalidSessionError, TransportError
from .protocol import ProtocolHandler, error_response, notification
from .tools import ToolContext
from .transport import SSE, STREAMABLE, SessionTransport

logger = logging.getLogger(__name__)

MCP_SESSION_ID_HEADER = "mcp-session-id"
KEEPALIVE_MESSAGE = {"jsonrpc": "2.0", "method": "ping"}

# Returns the notification pushed when a session's stream first attaches.
InitialNotification = Callable[[], dict[str, Any] | None]


class ConnectionState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class ConnectionSession:
    session_id: str
    transport: SessionTransport
    kind: str = STREAMABLE
    state: ConnectionState = ConnectionState.UNINITIALIZED
    created_notification_sent: bool = False
    keepalive: asyncio.Task | None = field(default=None, repr=False)


@dataclass
class RouterReply:
    """HTTP status plus JSON body for one routed POST."""

    status: int
    payload: dict[str, Any] | None = None
    session_id: str | None = None


def is_initialize_request(body: Any) -> bool:
    if not isinstance(body, dict) or body.get("method") != "initialize":
        return False
    try:
        request = JSONRPCRequest.model_validate(body)
        InitializeRequestParams.model_validate(request.params or {})
    except ValidationError:
        return False
    return True


class SessionRouter:
    """Maps session ids to transports and routes messages between them."""

    def __init__(
        self,
        protocol: ProtocolHandler,
        *,
        keepalive_interval: float = 60.0,
        queue_size: int = 1000,
        initial_notification: InitialNotification | None = None,
    ) -> None:
        self._protocol = protocol
        self._keepalive_interval = keepalive_interval
        self._queue_size = queue_size
        self._initial_notification = initial_notification
        self._sessions: dict[str, ConnectionSession] = {}

    @property
    def session_ids(self) -> list[str]:
        return list(self._sessions)

    def get(self, session_id: str | None) -> ConnectionSession | None:
        if not session_id:
            return None
        return self._sessions.get(session_id)

    # ── Streamable HTTP ──

    async def handle_post(self, session_id: str | None, body: Any) -> RouterReply:
        """Route one POSTed message."""
        if session_id:
            session = self._sessions.get(session_id)
            if session is None:
                return self._invalid_session()
            response = await self._protocol.handle(body, self._context(session))
            return RouterReply(200 if response is not None else 202, response, session.session_id)

        if not is_initialize_request(body):
            return self._invalid_session()

        session = self._create(STREAMABLE)
        response = await self._protocol.handle(body, self._context(session))
        if response is None or "error" in response:
            logger.warning("Initialize failed for new session %s", session.session_id)
            self.close_session(session.session_id)
            return RouterReply(400, response)
        self._activate(session)
        return RouterReply(200, response, session.session_id)

    def open_stream(self, session_id: str | None) -> SessionTransport:
        """Attach the server-push stream of a session.

        Raises:
            InvalidSessionError: unknown or missing id.
            StreamConflictError: a stream is already attached.
        """
        session = self.get(session_id)
        if session is None:
            raise InvalidSessionError("Invalid or missing session ID")
        session.transport.attach_stream()
        self._send_initial(session)
        return session.transport

    # ── Legacy SSE ──

    def open_legacy_session(self) -> ConnectionSession:
        """Create a session whose stream is the GET that created it."""
        session = self._create(SSE)
        session.transport.attach_stream()
        self._arm_keepalive(session)
        return session

    async def handle_legacy_post(self, session_id: str | None, body: Any) -> RouterReply:
        """Route a message for a legacy session; the reply goes out on its stream."""
        session = self.get(session_id)
        if session is None or session.kind != SSE:
            raise InvalidSessionError("Invalid session ID")
        response = await self._protocol.handle(body, self._context(session))
        initialized = is_initialize_request(body) and response is not None and "error" not in response
        if response is not None:
            self._push(session, response)
        if initialized and session.state is ConnectionState.UNINITIALIZED:
            session.state = ConnectionState.ACTIVE
            self._send_initial(session)
        return RouterReply(202, None, session.session_id)

    # ── Push ──

    def send_to(self, session_id: str, message: dict[str, Any]) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            logger.debug("Dropping push for closed session %s", session_id)
            return False
        return self._push(session, message)

    def broadcast(self, message: dict[str, Any]) -> int:
        """Push *message* to every active session; returns how many took it."""
        delivered = 0
        for session in list(self._sessions.values()):
            if session.state is not ConnectionState.ACTIVE:
                continue
            if self._push(session, message):
                delivered += 1
        return delivered

    def notify_all(self, method: str, params: dict[str, Any] | None = None) -> int:
        return self.broadcast(notification(method, params))

    def _push(self, session: ConnectionSession, message: dict[str, Any]) -> bool:
        try:
            session.transport.send(message)
        except TransportError as exc:
            logger.warning("Push to session %s failed: %s", session.session_id, exc)
            self.close_session(session.session_id)
            return False
        return True

    # ── Lifecycle ──

    def close_session(self, session_id: str) -> bool:
        """Tear a session down; returns False if it was already gone."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.state = ConnectionState.CLOSED
        session.created_notification_sent = False
        if session.keepalive is not None and session.keepalive is not asyncio.current_task():
            session.keepalive.cancel()
        session.keepalive = None
        session.transport.close()
        logger.info("Session closed: %s", session_id)
        return True

    def close_all(self) -> None:
        for session_id in list(self._sessions):
            self.close_session(session_id)

    def _create(self, kind: str) -> ConnectionSession:
        session_id = str(uuid.uuid4())
        transport = SessionTransport(session_id, kind, maxsize=self._queue_size)
        session = ConnectionSession(session_id=session_id, transport=transport, kind=kind)
        transport.on_close(lambda t: self.close_session(t.session_id))
        self._sessions[session_id] = session
        return session

    def _activate(self, session: ConnectionSession) -> None:
        session.state = ConnectionState.ACTIVE
        self._arm_keepalive(session)
        logger.info("New session initialized: %s", session.session_id)

    def _arm_keepalive(self, session: ConnectionSession) -> None:
        if session.keepalive is None:
            session.keepalive = asyncio.get_running_loop().create_task(self._keepalive(session))

    async def _keepalive(self, session: ConnectionSession) -> None:
        while session.state is not ConnectionState.CLOSED:
            await asyncio.sleep(self._keepalive_interval)
            try:
                session.transport.send(dict(KEEPALIVE_MESSAGE))
            except TransportError as exc:
                logger.error("Failed to send keep-alive ping to %s: %s", session.session_id, exc)
                self.close_session(session.session_id)
                return

    def _send_initial(self, session: ConnectionSession) -> None:
        if session.created_notification_sent or self._initial_notification is None:
            return
        message = self._initial_notification()
        if message is not None and self._push(session, message):
            session.created_notification_sent = True

    def _context(self, session: ConnectionSession) -> ToolContext:
        session_id = session.session_id

        def _notify(method: str, params: dict[str, Any]) -> None:
            self.send_to(session_id, notification(method, params))

        return ToolContext(session_id=session_id, notify=_notify)

    @staticmethod
    def _invalid_session() -> RouterReply:
        error = InvalidSessionError()
        logger.warning(error.message)
        return RouterReply(400, error_response(None, error.code, error.message))
