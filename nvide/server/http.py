"""HTTP server exposing the editor to the agent over MCP.

Routes:
    POST   /mcp        JSON-RPC message (session header ``mcp-session-id``)
    GET    /mcp        server-push stream for an initialized session
    DELETE /mcp        close a session
    GET    /sse        legacy session: push stream, endpoint announced first
    POST   /messages   legacy message post (``?sessionId=``), answered 202
    GET    /health     liveness
"""
from __future__ import annotations

import json
import logging
import os
import secrets
import time
import uuid
from typing import Any

from aiohttp import web
from mcp.types import INTERNAL_ERROR, PARSE_ERROR

from ..config import CompanionConfig
from ..context.open_files import OpenFileTracker
from ..editor.api import Editor
from ..editor.bridge import EventBridge
from ..errors import EditorError, InvalidSessionError, StreamConflictError
from ..review.engine import DiffReviewEngine
from ..review.scratch import ScratchWorkspace
from .discovery import DiscoveryFiles, LockFileInfo
from .ide_tools import register_ide_tools
from .protocol import ProtocolHandler, error_response, notification
from .router import MCP_SESSION_ID_HEADER, SessionRouter
from .tools import ToolRegistry
from .transport import SessionTransport

logger = logging.getLogger(__name__)

AUTH_HEADER = "x-claude-code-ide-authorization"
CONTEXT_UPDATE = "ide/contextUpdate"

_SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
}


class IdeServer:
    """aiohttp application wiring the router, tools and editor together."""

    def __init__(self, config: CompanionConfig, editor: Editor, *, bridge: EventBridge | None = None) -> None:
        self._config = config
        self._editor = editor
        self.bridge = bridge or EventBridge(editor)
        self.scratch = ScratchWorkspace(config.scratch_dir)
        self.engine = DiffReviewEngine(
            editor,
            self.bridge,
            self.scratch,
            accept_keymap=config.accept_keymap,
            reject_keymap=config.reject_keymap,
            reload_delay=config.reload_delay,
        )
        self.tracker = OpenFileTracker(
            config.max_tracked_files,
            config.context_debounce,
            ignore=self.scratch.is_scratch_path,
        )
        self.tools = register_ide_tools(
            ToolRegistry(),
            editor=editor,
            bridge=self.bridge,
            engine=self.engine,
            open_timeout=config.open_timeout,
        )
        self.protocol = ProtocolHandler(self.tools)
        self.router = SessionRouter(
            self.protocol,
            keepalive_interval=config.keepalive_interval,
            queue_size=config.push_queue_size,
            initial_notification=self._context_notification,
        )
        self.discovery = DiscoveryFiles(config.lock_dir, config.port_file_dir, config.nvim_address)
        self.tracker.add_listener(self._on_context_change)

        self._host = config.host
        self._port = config.port
        self._runner: web.AppRunner | None = None
        self._started_at = time.time()
        self._app = web.Application(middlewares=[self._request_logging_middleware, self._auth_middleware])
        self._setup_routes()

    @property
    def app(self) -> web.Application:
        return self._app

    @property
    def port(self) -> int:
        return self._port

    # ── Context push ──

    def _context_notification(self) -> dict[str, Any]:
        return notification(CONTEXT_UPDATE, self.tracker.snapshot())

    def _on_context_change(self, snapshot: dict[str, Any]) -> None:
        delivered = self.router.notify_all(CONTEXT_UPDATE, snapshot)
        logger.debug("Context update sent to %d session(s)", delivered)

    # ── Middleware ──

    @web.middleware
    async def _request_logging_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        req_id = str(uuid.uuid4())[:8]
        request["req_id"] = req_id
        start = time.monotonic()
        logger.debug("HTTP %s %s req=%s from=%s", request.method, request.path_qs, req_id, request.remote)
        try:
            response = await handler(request)
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.info(
                "HTTP %s %s req=%s status=%s duration_ms=%.1f",
                request.method, request.path_qs, req_id,
                getattr(response, "status", "?"), elapsed_ms,
            )
            return response
        except Exception:
            elapsed_ms = (time.monotonic() - start) * 1000
            logger.exception("HTTP %s %s req=%s failed duration_ms=%.1f", request.method, request.path_qs, req_id, elapsed_ms)
            raise

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler) -> web.StreamResponse:
        if self._config.require_auth and request.path != "/health":
            token = request.headers.get(AUTH_HEADER, "")
            if not secrets.compare_digest(token, self._config.auth_token):
                logger.warning("Rejected unauthenticated %s %s", request.method, request.path)
                return web.json_response({"error": "Unauthorized"}, status=401)
        return await handler(request)

    # ── Route setup ──

    def _setup_routes(self) -> None:
        r = self._app.router
        r.add_get("/health", self._handle_health)
        r.add_post("/mcp", self._handle_mcp_post)
        r.add_get("/mcp", self._handle_mcp_get)
        r.add_delete("/mcp", self._handle_mcp_delete)
        r.add_get("/sse", self._handle_legacy_sse)
        r.add_post("/messages", self._handle_legacy_message)

    # ── Lifecycle ──

    async def start(self) -> int:
        """Bind, publish discovery files and start following the editor."""
        runner = web.AppRunner(self._app)
        await runner.setup()
        site = web.TCPSite(runner, self._host, self._port)
        await site.start()

        actual_port = self._resolve_port(site, runner)
        if actual_port is None:
            await runner.cleanup()
            raise RuntimeError("IDE companion started but no listening socket was reported.")
        self._port = actual_port
        self._runner = runner

        self.discovery.publish(
            actual_port,
            LockFileInfo(
                workspace_folders=[self._config.workspace],
                ide_name=self._config.ide_name,
                auth_token=self._config.auth_token,
            ),
        )
        if self._editor.connected:
            try:
                await self.tracker.attach(self._editor, self.bridge)
            except EditorError as exc:
                logger.warning("Could not follow open files: %s", exc)
        logger.info("IDE companion listening on %s:%d", self._host, actual_port)
        return actual_port

    async def stop(self) -> None:
        """Reject open reviews, close sessions and remove discovery files."""
        self.tracker.close()
        await self.engine.shutdown()
        self.router.close_all()
        self.discovery.remove()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("IDE companion stopped")

    @staticmethod
    def _resolve_port(site, runner) -> int | None:
        sockets = getattr(getattr(site, "_server", None), "sockets", None) or ()
        if sockets:
            return sockets[0].getsockname()[1]
        addresses = getattr(runner, "addresses", None) or ()
        if addresses:
            first = addresses[0]
            if isinstance(first, tuple) and len(first) >= 2:
                return int(first[1])
        return None

    # ── HTTP handlers ──

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "pid": os.getpid(),
            "uptime_seconds": round(max(0.0, time.time() - self._started_at), 3),
            "editor_connected": self._editor.connected,
            "sessions": len(self.router.session_ids),
            "active_diffs": self.engine.active_paths,
        })

    async def _handle_mcp_post(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        if body is None:
            return web.json_response(error_response(None, PARSE_ERROR, "Parse error"), status=400)
        try:
            reply = await self.router.handle_post(request.headers.get(MCP_SESSION_ID_HEADER), body)
        except Exception:
            logger.exception("Error handling MCP request")
            return web.json_response(error_response(None, INTERNAL_ERROR, "Internal server error"), status=500)

        headers = {MCP_SESSION_ID_HEADER: reply.session_id} if reply.session_id else None
        if reply.payload is None:
            return web.Response(status=reply.status, headers=headers)
        return web.json_response(reply.payload, status=reply.status, headers=headers)

    async def _handle_mcp_get(self, request: web.Request) -> web.StreamResponse:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        try:
            transport = self.router.open_stream(session_id)
        except InvalidSessionError:
            logger.warning("Invalid or missing session ID")
            return web.Response(status=400, text="Invalid or missing session ID")
        except StreamConflictError:
            return web.Response(status=409, text="Conflict: stream already open for this session")
        return await self._stream(request, transport, headers={MCP_SESSION_ID_HEADER: transport.session_id})

    async def _handle_mcp_delete(self, request: web.Request) -> web.Response:
        session_id = request.headers.get(MCP_SESSION_ID_HEADER)
        if not session_id or not self.router.close_session(session_id):
            return web.Response(status=400, text="Invalid or missing session ID")
        return web.Response(status=200)

    async def _handle_legacy_sse(self, request: web.Request) -> web.StreamResponse:
        session = self.router.open_legacy_session()
        logger.info("Legacy SSE session opened: %s", session.session_id)
        endpoint = f"event: endpoint\ndata: /messages?sessionId={session.session_id}\n\n"
        return await self._stream(request, session.transport, first=endpoint.encode())

    async def _handle_legacy_message(self, request: web.Request) -> web.Response:
        body = await self._read_json(request)
        if body is None:
            return web.json_response(error_response(None, PARSE_ERROR, "Parse error"), status=400)
        try:
            await self.router.handle_legacy_post(request.query.get("sessionId"), body)
        except InvalidSessionError:
            return web.Response(status=400, text="Invalid session ID")
        return web.Response(status=202, text="Accepted")

    # ── Helpers ──

    @staticmethod
    async def _read_json(request: web.Request) -> Any | None:
        try:
            return await request.json()
        except (ValueError, UnicodeDecodeError):
            return None

    async def _stream(
        self,
        request: web.Request,
        transport: SessionTransport,
        *,
        first: bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> web.StreamResponse:
        response = web.StreamResponse(status=200, headers={**_SSE_HEADERS, **(headers or {})})
        await response.prepare(request)
        logger.info("Stream attached for session %s", transport.session_id)
        try:
            if first is not None:
                await response.write(first)
            async for message in transport.messages(self._config.stream_idle_timeout):
                if message is None:
                    await response.write(b": keepalive\n\n")
                    continue
                await response.write(f"event: message\ndata: {json.dumps(message)}\n\n".encode())
        except ConnectionResetError:
            logger.debug("Client dropped stream for session %s", transport.session_id)
        finally:
            transport.detach_stream()
            # The stream is the session's network connection.
            self.router.close_session(transport.session_id)
            logger.info("Stream closed for session %s", transport.session_id)
        return response
