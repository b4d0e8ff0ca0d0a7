"""JSON-RPC 2.0 / MCP message handling.

``ProtocolHandler.handle`` takes one decoded message and returns the
response dict to send back, or ``None`` for notifications and client
responses. It never raises for bad input; every failure becomes a
JSON-RPC error object.
"""
from __future__ import annotations

import logging
from typing import Any

from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    CallToolRequestParams,
    ErrorData,
    Implementation,
    InitializeRequestParams,
    InitializeResult,
    JSONRPCError,
    JSONRPCNotification,
    JSONRPCRequest,
    JSONRPCResponse,
    ListToolsResult,
    ServerCapabilities,
    ToolsCapability,
)
from pydantic import BaseModel, ValidationError

from .. import __version__
from ..errors import ProtocolError
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

SERVER_NAME = "neovim-ide-companion"


def _dump(model: BaseModel) -> dict[str, Any]:
    return model.model_dump(by_alias=True, mode="json", exclude_none=True)


def notification(method: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
    """Build a server-to-client JSON-RPC notification."""
    return _dump(JSONRPCNotification(jsonrpc="2.0", method=method, params=params))


def error_response(request_id: str | int | None, code: int, message: str) -> dict[str, Any]:
    error = ErrorData(code=code, message=message)
    if request_id is None:
        # JSONRPCError requires an id; errors for unidentifiable requests use null.
        return {"jsonrpc": "2.0", "id": None, "error": _dump(error)}
    return _dump(JSONRPCError(jsonrpc="2.0", id=request_id, error=error))


def negotiate_version(requested: str | int) -> str:
    if isinstance(requested, str) and requested in SUPPORTED_PROTOCOL_VERSIONS:
        return requested
    return LATEST_PROTOCOL_VERSION


class ProtocolHandler:
    """Dispatches MCP requests to the tool registry."""

    def __init__(self, tools: ToolRegistry, *, server_name: str = SERVER_NAME, version: str = __version__) -> None:
        self._tools = tools
        self._server_info = Implementation(name=server_name, version=version)

    async def handle(self, body: Any, ctx: ToolContext) -> dict[str, Any] | None:
        if not isinstance(body, dict):
            # Batches included: every client we serve sends single messages.
            return error_response(None, INVALID_REQUEST, "Invalid Request: expected a single JSON-RPC object")

        if "method" not in body:
            if "result" in body or "error" in body:
                logger.debug("Ignoring client response id=%s", body.get("id"))
                return None
            return error_response(body.get("id"), INVALID_REQUEST, "Invalid Request")

        if "id" not in body:
            try:
                note = JSONRPCNotification.model_validate(body)
            except ValidationError:
                return error_response(None, INVALID_REQUEST, "Invalid Request: malformed notification")
            logger.debug("Notification %s from session %s", note.method, ctx.session_id)
            return None

        try:
            request = JSONRPCRequest.model_validate(body)
        except ValidationError:
            request_id = body.get("id")
            if not isinstance(request_id, (str, int)):
                request_id = None
            return error_response(request_id, INVALID_REQUEST, "Invalid Request: malformed request")

        try:
            result = await self._dispatch(request, ctx)
        except ProtocolError as exc:
            return error_response(request.id, exc.code, exc.message)
        except Exception:
            logger.exception("Unhandled error in %s", request.method)
            return error_response(request.id, INTERNAL_ERROR, "Internal error")
        return _dump(JSONRPCResponse(jsonrpc="2.0", id=request.id, result=result))

    async def _dispatch(self, request: JSONRPCRequest, ctx: ToolContext) -> dict[str, Any]:
        method = request.method
        params = request.params or {}
        logger.debug("Request %s id=%s session=%s", method, request.id, ctx.session_id)

        if method == "initialize":
            try:
                init = InitializeRequestParams.model_validate(params)
            except ValidationError as exc:
                raise ProtocolError(INVALID_PARAMS, f"Invalid initialize params: {exc}") from exc
            result = InitializeResult(
                protocolVersion=negotiate_version(init.protocolVersion),
                capabilities=ServerCapabilities(tools=ToolsCapability(listChanged=False)),
                serverInfo=self._server_info,
            )
            logger.info(
                "Session %s initialized by %s %s",
                ctx.session_id, init.clientInfo.name, init.clientInfo.version,
            )
            return _dump(result)

        if method == "ping":
            return {}

        if method == "tools/list":
            return _dump(ListToolsResult(tools=self._tools.list_tools()))

        if method == "tools/call":
            try:
                call = CallToolRequestParams.model_validate(params)
            except ValidationError as exc:
                raise ProtocolError(INVALID_PARAMS, f"Invalid tools/call params: {exc}") from exc
            return _dump(await self._tools.call(call.name, call.arguments, ctx))

        raise ProtocolError(METHOD_NOT_FOUND, f"Method not found: {method}")
