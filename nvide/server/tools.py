"""Tool registry for the MCP endpoint.

Tools are plain async functions taking a validated pydantic argument model
and a ``ToolContext``. A handler shares nothing with other handlers except
what is passed in, so each one can be invoked on its own.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from mcp.types import INVALID_PARAMS, CallToolResult, TextContent, Tool
from pydantic import BaseModel, ValidationError

from ..errors import CompanionError, ProtocolError

logger = logging.getLogger(__name__)

# Signature: notify(method, params) pushes a notification to the calling session.
Notifier = Callable[[str, dict[str, Any]], None]
ToolResult = str | CallToolResult
ToolHandler = Callable[[Any, "ToolContext"], Awaitable[ToolResult]]


@dataclass
class ToolContext:
    """Per-call information handed to a tool handler."""

    session_id: str
    notify: Notifier


@dataclass
class ToolSpec:
    name: str
    description: str
    arguments: type[BaseModel]
    handler: ToolHandler

    def to_tool(self) -> Tool:
        return Tool(
            name=self.name,
            description=self.description,
            inputSchema=self.arguments.model_json_schema(by_alias=True),
        )


def text_result(text: str, *, is_error: bool = False) -> CallToolResult:
    return CallToolResult(content=[TextContent(type="text", text=text)], isError=is_error)


class ToolRegistry:
    """Name -> tool handler table."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def register(
        self,
        name: str,
        description: str,
        arguments: type[BaseModel],
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator registering an async handler under *name*."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            if name in self._tools:
                raise ValueError(f"Tool '{name}' is already registered")
            self._tools[name] = ToolSpec(name, description, arguments, handler)
            return handler

        return decorator

    def list_tools(self) -> list[Tool]:
        return [spec.to_tool() for spec in self._tools.values()]

    async def call(self, name: str, raw_args: dict[str, Any] | None, ctx: ToolContext) -> CallToolResult:
        """Validate arguments and run the tool.

        Unknown tools and invalid arguments raise ``ProtocolError``;
        failures inside the tool become error results.
        """
        spec = self._tools.get(name)
        if spec is None:
            raise ProtocolError(INVALID_PARAMS, f"Unknown tool: {name}")
        try:
            args = spec.arguments.model_validate(raw_args or {})
        except ValidationError as exc:
            raise ProtocolError(INVALID_PARAMS, f"Invalid arguments for {name}: {exc}") from exc

        try:
            result = await spec.handler(args, ctx)
        except CompanionError as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return text_result(str(exc), is_error=True)

        if isinstance(result, str):
            return text_result(result)
        return result
