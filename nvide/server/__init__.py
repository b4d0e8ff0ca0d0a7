"""MCP server surface: sessions, protocol, tools and discovery."""
from .http import IdeServer
from .protocol import ProtocolHandler
from .router import MCP_SESSION_ID_HEADER, SessionRouter
from .tools import ToolContext, ToolRegistry

__all__ = [
    "IdeServer",
    "MCP_SESSION_ID_HEADER",
    "ProtocolHandler",
    "SessionRouter",
    "ToolContext",
    "ToolRegistry",
]
