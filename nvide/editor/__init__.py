"""Neovim connection, API facade and event bridge."""
from .api import Editor
from .bridge import AUTOCMD_NOTIFICATION, EventBridge
from .client import EditorChannel, NvimClient

__all__ = [
    "AUTOCMD_NOTIFICATION",
    "Editor",
    "EditorChannel",
    "EventBridge",
    "NvimClient",
]
