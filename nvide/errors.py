"""Exception hierarchy for the IDE companion.

One exception per failure mode. Connectivity failures fail fast, protocol
failures become structured JSON-RPC errors, and push failures stay local
to the transport that raised them.
"""
from __future__ import annotations


class CompanionError(Exception):
    """Base exception for all companion errors."""


class ConfigError(CompanionError):
    """A configuration value could not be parsed."""
    def __init__(self, key: str, reason: str):
        self.key = key
        self.reason = reason
        super().__init__(f"Invalid configuration for '{key}': {reason}")


class EditorError(CompanionError):
    """Base class for failures talking to the editor."""


class EditorUnavailableError(EditorError):
    """The editor connection is missing or has been lost."""
    def __init__(self, reason: str = "Not connected to Neovim"):
        self.reason = reason
        super().__init__(reason)


class EditorRequestError(EditorError):
    """The editor answered an RPC request with an error."""
    def __init__(self, method: str, message: str):
        self.method = method
        self.message = message
        super().__init__(f"Neovim request '{method}' failed: {message}")


class ScratchWriteError(CompanionError):
    """A scratch file for a diff review could not be written."""
    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Could not write scratch file {path}: {reason}")


class DiffAlreadyOpenError(CompanionError):
    """A review is already in flight for the target path."""
    def __init__(self, target_path: str):
        self.target_path = target_path
        super().__init__(f"A diff is already open for {target_path}")


class ProtocolError(CompanionError):
    """A request violated the JSON-RPC / MCP protocol."""
    def __init__(self, code: int, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class InvalidSessionError(ProtocolError):
    """A request referenced an unknown or missing session id."""
    def __init__(
        self,
        message: str = "Bad Request: No valid session ID provided for non-initialize request.",
    ):
        super().__init__(-32000, message)


class TransportError(CompanionError):
    """Base class for server-push transport failures."""


class TransportClosedError(TransportError):
    """The transport's underlying channel is closed."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Transport for session {session_id} is closed")


class PushFailedError(TransportError):
    """A message could not be queued for delivery."""
    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Push to session {session_id} failed: {reason}")


class StreamConflictError(TransportError):
    """A push stream is already attached to the session."""
    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Session {session_id} already has an open stream")
