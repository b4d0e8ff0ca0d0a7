"""Per-connection server-push transport.

Outbound JSON-RPC messages for one session are queued here and drained
by whichever HTTP handler currently holds the session's event stream.
Messages queued before a stream attaches are delivered once it does.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Any

from ..errors import PushFailedError, StreamConflictError, TransportClosedError

logger = logging.getLogger(__name__)

STREAMABLE = "streamable"
SSE = "sse"

_CLOSED = object()


class SessionTransport:
    """Bounded outbound queue plus one attachable stream."""

    def __init__(self, session_id: str, kind: str = STREAMABLE, maxsize: int = 1000) -> None:
        self.session_id = session_id
        self.kind = kind
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._stream_attached = False
        self._close_callbacks: list[Callable[[SessionTransport], None]] = []

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def stream_attached(self) -> bool:
        return self._stream_attached

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def on_close(self, callback: Callable[[SessionTransport], None]) -> None:
        self._close_callbacks.append(callback)

    def send(self, message: dict[str, Any]) -> None:
        """Queue *message* for delivery on the event stream."""
        if self._closed:
            raise TransportClosedError(self.session_id)
        try:
            self._queue.put_nowait(message)
        except asyncio.QueueFull as exc:
            raise PushFailedError(self.session_id, "outbound queue full") from exc

    def attach_stream(self) -> None:
        if self._closed:
            raise TransportClosedError(self.session_id)
        if self._stream_attached:
            raise StreamConflictError(self.session_id)
        self._stream_attached = True

    def detach_stream(self) -> None:
        self._stream_attached = False

    async def messages(self, idle_timeout: float = 30.0) -> AsyncIterator[dict[str, Any] | None]:
        """Yield queued messages until the transport closes.

        Yields ``None`` whenever nothing arrived for *idle_timeout* seconds
        so the caller can write a keepalive.
        """
        while True:
            try:
                message = await asyncio.wait_for(self._queue.get(), timeout=idle_timeout)
            except asyncio.TimeoutError:
                if self._closed:
                    return
                yield None
                continue
            if message is _CLOSED:
                return
            yield message

    def close(self) -> None:
        """Close the transport; idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            # Make room for the sentinel; undelivered messages are dropped anyway.
            self._queue.get_nowait()
            self._queue.put_nowait(_CLOSED)
        logger.debug("Transport %s closed", self.session_id)
        for callback in list(self._close_callbacks):
            try:
                callback(self)
            except Exception:
                logger.exception("Close callback failed for transport %s", self.session_id)
