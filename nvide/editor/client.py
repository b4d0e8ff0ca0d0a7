"""msgpack-RPC client for a running Neovim instance.

Protocol (msgpack arrays over a Unix socket or TCP):

Request:       [0, msgid, method, params]
Response:      [1, msgid, error, result]
Notification:  [2, method, params]

Responses are matched to pending requests by msgid. Notifications are
queued and handed to subscribers by a single dispatcher task, one at a
time and in channel order, so a handler may issue its own requests
without blocking the reader.
"""
from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import msgpack

from ..errors import EditorRequestError, EditorUnavailableError

logger = logging.getLogger(__name__)

_REQUEST = 0
_RESPONSE = 1
_NOTIFICATION = 2

# Signature: handler(method, args) -> None | awaitable
NotificationHandler = Callable[[str, list[Any]], Awaitable[None] | None]


class EditorChannel(Protocol):
    """Capability set the rest of the package needs from the editor.

    ``NvimClient`` implements it over a socket; tests substitute an
    in-memory fake.
    """

    @property
    def connected(self) -> bool: ...

    async def request(self, method: str, *args: Any) -> Any: ...

    async def channel_id(self) -> int: ...

    def add_notification_handler(self, handler: NotificationHandler) -> None: ...


def _ext_hook(code: int, data: bytes) -> Any:
    # Buffer (0), Window (1) and Tabpage (2) arrive as ext types wrapping
    # an integer handle; the API accepts the bare integer in return.
    if code in (0, 1, 2):
        return msgpack.unpackb(data)
    return msgpack.ExtType(code, data)


def _format_error(error: Any) -> str:
    if isinstance(error, (list, tuple)) and len(error) >= 2:
        return str(error[1])
    return str(error)


async def invoke_handler(handler: Callable[..., Any], *args: Any) -> Any:
    """Call *handler* and await the result when it is awaitable."""
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class NvimClient:
    """Asynchronous msgpack-RPC connection to Neovim."""

    def __init__(self, address: str) -> None:
        self._address = address
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._msgids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._handlers: list[NotificationHandler] = []
        self._disconnect_callbacks: list[Callable[[], None]] = []
        self._notifications: asyncio.Queue[tuple[str, list[Any]]] = asyncio.Queue()
        self._reader_task: asyncio.Task | None = None
        self._dispatch_task: asyncio.Task | None = None
        self._channel_id: int | None = None
        self._connected = False

    @property
    def address(self) -> str:
        return self._address

    @property
    def connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Open the socket and start the reader and dispatcher tasks."""
        host, sep, port = self._address.rpartition(":")
        try:
            if sep and port.isdigit() and "/" not in self._address:
                self._reader, self._writer = await asyncio.open_connection(host or "127.0.0.1", int(port))
            else:
                self._reader, self._writer = await asyncio.open_unix_connection(self._address)
        except OSError as exc:
            raise EditorUnavailableError(f"Cannot connect to Neovim at {self._address}: {exc}") from exc

        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop())
        self._dispatch_task = asyncio.create_task(self._dispatch_loop())
        api_info = await self.request("nvim_get_api_info")
        self._channel_id = int(api_info[0])
        logger.info("Connected to Neovim at %s (channel %d)", self._address, self._channel_id)

    async def close(self) -> None:
        """Close the connection and stop background tasks."""
        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except OSError:
                pass
        for task in (self._reader_task, self._dispatch_task):
            if task is not None and task is not asyncio.current_task():
                task.cancel()
        self._mark_disconnected("client closed")

    def on_disconnect(self, callback: Callable[[], None]) -> None:
        self._disconnect_callbacks.append(callback)

    def add_notification_handler(self, handler: NotificationHandler) -> None:
        self._handlers.append(handler)

    async def channel_id(self) -> int:
        if self._channel_id is None:
            api_info = await self.request("nvim_get_api_info")
            self._channel_id = int(api_info[0])
        return self._channel_id

    async def request(self, method: str, *args: Any) -> Any:
        """Send a request and wait for its response."""
        if not self._connected or self._writer is None:
            raise EditorUnavailableError()
        msgid = next(self._msgids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[msgid] = future
        try:
            self._writer.write(msgpack.packb([_REQUEST, msgid, method, list(args)], use_bin_type=True))
            await self._writer.drain()
        except (ConnectionError, OSError) as exc:
            self._pending.pop(msgid, None)
            self._mark_disconnected(str(exc))
            raise EditorUnavailableError(f"Lost connection to Neovim: {exc}") from exc

        error, result = await future
        if error is not None:
            raise EditorRequestError(method, _format_error(error))
        return result

    async def _read_loop(self) -> None:
        assert self._reader is not None
        unpacker = msgpack.Unpacker(raw=False, ext_hook=_ext_hook)
        reason = "connection closed by Neovim"
        try:
            while True:
                data = await self._reader.read(65536)
                if not data:
                    break
                unpacker.feed(data)
                for message in unpacker:
                    await self._handle_message(message)
        except asyncio.CancelledError:
            reason = "reader cancelled"
        except (ConnectionError, OSError) as exc:
            reason = str(exc)
        except (msgpack.UnpackException, ValueError) as exc:
            logger.error("Corrupt msgpack stream from Neovim: %s", exc)
            reason = f"corrupt stream: {exc}"
        finally:
            self._mark_disconnected(reason)

    async def _handle_message(self, message: Any) -> None:
        if not isinstance(message, (list, tuple)) or not message:
            logger.warning("Ignoring malformed message from Neovim: %r", message)
            return
        kind = message[0]
        if kind == _RESPONSE and len(message) == 4:
            _, msgid, error, result = message
            future = self._pending.pop(msgid, None)
            if future is None:
                logger.debug("Response for unknown msgid %s", msgid)
            elif not future.done():
                future.set_result((error, result))
        elif kind == _NOTIFICATION and len(message) == 3:
            _, method, params = message
            self._notifications.put_nowait((method, list(params or [])))
        elif kind == _REQUEST and len(message) == 4:
            _, msgid, method, _params = message
            logger.debug("Rejecting request '%s' from Neovim", method)
            if self._writer is not None:
                self._writer.write(
                    msgpack.packb(
                        [_RESPONSE, msgid, f"Method not supported: {method}", None],
                        use_bin_type=True,
                    )
                )
        else:
            logger.warning("Ignoring unknown message type from Neovim: %r", message[:2])

    async def _dispatch_loop(self) -> None:
        while True:
            method, args = await self._notifications.get()
            for handler in list(self._handlers):
                try:
                    await invoke_handler(handler, method, args)
                except Exception:
                    logger.exception("Notification handler failed for %s", method)

    def _mark_disconnected(self, reason: str) -> None:
        if not self._connected:
            return
        self._connected = False
        logger.warning("Neovim connection lost: %s", reason)
        for future in self._pending.values():
            if not future.done():
                future.set_exception(EditorUnavailableError(f"Lost connection to Neovim: {reason}"))
        self._pending.clear()
        for callback in list(self._disconnect_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Disconnect callback failed")
