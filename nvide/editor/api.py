"""Typed facade over the raw Neovim RPC API.

``Editor`` wraps an ``EditorChannel`` and is passed explicitly to every
component that talks to Neovim.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from ..errors import EditorRequestError
from ..shared.paths import is_same_file
from .client import EditorChannel, invoke_handler

logger = logging.getLogger(__name__)

# Buffer variables marking buffers the companion created itself.
COMPANION_BUFFER_VAR = "is-neovim-ide-companion"
COMPANION_TIMESTAMP_VAR = "neovim-ide-companion-ts"

_LINE_ENDINGS = {"unix": "\n", "dos": "\r\n", "mac": "\r"}

BufferPredicate = Callable[[int], Awaitable[bool] | bool]


class Editor:
    """High-level editor operations built on ``EditorChannel.request``."""

    def __init__(self, channel: EditorChannel) -> None:
        self._channel = channel

    @property
    def channel(self) -> EditorChannel:
        return self._channel

    @property
    def connected(self) -> bool:
        return self._channel.connected

    async def channel_id(self) -> int:
        return await self._channel.channel_id()

    def add_notification_handler(self, handler) -> None:
        self._channel.add_notification_handler(handler)

    async def request(self, method: str, *args: Any) -> Any:
        return await self._channel.request(method, *args)

    # ── Commands ──

    async def command(self, command: str) -> None:
        await self.request("nvim_command", command)

    async def run(self, cmd: str, *args: str, vertical: bool = False, silent: bool = False) -> None:
        """Run an Ex command with literal arguments (no escaping needed)."""
        spec: dict[str, Any] = {"cmd": cmd, "args": list(args)}
        mods: dict[str, Any] = {}
        if vertical:
            mods["vertical"] = True
        if silent:
            mods["silent"] = True
        if mods:
            spec["mods"] = mods
        await self.request("nvim_cmd", spec, {})

    async def exec_lua(self, code: str, args: Iterable[Any] = ()) -> Any:
        return await self.request("nvim_exec_lua", code, list(args))

    # ── Buffers ──

    async def list_buffers(self) -> list[int]:
        return list(await self.request("nvim_list_bufs"))

    async def current_buffer(self) -> int:
        return int(await self.request("nvim_get_current_buf"))

    async def buffer_name(self, buf: int) -> str:
        return str(await self.request("nvim_buf_get_name", buf))

    async def buffer_lines(self, buf: int) -> list[str]:
        return list(await self.request("nvim_buf_get_lines", buf, 0, -1, False))

    async def buffer_text(self, buf: int) -> str:
        """Buffer content as ``:write`` would put it on disk.

        Honours 'fileformat', 'eol', 'fixeol' and 'binary', so a CRLF file
        stays CRLF and a file without a final newline keeps that.
        """
        lines = await self.buffer_lines(buf)
        if lines == [""]:
            return ""
        binary = bool(await self.get_option("binary", buf=buf))
        fileformat = "unix" if binary else await self.get_option("fileformat", buf=buf)
        newline = _LINE_ENDINGS.get(fileformat, "\n")
        final_newline = bool(await self.get_option("eol", buf=buf))
        if not binary and not final_newline:
            final_newline = bool(await self.get_option("fixeol", buf=buf))
        text = newline.join(lines)
        return text + newline if final_newline else text

    async def get_option(self, name: str, *, buf: int | None = None, win: int | None = None) -> Any:
        return await self.request("nvim_get_option_value", name, _scope(buf, win))

    async def set_option(self, name: str, value: Any, *, buf: int | None = None, win: int | None = None) -> None:
        await self.request("nvim_set_option_value", name, value, _scope(buf, win))

    async def buffer_var(self, buf: int, name: str, default: Any = None) -> Any:
        try:
            return await self.request("nvim_buf_get_var", buf, name)
        except EditorRequestError:
            # Neovim reports a missing variable as an error.
            return default

    async def set_buffer_var(self, buf: int, name: str, value: Any) -> None:
        await self.request("nvim_buf_set_var", buf, name, value)

    async def is_buffer_valid(self, buf: int) -> bool:
        return bool(await self.request("nvim_buf_is_valid", buf))

    async def is_buffer_loaded(self, buf: int) -> bool:
        return bool(await self.request("nvim_buf_is_loaded", buf))

    async def is_buffer_modified(self, buf: int) -> bool:
        return bool(await self.get_option("modified", buf=buf))

    async def delete_buffer(self, buf: int, *, force: bool = True) -> None:
        await self.request("nvim_buf_delete", buf, {"force": force})

    async def find_buffer(self, predicate: BufferPredicate) -> int | None:
        for buf in await self.list_buffers():
            if await invoke_handler(predicate, buf):
                return buf
        return None

    async def find_buffer_by_path(self, path: str) -> int | None:
        """Return the buffer editing *path*, comparing by file identity."""

        async def _matches(buf: int) -> bool:
            name = await self.buffer_name(buf)
            return bool(name) and is_same_file(name, path)

        return await self.find_buffer(_matches)

    async def is_companion_buffer(self, buf: int) -> bool:
        if await self.buffer_var(buf, COMPANION_BUFFER_VAR, False):
            return True
        return await self.buffer_var(buf, COMPANION_TIMESTAMP_VAR) is not None

    async def mark_companion_buffer(self, buf: int) -> None:
        await self.set_buffer_var(buf, COMPANION_BUFFER_VAR, True)
        await self.set_buffer_var(buf, COMPANION_TIMESTAMP_VAR, int(time.time() * 1000))

    # ── Windows ──

    async def list_windows(self) -> list[int]:
        return list(await self.request("nvim_list_wins"))

    async def current_window(self) -> int:
        return int(await self.request("nvim_get_current_win"))

    async def set_current_window(self, win: int) -> None:
        await self.request("nvim_set_current_win", win)

    async def window_buffer(self, win: int) -> int:
        return int(await self.request("nvim_win_get_buf", win))

    async def close_window(self, win: int, *, force: bool = True) -> None:
        await self.request("nvim_win_close", win, force)

    async def window_cursor(self, win: int = 0) -> tuple[int, int]:
        """(1-based line, 0-based column) of the cursor in *win*."""
        line, col = await self.request("nvim_win_get_cursor", win)
        return int(line), int(col)

    async def windows_for_buffer(self, buf: int) -> list[int]:
        return [win for win in await self.list_windows() if await self.window_buffer(win) == buf]


def _scope(buf: int | None, win: int | None) -> dict[str, int]:
    scope: dict[str, int] = {}
    if buf is not None:
        scope["buf"] = buf
    if win is not None:
        scope["win"] = win
    return scope
