"""Event bridge from Neovim hooks to Python callbacks.

Every autocommand or keymap installed through the bridge forwards its
fires over the RPC channel as one notification method carrying an opaque
handle. The bridge keeps a table from handle to callback and dispatches
each notification to the matching registration.

Editor-side hooks are best effort: when forwarding fails (the channel is
gone) the hook removes itself so dead hooks do not pile up after a
disconnect.
"""
from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from typing import Any

from ..errors import EditorError
from .api import Editor
from .client import invoke_handler

logger = logging.getLogger(__name__)

AUTOCMD_NOTIFICATION = "nvim_AUTOCMD_CALLBACK"

# Signature: callback(*event_args) -> None | bool | awaitable[bool | None]
# A truthy result removes the registration.
BridgeCallback = Callable[..., Awaitable[bool | None] | bool | None]

INSTALL_AUTOCMD_LUA = """
local events, buffer, pattern, handle, channel, method = ...
local opts = {
  callback = function(args)
    local ok = pcall(vim.rpcnotify, channel, method, handle, {
      event = args.event, buf = args.buf, file = args.file, match = args.match,
      name = vim.api.nvim_buf_get_name(args.buf),
    })
    if not ok then
      return true
    end
  end,
}
if buffer >= 0 then
  opts.buffer = buffer
end
if pattern ~= "" then
  opts.pattern = pattern
end
return vim.api.nvim_create_autocmd(events, opts)
"""

INSTALL_KEYMAP_LUA = """
local buffer, mode, lhs, handle, channel, method, desc = ...
vim.keymap.set(mode, lhs, function()
  local ok = pcall(vim.rpcnotify, channel, method, handle, { buf = buffer, lhs = lhs })
  if not ok then
    pcall(vim.keymap.del, mode, lhs, { buffer = buffer })
  end
end, { buffer = buffer, nowait = true, silent = true, desc = desc })
"""


@dataclass
class Registration:
    """One entry of the handle -> callback table."""

    handle: str
    callback: BridgeCallback
    events: tuple[str, ...] = ()
    buffer: int | None = None
    pattern: str | None = None
    keymap: tuple[str, str] | None = None  # (mode, lhs)
    editor_id: int | None = field(default=None, repr=False)


class EventBridge:
    """Multiplexes editor hooks over one notification method."""

    def __init__(self, editor: Editor, *, method: str = AUTOCMD_NOTIFICATION) -> None:
        self._editor = editor
        self._method = method
        self._registrations: dict[str, Registration] = {}
        self._handles = itertools.count(1)
        self._subscribed = False
        self._cleanup_tasks: set[asyncio.Task] = set()

    @property
    def method(self) -> str:
        return self._method

    def __contains__(self, handle: object) -> bool:
        return handle in self._registrations

    def __len__(self) -> int:
        return len(self._registrations)

    def _ensure_subscribed(self) -> None:
        if not self._subscribed:
            self._editor.add_notification_handler(self.handle_notification)
            self._subscribed = True

    def _add(self, registration: Registration) -> None:
        self._ensure_subscribed()
        self._registrations[registration.handle] = registration

    async def register(
        self,
        events: str | Iterable[str],
        callback: BridgeCallback,
        *,
        buffer: int | None = None,
        pattern: str | None = None,
    ) -> str:
        """Install an autocommand and return its handle.

        The callback receives the event table (``event``, ``buf``,
        ``file``, ``match``, ``name``). ``file`` is ``<afile>`` and may be
        relative to the editor's cwd; ``name`` is the buffer's full name.
        """
        event_names = (events,) if isinstance(events, str) else tuple(events)
        handle = f"autocmd_{next(self._handles)}"
        registration = Registration(
            handle=handle,
            callback=callback,
            events=event_names,
            buffer=buffer,
            pattern=pattern,
        )
        # Table entry first so a fire racing the install is not dropped.
        self._add(registration)
        try:
            channel = await self._editor.channel_id()
            registration.editor_id = await self._editor.exec_lua(
                INSTALL_AUTOCMD_LUA,
                [list(event_names), -1 if buffer is None else buffer, pattern or "", handle, channel, self._method],
            )
        except EditorError:
            self._registrations.pop(handle, None)
            raise
        logger.debug("Registered %s for %s (buffer=%s pattern=%s)", handle, ",".join(event_names), buffer, pattern)
        return handle

    async def register_keymap(
        self,
        buffer: int,
        lhs: str,
        callback: BridgeCallback,
        *,
        mode: str = "n",
        desc: str = "",
    ) -> str:
        """Install a buffer-local keymap and return its handle."""
        handle = f"keymap_{next(self._handles)}"
        self._add(Registration(handle=handle, callback=callback, buffer=buffer, keymap=(mode, lhs)))
        try:
            channel = await self._editor.channel_id()
            await self._editor.exec_lua(
                INSTALL_KEYMAP_LUA,
                [buffer, mode, lhs, handle, channel, self._method, desc],
            )
        except EditorError:
            self._registrations.pop(handle, None)
            raise
        logger.debug("Registered %s for %s on buffer %d", handle, lhs, buffer)
        return handle

    def unregister(self, handles: str | Iterable[str]) -> None:
        """Drop registrations; unknown handles are ignored."""
        if isinstance(handles, str):
            handles = [handles]
        stale_autocmds: list[int] = []
        for handle in handles:
            registration = self._registrations.pop(handle, None)
            if registration is not None and registration.editor_id is not None:
                stale_autocmds.append(registration.editor_id)
        if stale_autocmds and self._editor.connected:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                return
            task = loop.create_task(self._delete_autocmds(stale_autocmds))
            self._cleanup_tasks.add(task)
            task.add_done_callback(self._cleanup_tasks.discard)

    async def _delete_autocmds(self, autocmd_ids: list[int]) -> None:
        for autocmd_id in autocmd_ids:
            try:
                await self._editor.request("nvim_del_autocmd", autocmd_id)
            except EditorError as exc:
                # Already gone (buffer wiped or self-deleted hook).
                logger.debug("Could not delete autocmd %s: %s", autocmd_id, exc)

    async def handle_notification(self, method: str, args: list[Any]) -> None:
        """Dispatch one inbound notification to its registration."""
        if method != self._method or not args:
            return
        handle, *rest = args
        registration = self._registrations.get(handle)
        if registration is None:
            logger.debug("Dropping event for unknown handle %s", handle)
            return
        try:
            result = await invoke_handler(registration.callback, *rest)
        except Exception:
            logger.exception("Bridge callback for %s failed", handle)
            return
        if result and self._registrations.get(handle) is registration:
            self.unregister(handle)

    async def wait_idle(self) -> None:
        """Wait for pending editor-side cleanup to finish."""
        if self._cleanup_tasks:
            await asyncio.gather(*list(self._cleanup_tasks), return_exceptions=True)
