"""Recency list of files the user touched in the editor.

The tracker is fed buffer events, keeps at most ``max_files`` entries
(most recent first, at most one active) and coalesces bursts of changes
into a single listener call per debounce window.
"""
from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..editor.api import Editor
from ..editor.bridge import EventBridge
from ..errors import EditorError
from ..shared.paths import is_regular_file, normalize_path

logger = logging.getLogger(__name__)

# Signature: listener(snapshot) -> None | awaitable
ContextListener = Callable[[dict[str, Any]], Awaitable[None] | None]

_EVENT_KINDS = {
    "BufEnter": "enter",
    "BufWritePost": "write",
    "BufDelete": "delete",
    "BufWipeout": "delete",
}


class BufferEvent(str, enum.Enum):
    ENTER = "enter"
    WRITE = "write"
    DELETE = "delete"


@dataclass
class TrackedFile:
    path: str
    timestamp: int  # ms since epoch
    is_active: bool = False
    cursor: tuple[int, int] | None = None  # (0-based line, 0-based character)

    def to_dict(self) -> dict[str, Any]:
        entry: dict[str, Any] = {
            "path": self.path,
            "timestamp": self.timestamp,
            "isActive": self.is_active,
        }
        if self.is_active and self.cursor is not None:
            entry["cursor"] = {"line": self.cursor[0], "character": self.cursor[1]}
        return entry


def _now_ms() -> int:
    return int(time.time() * 1000)


class OpenFileTracker:
    """Bounded, recency-ordered list of open files."""

    def __init__(
        self,
        max_files: int = 10,
        debounce: float = 0.05,
        clock: Callable[[], int] = _now_ms,
        ignore: Callable[[str], bool] | None = None,
    ) -> None:
        if max_files < 1:
            raise ValueError("max_files must be at least 1")
        self._max_files = max_files
        self._debounce = debounce
        self._clock = clock
        # Paths the companion itself puts in the editor (review scratch files).
        self._ignore = ignore
        self._files: list[TrackedFile] = []
        self._listeners: list[ContextListener] = []
        self._timer: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task] = set()
        self._handles: list[str] = []
        self._bridge: EventBridge | None = None

    @property
    def files(self) -> list[TrackedFile]:
        return list(self._files)

    @property
    def active_file(self) -> TrackedFile | None:
        return next((f for f in self._files if f.is_active), None)

    def add_listener(self, listener: ContextListener) -> None:
        self._listeners.append(listener)

    def snapshot(self) -> dict[str, Any]:
        return {
            "workspaceState": {
                "openFiles": [f.to_dict() for f in self._files],
                "isTrusted": True,
            }
        }

    def on_buffer_event(
        self,
        kind: BufferEvent | str,
        path: str,
        *,
        focused: bool = True,
        transient: bool = False,
        cursor: tuple[int, int] | None = None,
    ) -> None:
        """Apply one buffer event and restart the debounce timer."""
        kind = BufferEvent(kind)
        if transient or not path:
            return
        path = normalize_path(path)
        if self._ignore is not None and self._ignore(path):
            return

        if kind is BufferEvent.DELETE:
            before = len(self._files)
            self._files = [f for f in self._files if f.path != path]
            if len(self._files) == before:
                return
        else:
            entry = next((f for f in self._files if f.path == path), None)
            if entry is not None:
                self._files.remove(entry)
            else:
                entry = TrackedFile(path=path, timestamp=0)
            entry.timestamp = self._clock()
            if focused:
                for other in self._files:
                    other.is_active = False
                entry.is_active = True
                entry.cursor = cursor
            self._files.insert(0, entry)
            del self._files[self._max_files:]

        self._schedule()

    def _schedule(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (synchronous use): deliver immediately.
            self._flush()
            return
        self._timer = loop.call_later(self._debounce, self._flush)

    def _flush(self) -> None:
        self._timer = None
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                result = listener(snapshot)
            except Exception:
                logger.exception("Context listener failed")
                continue
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Context listener failed: %s", task.exception())

    async def attach(self, editor: Editor, bridge: EventBridge) -> None:
        """Seed from the editor's listed buffers and follow buffer events."""
        current = await editor.current_buffer()
        for buf in await editor.list_buffers():
            if not await editor.get_option("buflisted", buf=buf):
                continue
            path = await self._file_path(editor, buf)
            if path is not None:
                self.on_buffer_event(BufferEvent.ENTER, path, focused=False)
        # Re-enter the current buffer last so it ends up first and active.
        path = await self._file_path(editor, current)
        if path is not None:
            self.on_buffer_event(BufferEvent.ENTER, path, focused=True, cursor=await self._cursor(editor))

        async def _on_event(event: dict[str, Any]) -> None:
            await self._handle_editor_event(editor, event)

        self._bridge = bridge
        self._handles.append(await bridge.register(list(_EVENT_KINDS), _on_event))

    async def _handle_editor_event(self, editor: Editor, event: dict[str, Any]) -> None:
        kind = _EVENT_KINDS.get(event.get("event", ""))
        if kind is None:
            return
        buf = int(event.get("buf", 0))
        try:
            if kind == "delete":
                # <afile> is relative to the editor's cwd, not ours.
                name = event.get("name") or await editor.buffer_name(buf)
                if name:
                    self.on_buffer_event(BufferEvent.DELETE, name)
                return
            path = await self._file_path(editor, buf)
            if path is None:
                return
            focused = await editor.current_buffer() == buf
            cursor = await self._cursor(editor) if focused else None
            self.on_buffer_event(kind, path, focused=focused, cursor=cursor)
        except EditorError as exc:
            logger.debug("Skipping %s for buffer %d: %s", kind, buf, exc)

    async def _file_path(self, editor: Editor, buf: int) -> str | None:
        """Return the file behind *buf*, or None for transient buffers."""
        if await editor.get_option("buftype", buf=buf):
            return None
        name = await editor.buffer_name(buf)
        if not name or name.startswith("term://"):
            return None
        if await editor.is_companion_buffer(buf):
            return None
        if not is_regular_file(name):
            return None
        return name

    @staticmethod
    async def _cursor(editor: Editor) -> tuple[int, int]:
        line, col = await editor.window_cursor(0)
        return line - 1, col

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._bridge is not None and self._handles:
            self._bridge.unregister(self._handles)
        self._handles.clear()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
