"""In-memory Neovim used by the tests.

``FakeEditor`` implements the raw RPC capability set (``request``,
``channel_id``, ``add_notification_handler``, ``connected``) and models
just enough editor state (buffers, windows, tabs, autocommands, keymaps)
for every layer above the socket to run unmodified.
"""
from __future__ import annotations

import asyncio
import itertools
import os
from dataclasses import dataclass, field
from typing import Any

import pytest
import pytest_asyncio

from nvide.editor.actions import SELECT_RANGE_LUA
from nvide.editor.api import Editor
from nvide.editor.bridge import AUTOCMD_NOTIFICATION, INSTALL_AUTOCMD_LUA, INSTALL_KEYMAP_LUA, EventBridge
from nvide.editor.client import invoke_handler
from nvide.errors import EditorRequestError, EditorUnavailableError


@dataclass
class FakeBuffer:
    id: int
    name: str
    lines: list[str]
    loaded: bool = True
    options: dict[str, Any] = field(default_factory=lambda: {
        "buftype": "",
        "buflisted": True,
        "modified": False,
        "modifiable": True,
        "swapfile": True,
        "fileformat": "unix",
        "eol": True,
        "fixeol": True,
        "binary": False,
    })
    vars: dict[str, Any] = field(default_factory=dict)


@dataclass
class FakeWindow:
    id: int
    buf: int
    tab: int
    cursor: list[int] = field(default_factory=lambda: [1, 0])


@dataclass
class FakeAutocmd:
    id: int
    events: list[str]
    buffer: int
    pattern: str
    handle: str
    method: str


@dataclass
class FakeKeymap:
    buffer: int
    mode: str
    lhs: str
    handle: str
    method: str
    desc: str


def _load(path: str) -> tuple[list[str], dict[str, Any]]:
    """Read *path* the way Neovim splits it into lines."""
    try:
        with open(path, encoding="utf-8", newline="") as f:
            text = f.read()
    except OSError:
        return [""], {}
    newline = "\r\n" if "\r\n" in text else "\n"
    eol = text.endswith(newline)
    if eol:
        text = text[: -len(newline)]
    return text.split(newline), {"fileformat": "dos" if newline == "\r\n" else "unix", "eol": eol}


class FakeEditor:
    """Minimal stand-in for a Neovim instance."""

    def __init__(self) -> None:
        self.connected = True
        self.buffers: dict[int, FakeBuffer] = {}
        self.windows: dict[int, FakeWindow] = {}
        self.autocmds: dict[int, FakeAutocmd] = {}
        self.keymaps: list[FakeKeymap] = []
        self.commands: list[tuple[str, list[str]]] = []
        self.selections: list[list[Any]] = []
        self.swap_exists: set[str] = set()
        self.fail_methods: dict[str, str] = {}
        # Editor working directory; None reports absolute <afile> names.
        self.cwd: str | None = None
        self.handlers: list = []
        self.calls: list[str] = []
        self.errors: list[Exception] = []
        self._buf_ids = itertools.count(1)
        self._win_ids = itertools.count(1000)
        self._tab_ids = itertools.count(1)
        self._autocmd_ids = itertools.count(1)
        self._queue: asyncio.Queue | None = None
        self._dispatcher: asyncio.Task | None = None

        first = self._new_buffer("")
        self.current_win = self._new_window(first.id, next(self._tab_ids))

    # ── EditorChannel ──

    async def request(self, method: str, *args: Any) -> Any:
        if not self.connected:
            raise EditorUnavailableError()
        self.calls.append(method)
        if method in self.fail_methods:
            raise EditorRequestError(method, self.fail_methods[method])
        handler = getattr(self, f"_api_{method}", None)
        if handler is None:
            raise EditorRequestError(method, "Invalid method name")
        return handler(*args)

    async def channel_id(self) -> int:
        return 7

    def add_notification_handler(self, handler) -> None:
        self.handlers.append(handler)

    # ── Test helpers ──

    @property
    def current_buf(self) -> int:
        return self.windows[self.current_win].buf

    def open_buffer(self, path: str, *, focus: bool = True) -> int:
        """Show *path* in a new window, as if the user had opened it."""
        buf = self._buffer_for(path)
        tab = self.windows[self.current_win].tab
        win = self._new_window(buf.id, tab)
        if focus:
            self.current_win = win
        return buf.id

    def buffer_by_name(self, name: str) -> FakeBuffer | None:
        return next((b for b in self.buffers.values() if b.name == name), None)

    def edit(self, buf: int, lines: list[str]) -> None:
        self.buffers[buf].lines = list(lines)
        self.buffers[buf].options["modified"] = True

    def fire(self, event: str, buf: int) -> None:
        """Fire *event* for *buf*, delivering to matching autocommands."""
        name = self.buffers[buf].name if buf in self.buffers else ""
        # <afile> is the short name, relative to the editor's cwd.
        short = name
        if self.cwd and name.startswith(self.cwd.rstrip(os.sep) + os.sep):
            short = os.path.relpath(name, self.cwd)
        for autocmd in list(self.autocmds.values()):
            if event not in autocmd.events:
                continue
            if autocmd.buffer >= 0 and autocmd.buffer != buf:
                continue
            if autocmd.pattern and autocmd.pattern != name:
                continue
            self._notify(
                autocmd.method,
                [autocmd.handle, {"event": event, "buf": buf, "file": short, "match": short, "name": name}],
            )

    def press(self, buf: int, lhs: str, mode: str = "n") -> None:
        for keymap in list(self.keymaps):
            if keymap.buffer == buf and keymap.lhs == lhs and keymap.mode == mode:
                self._notify(keymap.method, [keymap.handle, {"buf": buf, "lhs": lhs}])

    def windows_showing(self, buf: int) -> list[int]:
        return [w.id for w in self.windows.values() if w.buf == buf]

    async def drain(self) -> None:
        """Wait until every queued notification has been handled."""
        if self._queue is not None:
            await self._queue.join()
        # Let tasks spawned by handlers take their next step.
        for _ in range(5):
            await asyncio.sleep(0)

    async def close(self) -> None:
        if self._dispatcher is not None:
            self._dispatcher.cancel()
            try:
                await self._dispatcher
            except asyncio.CancelledError:
                pass

    # ── Internals ──

    def _notify(self, method: str, args: list[Any]) -> None:
        if self._queue is None:
            self._queue = asyncio.Queue()
            self._dispatcher = asyncio.get_running_loop().create_task(self._dispatch())
        self._queue.put_nowait((method, args))

    async def _dispatch(self) -> None:
        assert self._queue is not None
        while True:
            method, args = await self._queue.get()
            try:
                for handler in list(self.handlers):
                    await invoke_handler(handler, method, args)
            except Exception as exc:
                self.errors.append(exc)
            finally:
                self._queue.task_done()

    def _new_buffer(self, name: str, *, loaded: bool = True) -> FakeBuffer:
        buf = FakeBuffer(id=next(self._buf_ids), name=name, lines=[""], loaded=False)
        self.buffers[buf.id] = buf
        if loaded:
            self._load_buffer(buf)
        return buf

    @staticmethod
    def _load_buffer(buf: FakeBuffer) -> None:
        lines, options = _load(buf.name) if buf.name else ([""], {})
        buf.lines = lines
        buf.options.update(options)
        buf.loaded = True

    def _buffer_for(self, path: str, *, loaded: bool = True) -> FakeBuffer:
        name = os.path.abspath(path) if path else ""
        existing = self.buffer_by_name(name) if name else None
        if existing is not None:
            if loaded and not existing.loaded:
                self._load_buffer(existing)
            return existing
        return self._new_buffer(name, loaded=loaded)

    def _new_window(self, buf: int, tab: int) -> int:
        win = FakeWindow(id=next(self._win_ids), buf=buf, tab=tab)
        self.windows[win.id] = win
        return win.id

    def _remove_window(self, win: int) -> None:
        removed = self.windows.pop(win)
        if self.current_win == win:
            same_tab = [w.id for w in self.windows.values() if w.tab == removed.tab]
            self.current_win = (same_tab or list(self.windows))[-1]
        if not self.windows_showing(removed.buf):
            self.fire("BufWinLeave", removed.buf)

    # ── Raw API ──

    def _api_nvim_get_api_info(self) -> list[Any]:
        return [7, {}]

    def _api_nvim_command(self, command: str) -> None:
        self.commands.append((command, []))

    def _api_nvim_cmd(self, spec: dict[str, Any], _opts: dict[str, Any]) -> str:
        cmd = spec["cmd"]
        args = list(spec.get("args", []))
        self.commands.append((cmd, args))
        path = args[0] if args else ""
        if cmd == "tabnew":
            buf = self._buffer_for(path)
            self.current_win = self._new_window(buf.id, next(self._tab_ids))
            if buf.name in self.swap_exists:
                self.fire("SwapExists", buf.id)
                raise EditorRequestError("nvim_cmd", "Vim(tabnew):E325: ATTENTION")
            self.fire("BufEnter", buf.id)
        elif cmd in ("diffsplit", "split", "vsplit"):
            buf = self._buffer_for(path)
            tab = self.windows[self.current_win].tab
            self.current_win = self._new_window(buf.id, tab)
            self.fire("BufEnter", buf.id)
        elif cmd == "edit":
            buf = self._buffer_for(path)
            self.windows[self.current_win].buf = buf.id
            self.fire("BufEnter", buf.id)
        elif cmd == "badd":
            self._buffer_for(path, loaded=False)
        return ""

    def _api_nvim_exec_lua(self, code: str, args: list[Any]) -> Any:
        if code == INSTALL_AUTOCMD_LUA:
            events, buffer, pattern, handle, _channel, method = args
            autocmd = FakeAutocmd(next(self._autocmd_ids), list(events), buffer, pattern, handle, method)
            self.autocmds[autocmd.id] = autocmd
            return autocmd.id
        if code == INSTALL_KEYMAP_LUA:
            buffer, mode, lhs, handle, _channel, method, desc = args
            self.keymaps.append(FakeKeymap(buffer, mode, lhs, handle, method, desc))
            return None
        if code == SELECT_RANGE_LUA:
            self.selections.append(list(args))
            self.current_win = args[0]
            return None
        raise EditorRequestError("nvim_exec_lua", "unexpected Lua chunk")

    def _api_nvim_del_autocmd(self, autocmd_id: int) -> None:
        if self.autocmds.pop(autocmd_id, None) is None:
            raise EditorRequestError("nvim_del_autocmd", f"Invalid autocmd id: {autocmd_id}")

    def _api_nvim_list_bufs(self) -> list[int]:
        return list(self.buffers)

    def _api_nvim_get_current_buf(self) -> int:
        return self.current_buf

    def _api_nvim_buf_get_name(self, buf: int) -> str:
        return self._buf(buf).name

    def _api_nvim_buf_get_lines(self, buf: int, start: int, end: int, _strict: bool) -> list[str]:
        return list(self._buf(buf).lines)

    def _api_nvim_get_option_value(self, name: str, scope: dict[str, int]) -> Any:
        if "buf" in scope:
            return self._buf(scope["buf"]).options.get(name)
        return None

    def _api_nvim_set_option_value(self, name: str, value: Any, scope: dict[str, int]) -> None:
        if "buf" in scope:
            self._buf(scope["buf"]).options[name] = value

    def _api_nvim_buf_get_var(self, buf: int, name: str) -> Any:
        variables = self._buf(buf).vars
        if name not in variables:
            raise EditorRequestError("nvim_buf_get_var", f"Key not found: {name}")
        return variables[name]

    def _api_nvim_buf_set_var(self, buf: int, name: str, value: Any) -> None:
        self._buf(buf).vars[name] = value

    def _api_nvim_buf_is_valid(self, buf: int) -> bool:
        return buf in self.buffers

    def _api_nvim_buf_is_loaded(self, buf: int) -> bool:
        return buf in self.buffers and self.buffers[buf].loaded

    def _api_nvim_buf_delete(self, buf: int, _opts: dict[str, Any]) -> None:
        self._buf(buf)
        for win in self.windows_showing(buf):
            if len(self.windows) == 1:
                self.windows[win].buf = self._new_buffer("").id
                self.fire("BufWinLeave", buf)
            else:
                self._remove_window(win)
        self.fire("BufWipeout", buf)
        del self.buffers[buf]
        self.autocmds = {k: a for k, a in self.autocmds.items() if a.buffer != buf}
        self.keymaps = [k for k in self.keymaps if k.buffer != buf]

    def _api_nvim_get_current_win(self) -> int:
        return self.current_win

    def _api_nvim_set_current_win(self, win: int) -> None:
        self._win(win)
        self.current_win = win

    def _api_nvim_list_wins(self) -> list[int]:
        return list(self.windows)

    def _api_nvim_win_get_buf(self, win: int) -> int:
        return self._win(win).buf

    def _api_nvim_win_close(self, win: int, _force: bool) -> None:
        self._win(win)
        if len(self.windows) == 1:
            raise EditorRequestError("nvim_win_close", "Vim:E444: Cannot close last window")
        self._remove_window(win)

    def _api_nvim_win_get_cursor(self, win: int) -> list[int]:
        return list(self._win(self.current_win if win == 0 else win).cursor)

    def _buf(self, buf: int) -> FakeBuffer:
        if buf not in self.buffers:
            raise EditorRequestError("buffer", f"Invalid buffer id: {buf}")
        return self.buffers[buf]

    def _win(self, win: int) -> FakeWindow:
        if win not in self.windows:
            raise EditorRequestError("window", f"Invalid window id: {win}")
        return self.windows[win]


@pytest_asyncio.fixture
async def fake_nvim():
    fake = FakeEditor()
    yield fake
    await fake.close()


@pytest.fixture
def editor(fake_nvim: FakeEditor) -> Editor:
    return Editor(fake_nvim)


@pytest.fixture
def bridge(editor: Editor) -> EventBridge:
    return EventBridge(editor, method=AUTOCMD_NOTIFICATION)
