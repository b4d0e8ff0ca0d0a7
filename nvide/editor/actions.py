"""Editor flows composed from the raw API and the event bridge."""
from __future__ import annotations

import asyncio
import logging

from ..errors import EditorRequestError
from ..shared.paths import normalize_path
from .api import Editor
from .bridge import EventBridge

logger = logging.getLogger(__name__)

# Visual selection between two (1-based line, 0-based byte column) positions.
SELECT_RANGE_LUA = """
local win, start_line, start_col, end_line, end_col = ...
vim.api.nvim_set_current_win(win)
vim.cmd("normal! \\27")
vim.api.nvim_win_set_cursor(win, { start_line, start_col })
vim.cmd("normal! v")
vim.api.nvim_win_set_cursor(win, { end_line, end_col })
"""

Position = tuple[int, int]


async def edit_in_new_tab(
    editor: Editor,
    bridge: EventBridge,
    path: str,
    *,
    timeout: float = 5.0,
) -> int | None:
    """Open *path* in a new tab and wait until it is entered.

    A swap-file prompt also ends the wait: the user has to answer it
    before the buffer is entered, and that may never happen. Returns the
    buffer editing *path*, if there is one.
    """
    path = normalize_path(path)
    loop = asyncio.get_running_loop()
    entered: asyncio.Future[str] = loop.create_future()

    def _settle(reason: str) -> bool:
        if not entered.done():
            entered.set_result(reason)
        return True

    def _on_swap(event: dict) -> bool | None:
        if event.get("buf", 0) != 0:
            return _settle("swap")
        return None

    handles = [
        await bridge.register("SwapExists", _on_swap, pattern=path),
        await bridge.register("BufEnter", lambda _event: _settle("enter"), pattern=path),
    ]
    try:
        try:
            await editor.run("tabnew", path)
        except EditorRequestError as exc:
            # E325 (swap file found) and friends still open the tab.
            logger.debug("tabnew %s reported: %s", path, exc)
        try:
            reason = await asyncio.wait_for(entered, timeout)
            logger.debug("Opened %s in new tab (%s)", path, reason)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for %s to open", path)
    finally:
        bridge.unregister(handles)
    return await editor.find_buffer_by_path(path)


async def open_file(
    editor: Editor,
    bridge: EventBridge,
    path: str,
    *,
    make_frontmost: bool = True,
    timeout: float = 5.0,
) -> int | None:
    """Show *path* in the editor.

    Frontmost: focus a window already showing the file, otherwise open a
    new tab. Background: add the buffer to the buffer list only.
    """
    path = normalize_path(path)
    if not make_frontmost:
        await editor.run("badd", path)
        return await editor.find_buffer_by_path(path)

    buf = await editor.find_buffer_by_path(path)
    if buf is not None:
        windows = await editor.windows_for_buffer(buf)
        if windows:
            await editor.set_current_window(windows[0])
            return buf
    return await edit_in_new_tab(editor, bridge, path, timeout=timeout)


def find_text_range(lines: list[str], start_text: str, end_text: str = "") -> tuple[Position, Position] | None:
    """Locate the span from *start_text* through *end_text* in *lines*.

    Positions are (1-based line, 0-based byte column) as the cursor API
    expects. Without *end_text* the span covers *start_text* itself.
    Returns None when *start_text* does not occur.
    """
    if not start_text:
        return None
    text = "\n".join(lines)
    start = text.find(start_text)
    if start < 0:
        return None
    if end_text:
        end_at = text.find(end_text, start + len(start_text))
        if end_at < 0:
            end_at = text.find(end_text, start)
        end = end_at + len(end_text) - 1 if end_at >= 0 else start + len(start_text) - 1
    else:
        end = start + len(start_text) - 1
    return _position(text, start), _position(text, max(end, start))


def _position(text: str, offset: int) -> Position:
    line_start = text.rfind("\n", 0, offset) + 1
    line = text.count("\n", 0, offset) + 1
    col = len(text[line_start:offset].encode("utf-8"))
    return line, col


async def select_text(editor: Editor, buf: int, start_text: str, end_text: str = "") -> bool:
    """Visually select a text span in the window showing *buf*."""
    span = find_text_range(await editor.buffer_lines(buf), start_text, end_text)
    if span is None:
        logger.debug("Selection anchor %r not found in buffer %d", start_text, buf)
        return False
    windows = await editor.windows_for_buffer(buf)
    if not windows:
        return False
    (start_line, start_col), (end_line, end_col) = span
    await editor.exec_lua(SELECT_RANGE_LUA, [windows[0], start_line, start_col, end_line, end_col])
    return True


async def reload_from_disk(editor: Editor, path: str) -> bool:
    """Ask the editor to re-read *path* if a buffer is editing it."""
    buf = await editor.find_buffer_by_path(normalize_path(path))
    if buf is None:
        return False
    await editor.run("checktime", str(buf))
    return True
