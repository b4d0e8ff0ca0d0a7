from __future__ import annotations

import asyncio
import json
from pathlib import Path

import pytest

from nvide.editor.actions import edit_in_new_tab, find_text_range, open_file
from nvide.review.engine import DiffReviewEngine
from nvide.review.scratch import ScratchWorkspace
from nvide.server.ide_tools import DIFF_ACCEPTED, DIFF_CLOSED, register_ide_tools
from nvide.server.tools import ToolContext, ToolRegistry


@pytest.fixture
def engine(editor, bridge, tmp_path: Path) -> DiffReviewEngine:
    return DiffReviewEngine(editor, bridge, ScratchWorkspace(tmp_path / "scratch"), reload_delay=0)


@pytest.fixture
def tools(editor, bridge, engine) -> ToolRegistry:
    return register_ide_tools(ToolRegistry(), editor=editor, bridge=bridge, engine=engine, open_timeout=1.0)


@pytest.fixture
def notified() -> list:
    return []


@pytest.fixture
def ctx(notified) -> ToolContext:
    return ToolContext(session_id="s1", notify=lambda method, params: notified.append((method, params)))


@pytest.fixture
def source(tmp_path: Path) -> Path:
    path = tmp_path / "main.py"
    path.write_text("def main():\n    return 1\n", encoding="utf-8")
    return path


def _text(result) -> str:
    return result.content[0].text


def test_tool_names(tools) -> None:
    assert [t.name for t in tools.list_tools()] == ["openDiff", "closeDiff", "checkDocumentDirty", "openFile"]
    schema = next(t for t in tools.list_tools() if t.name == "openDiff").inputSchema
    assert set(schema["properties"]) == {"filePath", "newContent"}


@pytest.mark.asyncio
async def test_open_diff_notifies_accept_with_content(fake_nvim, tools, engine, ctx, notified, source) -> None:
    result = await tools.call("openDiff", {"filePath": str(source), "newContent": "def main():\n    return 2\n"}, ctx)

    assert not result.isError
    assert _text(result) == f"Showing diff for {source}"
    assert notified == []

    session = engine.get(str(source))
    fake_nvim.press(session.new_buffer, "<leader>aa")
    await fake_nvim.drain()
    await asyncio.wait_for(session.wait(), timeout=5)
    await asyncio.sleep(0)

    assert notified == [(DIFF_ACCEPTED, {"filePath": str(source), "content": "def main():\n    return 2\n"})]


@pytest.mark.asyncio
async def test_close_diff_accepts_the_proposal(fake_nvim, tools, engine, ctx, notified, source) -> None:
    await tools.call("openDiff", {"filePath": str(source), "newContent": "x\n"}, ctx)

    result = await tools.call("closeDiff", {"filePath": str(source)}, ctx)
    await asyncio.sleep(0)

    assert _text(result) == f"Closed diff for {source}"
    assert notified == [(DIFF_ACCEPTED, {"filePath": str(source), "content": "x\n"})]
    assert engine.active_paths == []


@pytest.mark.asyncio
async def test_reject_keymap_notifies_closed(fake_nvim, tools, engine, ctx, notified, source) -> None:
    await tools.call("openDiff", {"filePath": str(source), "newContent": "x\n"}, ctx)
    session = engine.get(str(source))

    fake_nvim.press(session.old_buffer, "<leader>ad")
    await fake_nvim.drain()
    await asyncio.wait_for(session.wait(), timeout=5)
    await asyncio.sleep(0)

    assert notified == [(DIFF_CLOSED, {"filePath": str(source)})]


@pytest.mark.asyncio
async def test_close_diff_without_review_succeeds(tools, ctx, notified, source) -> None:
    result = await tools.call("closeDiff", {"filePath": str(source)}, ctx)

    assert not result.isError
    assert notified == []


@pytest.mark.asyncio
async def test_open_diff_errors_become_error_results(fake_nvim, tools, ctx, source) -> None:
    await tools.call("openDiff", {"filePath": str(source), "newContent": "a\n"}, ctx)
    again = await tools.call("openDiff", {"filePath": str(source), "newContent": "b\n"}, ctx)
    assert again.isError
    assert "already open" in _text(again)

    fake_nvim.connected = False
    other = await tools.call("openDiff", {"filePath": str(source.with_name("other.py"))}, ctx)
    assert other.isError
    assert _text(other) == "Not connected to Neovim"


@pytest.mark.asyncio
async def test_check_document_dirty(fake_nvim, tools, ctx, source) -> None:
    closed = json.loads(_text(await tools.call("checkDocumentDirty", {"filePath": str(source)}, ctx)))
    assert closed["success"] is False
    assert closed["message"] == f"Document not open: {source}"

    buf = fake_nvim.open_buffer(str(source))
    clean = json.loads(_text(await tools.call("checkDocumentDirty", {"filePath": str(source)}, ctx)))
    assert (clean["success"], clean["isDirty"]) == (True, False)

    fake_nvim.edit(buf, ["changed"])
    dirty = json.loads(_text(await tools.call("checkDocumentDirty", {"filePath": str(source)}, ctx)))
    assert dirty["isDirty"] is True


@pytest.mark.asyncio
async def test_open_file_in_new_tab_with_selection(fake_nvim, bridge, tools, ctx, source) -> None:
    result = await tools.call(
        "openFile",
        {"filePath": str(source), "startText": "return", "endText": "1"},
        ctx,
    )

    assert _text(result) == f"Opened file: {source}"
    assert fake_nvim.commands == [("tabnew", [str(source)])]
    buf = fake_nvim.buffer_by_name(str(source)).id
    [win] = fake_nvim.windows_showing(buf)
    assert fake_nvim.selections == [[win, 2, 4, 2, 11]]
    await bridge.wait_idle()
    assert len(bridge) == 0


@pytest.mark.asyncio
async def test_open_file_in_background_only_adds_buffer(fake_nvim, tools, ctx, source) -> None:
    result = await tools.call("openFile", {"filePath": str(source), "makeFrontmost": False}, ctx)

    assert json.loads(_text(result)) == {"success": True, "filePath": str(source)}
    assert fake_nvim.commands == [("badd", [str(source)])]
    assert fake_nvim.buffer_by_name(str(source)).loaded is False


@pytest.mark.asyncio
async def test_open_file_focuses_existing_window(fake_nvim, editor, bridge, source) -> None:
    buf = fake_nvim.open_buffer(str(source))
    [win] = fake_nvim.windows_showing(buf)
    fake_nvim.open_buffer(str(source.with_name("other.py")))

    assert await open_file(editor, bridge, str(source)) == buf

    assert fake_nvim.current_win == win
    assert fake_nvim.commands == []


@pytest.mark.asyncio
async def test_swap_prompt_ends_the_wait(fake_nvim, editor, bridge, source) -> None:
    fake_nvim.swap_exists.add(str(source))

    buf = await asyncio.wait_for(edit_in_new_tab(editor, bridge, str(source), timeout=3), timeout=1)

    assert buf == fake_nvim.buffer_by_name(str(source)).id


@pytest.mark.asyncio
async def test_open_wait_times_out(fake_nvim, editor, bridge, source, caplog) -> None:
    # The command fails and no BufEnter arrives, so only the timeout ends the wait.
    fake_nvim.fail_methods["nvim_cmd"] = "E37: No write since last change"

    assert await edit_in_new_tab(editor, bridge, str(source), timeout=0.05) is None
    assert "Timed out waiting" in caplog.text


def test_find_text_range() -> None:
    lines = ["def main():", "    return 1", ""]

    assert find_text_range(lines, "return") == ((2, 4), (2, 9))
    assert find_text_range(lines, "main", "1") == ((1, 4), (2, 11))
    assert find_text_range(lines, "main", "missing") == ((1, 4), (1, 7))
    assert find_text_range(lines, "absent") is None
    assert find_text_range(lines, "") is None


def test_find_text_range_uses_byte_columns() -> None:
    assert find_text_range(["héllo wörld"], "wörld") == ((1, 7), (1, 12))
