"""The editor tools exposed to the agent."""
from __future__ import annotations

import json
import logging

from pydantic import BaseModel, ConfigDict, Field

from ..editor.actions import open_file, select_text
from ..editor.api import Editor
from ..editor.bridge import EventBridge
from ..review.engine import DiffReviewEngine, DiffSession
from ..review.outcome import Accepted, Outcome
from ..shared.paths import normalize_path
from .tools import ToolContext, ToolRegistry

logger = logging.getLogger(__name__)

DIFF_ACCEPTED = "ide/diffAccepted"
DIFF_CLOSED = "ide/diffClosed"


class _Args(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class OpenDiffArgs(_Args):
    file_path: str = Field(alias="filePath", description="Absolute path of the file to change")
    new_content: str = Field(default="", alias="newContent", description="Proposed full file content")


class FilePathArgs(_Args):
    file_path: str = Field(alias="filePath", description="Absolute path of the file")


class OpenFileArgs(_Args):
    file_path: str = Field(alias="filePath", description="Absolute path of the file to open")
    make_frontmost: bool = Field(default=True, alias="makeFrontmost", description="Focus the file in a tab")
    start_text: str = Field(default="", alias="startText", description="Text where the selection starts")
    end_text: str = Field(default="", alias="endText", description="Text where the selection ends")


def diff_notification(session: DiffSession, outcome: Outcome) -> tuple[str, dict]:
    """Map a review outcome to the notification the agent expects."""
    if isinstance(outcome, Accepted):
        return DIFF_ACCEPTED, {"filePath": session.target_path, "content": outcome.content}
    return DIFF_CLOSED, {"filePath": session.target_path}


def register_ide_tools(
    registry: ToolRegistry,
    *,
    editor: Editor,
    bridge: EventBridge,
    engine: DiffReviewEngine,
    open_timeout: float = 5.0,
) -> ToolRegistry:
    @registry.register(
        "openDiff",
        "Show proposed changes to a file as a diff in Neovim. The outcome is sent later as an "
        f"{DIFF_ACCEPTED} or {DIFF_CLOSED} notification.",
        OpenDiffArgs,
    )
    async def open_diff(args: OpenDiffArgs, ctx: ToolContext) -> str:
        session = await engine.open(args.file_path, args.new_content)

        def _report(done: DiffSession, outcome: Outcome) -> None:
            method, params = diff_notification(done, outcome)
            ctx.notify(method, params)

        session.add_done_callback(_report)
        return f"Showing diff for {session.target_path}"

    @registry.register(
        "closeDiff",
        "Close the diff view for a file. Like closing its windows by hand, this accepts the proposal.",
        FilePathArgs,
    )
    async def close_diff(args: FilePathArgs, ctx: ToolContext) -> str:
        path = normalize_path(args.file_path)
        if not await engine.close_diff(path):
            logger.debug("closeDiff for %s: no open diff", path)
        return f"Closed diff for {path}"

    @registry.register("checkDocumentDirty", "Report whether a file has unsaved changes in Neovim.", FilePathArgs)
    async def check_document_dirty(args: FilePathArgs, ctx: ToolContext) -> str:
        path = normalize_path(args.file_path)
        buf = await editor.find_buffer_by_path(path)
        if buf is None:
            return json.dumps({
                "success": False,
                "filePath": path,
                "open": False,
                "isDirty": False,
                "message": f"Document not open: {path}",
            })
        return json.dumps({
            "success": True,
            "filePath": path,
            "open": True,
            "isDirty": await editor.is_buffer_modified(buf),
        })

    @registry.register("openFile", "Open a file in Neovim and optionally select a range of text.", OpenFileArgs)
    async def open_file_tool(args: OpenFileArgs, ctx: ToolContext) -> str:
        path = normalize_path(args.file_path)
        buf = await open_file(editor, bridge, path, make_frontmost=args.make_frontmost, timeout=open_timeout)
        if not args.make_frontmost:
            return json.dumps({"success": True, "filePath": path})
        if buf is not None and args.start_text:
            await select_text(editor, buf, args.start_text, args.end_text)
        return f"Opened file: {path}"

    return registry
