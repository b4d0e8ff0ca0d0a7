"""Diff review engine.

One ``DiffSession`` per in-flight review. A review shows the staged
original and proposed scratch files side by side and then waits for the
first of several racing signals:

    accept keymap (either pane)   -> accept
    reject keymap (either pane)   -> reject
    BufWinLeave on either pane    -> accept (closing the view approves it)
    close_diff() from the agent   -> accept (same as closing the windows)
    shutdown()                    -> reject

All signals feed one ``OneShot`` latch, so only the first one counts.
The engine then reads back the proposed file (accept only), tears the
review down exactly once and resolves the session's outcome.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Generic, TypeVar

from ..editor.actions import reload_from_disk
from ..editor.api import Editor
from ..editor.bridge import EventBridge
from ..errors import DiffAlreadyOpenError, EditorError, EditorUnavailableError
from ..shared.paths import normalize_path
from .outcome import Accepted, Outcome, Rejected
from .scratch import ScratchWorkspace

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OneShot(Generic[T]):
    """A value that can be set once; later attempts are ignored."""

    def __init__(self) -> None:
        self._future: asyncio.Future[T] = asyncio.get_running_loop().create_future()

    @property
    def fired(self) -> bool:
        return self._future.done()

    def fire(self, value: T) -> bool:
        """Set the value. Returns False if it was already set."""
        if self._future.done():
            return False
        self._future.set_result(value)
        return True

    async def wait(self) -> T:
        return await asyncio.shield(self._future)


class Decision(enum.Enum):
    ACCEPT = "accept"
    REJECT = "reject"


@dataclass
class DiffSession:
    """State of one review; ``target_path`` is its identity."""

    target_path: str
    old_path: Path
    new_path: Path
    proposed_content: str
    decision: OneShot[tuple[Decision, str]]
    outcome: asyncio.Future[Outcome]
    old_buffer: int | None = None
    new_buffer: int | None = None
    new_window: int | None = None
    handles: list[str] = field(default_factory=list)
    torn_down: bool = False
    _resolver: asyncio.Task | None = field(default=None, repr=False)

    @property
    def resolved(self) -> bool:
        return self.decision.fired

    @property
    def done(self) -> bool:
        return self.outcome.done()

    async def wait(self) -> Outcome:
        return await asyncio.shield(self.outcome)

    def add_done_callback(self, callback: Callable[[DiffSession, Outcome], Any]) -> None:
        """Call ``callback(session, outcome)`` once the review completes."""

        def _on_done(future: asyncio.Future[Outcome]) -> None:
            if future.cancelled() or future.exception() is not None:
                return
            try:
                callback(self, future.result())
            except Exception:
                logger.exception("Diff completion callback failed for %s", self.target_path)

        self.outcome.add_done_callback(_on_done)


class DiffReviewEngine:
    """Runs diff reviews in the editor and reports their outcomes."""

    def __init__(
        self,
        editor: Editor,
        bridge: EventBridge,
        scratch: ScratchWorkspace,
        *,
        accept_keymap: str = "<leader>aa",
        reject_keymap: str = "<leader>ad",
        reload_delay: float = 0.3,
    ) -> None:
        self._editor = editor
        self._bridge = bridge
        self._scratch = scratch
        self._accept_keymap = accept_keymap
        self._reject_keymap = reject_keymap
        self._reload_delay = reload_delay
        self._active: dict[str, DiffSession] = {}
        self._reload_tasks: set[asyncio.Task] = set()

    def get(self, target: str) -> DiffSession | None:
        return self._active.get(normalize_path(target))

    @property
    def active_paths(self) -> list[str]:
        return list(self._active)

    async def show_diff(self, target: str, new_content: str) -> Outcome:
        """Open a review and wait for its outcome."""
        session = await self.open(target, new_content)
        return await session.wait()

    async def open(self, target: str, new_content: str) -> DiffSession:
        """Stage scratch files, show the diff and arm the completion signals.

        Raises:
            EditorUnavailableError: the editor is not connected (nothing is
                written in that case).
            DiffAlreadyOpenError: *target* already has a live review.
            ScratchWriteError: staging failed; no UI was opened.
        """
        if not self._editor.connected:
            raise EditorUnavailableError()
        target = normalize_path(target)
        if target in self._active:
            raise DiffAlreadyOpenError(target)

        old_path, new_path = self._scratch.stage(target, new_content)
        loop = asyncio.get_running_loop()
        session = DiffSession(
            target_path=target,
            old_path=old_path,
            new_path=new_path,
            proposed_content=new_content,
            decision=OneShot(),
            outcome=loop.create_future(),
        )
        self._active[target] = session
        try:
            await self._show(session)
            await self._arm(session)
        except Exception:
            logger.warning("Could not open diff for %s, cleaning up", target)
            await self._teardown(session)
            session.decision.fire((Decision.REJECT, "open failed"))
            session.outcome.set_result(Rejected())
            raise

        session._resolver = loop.create_task(self._resolve(session))
        logger.info("Showing diff for %s", target)
        return session

    async def close_diff(self, target: str) -> bool:
        """Close the diff view of *target*; False when there is none.

        Closing the view is the same signal as the user closing its
        windows, so the review resolves as accepted with whatever the
        proposed pane holds.
        """
        session = self.get(target)
        if session is None:
            return False
        self._signal(session, Decision.ACCEPT, "diff closed by agent")
        await session.wait()
        return True

    async def shutdown(self) -> None:
        """Reject every live review and drop pending reloads."""
        sessions = list(self._active.values())
        for session in sessions:
            self._signal(session, Decision.REJECT, "shutting down")
        if sessions:
            await asyncio.gather(*(s.wait() for s in sessions), return_exceptions=True)
        for task in list(self._reload_tasks):
            task.cancel()
        self._reload_tasks.clear()

    async def _show(self, session: DiffSession) -> None:
        editor = self._editor
        await editor.run("tabnew", str(session.new_path))
        session.new_window = await editor.current_window()
        session.new_buffer = await editor.current_buffer()
        await editor.run("diffsplit", str(session.old_path), vertical=True)
        session.old_buffer = await editor.current_buffer()

        for buf in (session.new_buffer, session.old_buffer):
            await editor.mark_companion_buffer(buf)
            await editor.set_option("swapfile", False, buf=buf)
        await editor.set_option("modifiable", False, buf=session.old_buffer)
        await editor.set_current_window(session.new_window)

    async def _arm(self, session: DiffSession) -> None:
        def _on(decision: Decision, reason: str) -> Callable[..., bool]:
            return lambda *_args: self._signal(session, decision, reason)

        for buf in (session.new_buffer, session.old_buffer):
            session.handles.append(
                await self._bridge.register_keymap(
                    buf,
                    self._accept_keymap,
                    _on(Decision.ACCEPT, "accept keymap"),
                    desc="Accept proposed changes",
                )
            )
            session.handles.append(
                await self._bridge.register_keymap(
                    buf,
                    self._reject_keymap,
                    _on(Decision.REJECT, "reject keymap"),
                    desc="Reject proposed changes",
                )
            )
            session.handles.append(
                await self._bridge.register("BufWinLeave", _on(Decision.ACCEPT, "diff window closed"), buffer=buf)
            )

    def _signal(self, session: DiffSession, decision: Decision, reason: str) -> bool:
        if session.decision.fire((decision, reason)):
            logger.info("Diff for %s: %s (%s)", session.target_path, decision.value, reason)
        else:
            logger.debug("Ignoring %s for %s, already resolved", reason, session.target_path)
        return True

    async def _resolve(self, session: DiffSession) -> None:
        decision, _reason = await session.decision.wait()
        outcome: Outcome = Rejected()
        try:
            if decision is Decision.ACCEPT:
                outcome = Accepted(await self._read_back(session))
        finally:
            await self._teardown(session)
            if not session.outcome.done():
                session.outcome.set_result(outcome)

        if isinstance(outcome, Accepted):
            task = asyncio.get_running_loop().create_task(self._reload_later(session.target_path))
            self._reload_tasks.add(task)
            task.add_done_callback(self._reload_tasks.discard)

    async def _read_back(self, session: DiffSession) -> str:
        """Return the proposal as the reviewer left it."""
        buf = session.new_buffer
        if buf is not None and self._editor.connected:
            try:
                if await self._editor.is_buffer_valid(buf) and await self._editor.is_buffer_loaded(buf):
                    if await self._editor.is_buffer_modified(buf):
                        content = await self._editor.buffer_text(buf)
                        session.new_path.write_text(
                            content, encoding="utf-8", errors="surrogateescape", newline=""
                        )
            except (EditorError, OSError) as exc:
                logger.warning("Could not flush proposed buffer for %s: %s", session.target_path, exc)
        try:
            return self._scratch.read(session.new_path)
        except OSError as exc:
            logger.warning("Proposed file for %s unreadable (%s), using the original proposal", session.target_path, exc)
            return session.proposed_content

    async def _teardown(self, session: DiffSession) -> None:
        if session.torn_down:
            return
        session.torn_down = True
        self._bridge.unregister(session.handles)
        session.handles.clear()

        buffers = [b for b in (session.new_buffer, session.old_buffer) if b is not None]
        if buffers and self._editor.connected:
            try:
                await self._close_panes(buffers)
            except EditorError as exc:
                logger.warning("Could not close diff view for %s: %s", session.target_path, exc)

        self._scratch.discard(session.old_path, session.new_path)
        if self._active.get(session.target_path) is session:
            del self._active[session.target_path]
        logger.debug("Tore down diff for %s", session.target_path)

    async def _close_panes(self, buffers: list[int]) -> None:
        editor = self._editor
        for win in await editor.list_windows():
            try:
                if await editor.window_buffer(win) in buffers:
                    await editor.close_window(win, force=True)
            except EditorError as exc:
                # Last window of the last tab cannot be closed (E444).
                logger.debug("Could not close window %d: %s", win, exc)
        for buf in buffers:
            try:
                if await editor.is_buffer_valid(buf):
                    await editor.delete_buffer(buf, force=True)
            except EditorError as exc:
                logger.debug("Could not wipe buffer %d: %s", buf, exc)

    async def _reload_later(self, target: str) -> None:
        await asyncio.sleep(self._reload_delay)
        if not self._editor.connected:
            return
        try:
            await reload_from_disk(self._editor, target)
        except EditorError as exc:
            logger.debug("Reload of %s failed: %s", target, exc)
