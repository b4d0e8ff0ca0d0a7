"""On-disk scratch files holding the two sides of a diff review.

Names are decorated rather than random so a human can tell at a glance
which pane is the proposal:

    <dir>/<stem>.<digest>.original<suffix>
    <dir>/<stem>.<digest>.proposed<suffix>

``<dir>`` is the target's own directory unless a scratch root is
configured, in which case every review shares that one flat directory.
The digest comes from the absolute target path, so two targets with the
same basename never collide in a shared root, and the original suffix is
kept last so the editor still detects the filetype.
"""
from __future__ import annotations

import hashlib
import logging
import os
import re
from pathlib import Path

from ..errors import ScratchWriteError
from ..shared.paths import normalize_path

logger = logging.getLogger(__name__)

ORIGINAL_TAG = "original"
PROPOSED_TAG = "proposed"

_SCRATCH_NAME = re.compile(rf"\.[0-9a-f]{{8}}\.({ORIGINAL_TAG}|{PROPOSED_TAG})(\.[^.]*)?$")


class ScratchWorkspace:
    """Owns the filesystem lifecycle of review scratch files."""

    def __init__(self, root: str | Path | None = None) -> None:
        self._root = Path(normalize_path(str(root))) if root else None

    @property
    def root(self) -> Path | None:
        """Shared scratch directory, or None when staging beside the target."""
        return self._root

    def _directory_for(self, target: str) -> Path:
        return self._root if self._root is not None else Path(target).parent

    def paths_for(self, target: str) -> tuple[Path, Path]:
        """Return ``(old_path, new_path)`` for *target*."""
        target = normalize_path(target)
        digest = hashlib.sha1(target.encode("utf-8")).hexdigest()[:8]
        name = Path(target)
        stem, suffix = name.stem, name.suffix
        directory = self._directory_for(target)
        old = directory / f"{stem}.{digest}.{ORIGINAL_TAG}{suffix}"
        new = directory / f"{stem}.{digest}.{PROPOSED_TAG}{suffix}"
        return old, new

    def is_scratch_path(self, path: str | Path) -> bool:
        candidate = Path(normalize_path(str(path)))
        if self._root is not None and candidate.parent != self._root:
            return False
        return _SCRATCH_NAME.search(candidate.name) is not None

    def stage(self, target: str, new_content: str) -> tuple[Path, Path]:
        """Materialize the current content of *target* and the proposal.

        A missing target stages as empty. On any write failure both files
        are removed again and ``ScratchWriteError`` is raised.
        """
        target = normalize_path(target)
        old_path, new_path = self.paths_for(target)
        try:
            current = _read_text(target)
        except FileNotFoundError:
            current = ""
        except OSError as exc:
            raise ScratchWriteError(target, f"cannot read target: {exc}") from exc

        written: list[Path] = []
        try:
            old_path.parent.mkdir(parents=True, exist_ok=True)
            for path, content in ((old_path, current), (new_path, new_content)):
                written.append(path)
                _write_text(path, content)
        except OSError as exc:
            self.discard(*written)
            raise ScratchWriteError(str(written[-1] if written else old_path.parent), str(exc)) from exc

        logger.debug("Staged review of %s as %s / %s", target, old_path.name, new_path.name)
        return old_path, new_path

    def read(self, path: str | Path) -> str:
        return _read_text(str(path))

    def discard(self, *paths: str | Path) -> list[Path]:
        """Delete scratch files; return the ones that could not be removed."""
        failed: list[Path] = []
        for path in paths:
            path = Path(path)
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("Could not delete scratch file %s: %s", path, exc)
                failed.append(path)
        return failed


def _read_text(path: str) -> str:
    # newline="" keeps CRLF files intact; surrogateescape keeps bytes that
    # are not valid UTF-8.
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as f:
        return f.read()


def _write_text(path: Path, content: str) -> None:
    with open(path, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
