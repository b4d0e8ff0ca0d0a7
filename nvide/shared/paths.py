"""Path helpers shared by the editor, review and context layers."""
from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import unquote, urlparse


def normalize_path(path_or_url: str) -> str:
    """Return an absolute filesystem path for a path or ``file://`` URL."""
    if path_or_url.startswith("file://"):
        parsed = urlparse(path_or_url)
        path_or_url = unquote(parsed.path)
    return os.path.abspath(os.path.expanduser(path_or_url))


def is_same_file(a: str, b: str) -> bool:
    """True when *a* and *b* name the same file (same device and inode)."""
    if a == b:
        return True
    try:
        a_stat = os.stat(a)
        b_stat = os.stat(b)
    except OSError:
        return False
    return a_stat.st_dev == b_stat.st_dev and a_stat.st_ino == b_stat.st_ino


def is_regular_file(path: str) -> bool:
    try:
        return Path(path).is_file()
    except OSError:
        return False
