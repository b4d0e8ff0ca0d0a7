"""Discovery files that let the agent and the editor plugin find us.

    <lock_dir>/<port>.lock        JSON descriptor read by the agent
    <port_file_dir>/<address>     listen port, read by the Neovim plugin

The port file name is the Neovim server address with "/" replaced by "_".
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..shared.durable_write import atomic_write_text

logger = logging.getLogger(__name__)

LOCK_FILE_MODE = 0o600


@dataclass
class LockFileInfo:
    workspace_folders: list[str]
    ide_name: str = "Neovim"
    transport: str = "sse"
    auth_token: str = ""
    pid: int = field(default_factory=os.getpid)

    def to_json(self) -> dict[str, Any]:
        return {
            "pid": self.pid,
            "workspaceFolders": list(self.workspace_folders),
            "ideName": self.ide_name,
            "transport": self.transport,
            "authToken": self.auth_token,
        }


def read_lock_file(path: str | Path) -> dict[str, Any]:
    return json.loads(Path(path).read_text(encoding="utf-8"))


def port_file_name(nvim_address: str) -> str:
    return nvim_address.replace("/", "_")


class DiscoveryFiles:
    """Writes and removes the lock file and port file for one server."""

    def __init__(self, lock_dir: str | Path, port_file_dir: str | Path, nvim_address: str | None = None) -> None:
        self._lock_dir = Path(lock_dir).expanduser()
        self._port_file_dir = Path(port_file_dir)
        self._nvim_address = nvim_address
        self._written: list[Path] = []

    @property
    def written(self) -> list[Path]:
        return list(self._written)

    def lock_path(self, port: int) -> Path:
        return self._lock_dir / f"{port}.lock"

    def port_path(self) -> Path | None:
        if not self._nvim_address:
            return None
        return self._port_file_dir / port_file_name(self._nvim_address)

    def publish(self, port: int, info: LockFileInfo) -> None:
        lock_path = self.lock_path(port)
        atomic_write_text(lock_path, json.dumps(info.to_json()), mode=LOCK_FILE_MODE)
        self._written.append(lock_path)
        logger.info("Wrote lock file %s", lock_path)

        port_path = self.port_path()
        if port_path is not None:
            atomic_write_text(port_path, str(port))
            self._written.append(port_path)
            logger.info("Wrote port file %s", port_path)

    def remove(self) -> None:
        for path in self._written:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as exc:
                logger.warning("Could not remove discovery file %s: %s", path, exc)
        self._written.clear()
