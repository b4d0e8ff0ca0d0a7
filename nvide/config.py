"""Companion configuration.

Defaults live on ``CompanionConfig``. A YAML file can override them, and
environment variables override both.

Example YAML:
    server:
      host: 127.0.0.1
      port: 0
      keepalive_interval: 60
      require_auth: false
      ide_name: Neovim

    editor:
      address: /run/user/1000/nvim.1234.0

    review:
      scratch_dir: /tmp/neovim-ide-companion  # omit to stage beside the file
      accept_keymap: "<leader>aa"
      reject_keymap: "<leader>ad"
      reload_delay: 0.3

    context:
      max_files: 10
      debounce: 0.05

    logging:
      level: INFO
      file: /tmp/neovim-ide-companion-nvim.log
"""
from __future__ import annotations

import logging
import os
import secrets
from collections.abc import Mapping
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_LOG_FILE = "/tmp/neovim-ide-companion-nvim.log"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}

# YAML section -> {yaml key: config field}
_YAML_SECTIONS: dict[str, dict[str, str]] = {
    "server": {
        "host": "host",
        "port": "port",
        "keepalive_interval": "keepalive_interval",
        "stream_idle_timeout": "stream_idle_timeout",
        "push_queue_size": "push_queue_size",
        "require_auth": "require_auth",
        "ide_name": "ide_name",
        "workspace": "workspace",
        "lock_dir": "lock_dir",
        "port_file_dir": "port_file_dir",
    },
    "editor": {
        "address": "nvim_address",
        "open_timeout": "open_timeout",
    },
    "review": {
        "scratch_dir": "scratch_dir",
        "accept_keymap": "accept_keymap",
        "reject_keymap": "reject_keymap",
        "reload_delay": "reload_delay",
    },
    "context": {
        "max_files": "max_tracked_files",
        "debounce": "context_debounce",
    },
    "logging": {
        "level": "log_level",
        "file": "log_file",
    },
}

_ENV_VARS: dict[str, str] = {
    "NVIDE_HOST": "host",
    "NVIDE_PORT": "port",
    "NVIDE_WORKSPACE": "workspace",
    "NVIDE_LOCK_DIR": "lock_dir",
    "NVIDE_SCRATCH_DIR": "scratch_dir",
    "NVIDE_LOG_LEVEL": "log_level",
    "NEOVIM_IDE_COMPANION_LOG_FILE": "log_file",
    "NVIDE_REQUIRE_AUTH": "require_auth",
}


def _default_lock_dir() -> str:
    return str(Path.home() / ".claude" / "ide")


@dataclass
class CompanionConfig:
    """Runtime configuration for one companion process."""

    # Editor connection (socket path or host:port)
    nvim_address: str | None = None
    # Max wait for a file opened in a new tab to be entered.
    open_timeout: float = 5.0

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 0
    ide_name: str = "Neovim"
    workspace: str = field(default_factory=os.getcwd)
    keepalive_interval: float = 60.0
    # Idle push streams get an SSE comment this often.
    stream_idle_timeout: float = 30.0
    push_queue_size: int = 1000
    require_auth: bool = False
    auth_token: str = field(default_factory=lambda: secrets.token_hex(16), repr=False)

    # Discovery files
    lock_dir: str = field(default_factory=_default_lock_dir)
    port_file_dir: str = "/tmp"

    # Diff review
    # None stages scratch files next to the file under review.
    scratch_dir: str | None = None
    accept_keymap: str = "<leader>aa"
    reject_keymap: str = "<leader>ad"
    reload_delay: float = 0.3

    # Open-file context
    max_tracked_files: int = 10
    context_debounce: float = 0.05

    # Logging
    log_level: str = "INFO"
    log_file: str = DEFAULT_LOG_FILE


_FIELD_TYPES: dict[str, Any] = {f.name: f.type for f in fields(CompanionConfig)}


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw YAML/env value to the type of config field *key*."""
    kind = _FIELD_TYPES[key]
    if value is None:
        if "None" in str(kind):
            return None
        raise ConfigError(key, "value must not be empty")
    try:
        if kind == "bool":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise ValueError(f"expected a boolean, got {value!r}")
        if kind == "int":
            if isinstance(value, bool):
                raise ValueError(f"expected an integer, got {value!r}")
            return int(value)
        if kind == "float":
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(key, str(exc)) from exc
    return str(value)


def _from_yaml(path: Path) -> dict[str, Any]:
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigError(str(path), f"cannot read file: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(str(path), f"invalid YAML: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigError(str(path), "top level must be a mapping")

    overrides: dict[str, Any] = {}
    for section, values in raw.items():
        mapping = _YAML_SECTIONS.get(section)
        if mapping is None:
            logger.warning("Ignoring unknown config section '%s' in %s", section, path)
            continue
        if not isinstance(values, dict):
            raise ConfigError(section, "section must be a mapping")
        for key, value in values.items():
            target = mapping.get(key)
            if target is None:
                logger.warning("Ignoring unknown config key '%s.%s' in %s", section, key, path)
                continue
            overrides[target] = _coerce(target, value)
    return overrides


def _from_env(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    address = env.get("NVIM_LISTEN_ADDRESS") or env.get("NVIM")
    if address:
        overrides["nvim_address"] = address
    for var, target in _ENV_VARS.items():
        if var in env:
            overrides[target] = _coerce(target, env[var])
    return overrides


def load_config(
    path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> CompanionConfig:
    """Build a config from defaults, an optional YAML file, env vars and kwargs.

    Later sources win. Keyword overrides set to ``None`` are skipped so CLI
    flags that were not given do not mask the other sources.
    """
    config = CompanionConfig()
    values: dict[str, Any] = {}
    if path is not None:
        values.update(_from_yaml(Path(path)))
    values.update(_from_env(os.environ if env is None else env))
    for key, value in overrides.items():
        if key not in _FIELD_TYPES:
            raise ConfigError(key, "unknown setting")
        if value is not None:
            values[key] = _coerce(key, value)

    config = replace(config, **values)
    if config.port < 0 or config.port > 65535:
        raise ConfigError("port", f"{config.port} is out of range")
    if config.max_tracked_files < 1:
        raise ConfigError("max_tracked_files", "must be at least 1")
    if config.keepalive_interval <= 0:
        raise ConfigError("keepalive_interval", "must be positive")
    config.workspace = str(Path(config.workspace).expanduser().resolve())
    return config
