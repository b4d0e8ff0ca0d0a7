from __future__ import annotations

from pathlib import Path

import pytest

from nvide.config import CompanionConfig, load_config
from nvide.errors import ConfigError


def _write(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "companion.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_defaults(tmp_path: Path) -> None:
    config = load_config(env={}, workspace=str(tmp_path))

    assert config.nvim_address is None
    assert config.host == "127.0.0.1"
    assert config.port == 0
    assert config.max_tracked_files == 10
    assert config.require_auth is False
    assert config.scratch_dir is None
    assert len(config.auth_token) == 32
    assert config.workspace == str(tmp_path.resolve())


def test_auth_token_is_not_in_repr() -> None:
    config = CompanionConfig(auth_token="do-not-print")
    assert "do-not-print" not in repr(config)


def test_yaml_then_env_then_keywords(tmp_path: Path) -> None:
    path = _write(tmp_path, """
server:
  port: 4100
  require_auth: yes
  keepalive_interval: 15
editor:
  address: /tmp/from-yaml.sock
review:
  accept_keymap: "<leader>y"
context:
  max_files: 3
logging:
  level: DEBUG
""")
    config = load_config(
        path,
        env={"NVIM_LISTEN_ADDRESS": "/tmp/from-env.sock", "NVIDE_PORT": "4200"},
        port=4300,
        host=None,
    )

    assert config.port == 4300
    assert config.nvim_address == "/tmp/from-env.sock"
    assert config.require_auth is True
    assert config.keepalive_interval == 15.0
    assert config.accept_keymap == "<leader>y"
    assert config.max_tracked_files == 3
    assert config.log_level == "DEBUG"
    assert config.host == "127.0.0.1"


def test_nvim_env_is_a_fallback_address() -> None:
    assert load_config(env={"NVIM": "/tmp/nested.sock"}).nvim_address == "/tmp/nested.sock"


def test_unknown_yaml_keys_are_ignored(tmp_path: Path, caplog) -> None:
    path = _write(tmp_path, "server:\n  colour: blue\nplugins: {}\n")

    config = load_config(path, env={})

    assert config.port == 0
    assert "colour" in caplog.text
    assert "plugins" in caplog.text


@pytest.mark.parametrize(
    ("text", "key"),
    [
        ("server:\n  port: lots\n", "port"),
        ("server:\n  port: 70000\n", "port"),
        ("server:\n  require_auth: maybe\n", "require_auth"),
        ("context:\n  max_files: 0\n", "max_tracked_files"),
        ("server:\n  keepalive_interval: 0\n", "keepalive_interval"),
        ("server: 5\n", "server"),
    ],
)
def test_invalid_values(tmp_path: Path, text: str, key: str) -> None:
    with pytest.raises(ConfigError) as excinfo:
        load_config(_write(tmp_path, text), env={})
    assert excinfo.value.key == key


def test_unreadable_or_malformed_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_config(tmp_path / "missing.yaml", env={})
    with pytest.raises(ConfigError):
        load_config(_write(tmp_path, "server: [unclosed\n"), env={})


def test_unknown_keyword_override() -> None:
    with pytest.raises(ConfigError):
        load_config(env={}, colour="blue")
