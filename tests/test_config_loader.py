"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from godot_mcp_doctor.config import ConfigError, DoctorConfig, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, DoctorConfig)
    assert config.addon_source == Path("addons/godot_mcp_bridge")
    assert config.dispatcher.runtime == "node"
    assert config.dispatcher.entry == Path("build/index.js")
    assert config.dispatcher.list_timeout == 10.0
    assert config.bridge.plugin_id == "godot_mcp_bridge"
    assert config.bridge.default_port == 8765
    assert config.bridge.connect_timeout == 1.5
    assert config.bridge.launch_timeout == 30.0
    assert config.godot.version_timeout == 10.0


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        "logs_dir: {logs}\n"
        "addon_source: /opt/bridge/addon\n"
        "dispatcher:\n"
        "  runtime: bun\n"
        "  entry: dist/server.js\n"
        "bridge:\n"
        "  default_port: 9000\n"
        "  launch_timeout: 45\n".format(logs=tmp_path / "logs")
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.logs_dir == tmp_path / "logs"
    assert config.addon_source == Path("/opt/bridge/addon")
    assert config.dispatcher.runtime == "bun"
    assert config.dispatcher.entry == Path("dist/server.js")
    assert config.bridge.default_port == 9000
    assert config.bridge.launch_timeout == 45.0


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("bridge:\n  default_port: 9000\n")
    env = {
        "GODOT_MCP_DOCTOR_BRIDGE__DEFAULT_PORT": "9100",
        "GODOT_MCP_DOCTOR_BRIDGE__POLL_INTERVAL": "0.5",
        "GODOT_MCP_DOCTOR_DISPATCHER__ENTRY": "out/main.js",
        "GODOT_PATH": "/usr/bin/godot",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.bridge.default_port == 9100
    assert config.bridge.poll_interval == 0.5
    assert config.dispatcher.entry == Path("out/main.js")


def test_config_file_env_var_selects_file(tmp_path: Path) -> None:
    """GODOT_MCP_DOCTOR_CONFIG_FILE points the loader at another file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("godot:\n  version_timeout: 3\n")

    config = load_config(env={"GODOT_MCP_DOCTOR_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.godot.version_timeout == 3.0


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"GODOT_MCP_DOCTOR_BRIDGE__KILL_GRACE": "5"},
        overrides={"bridge": {"kill_grace": 1}},
    )

    assert config.bridge.kill_grace == 1.0


def test_unknown_keys_raise(tmp_path: Path) -> None:
    """Unexpected top-level or section keys are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unexpected: true\n")
    with pytest.raises(ConfigError, match="Unknown configuration keys: unexpected"):
        load_config(config_file=cfg, env={})

    cfg.write_text("bridge:\n  colour: blue\n")
    with pytest.raises(ConfigError, match="Unknown bridge configuration keys: colour"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("yaml_text", "message"),
    [
        ("bridge:\n  default_port: 70000\n", "between 1 and 65535"),
        ("bridge:\n  connect_timeout: 0\n", "greater than zero"),
        ("bridge:\n  plugin_id: '  '\n", "non-empty"),
        ("dispatcher:\n  list_timeout: soon\n", "Invalid number"),
        ("- just\n- a list\n", "mapping at the top level"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, yaml_text: str, message: str) -> None:
    """Invalid values produce descriptive configuration errors."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(yaml_text)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """``to_dict`` renders paths as strings for logging."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    payload = config.to_dict()

    assert payload["addon_source"] == "addons/godot_mcp_bridge"
    assert payload["dispatcher"] == {
        "runtime": "node",
        "entry": "build/index.js",
        "list_timeout": 10.0,
        "batch_timeout": 240.0,
    }
