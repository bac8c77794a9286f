"""Configuration loader for godot-mcp-doctor.

Configuration values are read from several sources, later ones winning:

1. Built-in defaults.
2. ``~/.config/godot-mcp-doctor/config.yml`` (or an override path).
3. Environment variables prefixed with ``GODOT_MCP_DOCTOR_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export GODOT_MCP_DOCTOR_BRIDGE__LAUNCH_TIMEOUT=60
    export GODOT_MCP_DOCTOR_DISPATCHER__ENTRY=dist/index.js

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.

The bridge itself is also steered by a handful of un-prefixed variables
(``GODOT_PATH``, ``GODOT_MCP_TOKEN``, ``GODOT_MCP_HOST``, ``GODOT_MCP_PORT``).
Those are runtime inputs shared with the dispatcher and the editor plugin, so
they are read by the individual checks rather than folded in here.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "GODOT_MCP_DOCTOR_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
SCRATCH_ROOT_ENV_VAR = f"{ENV_PREFIX}SCRATCH_ROOT"
RESERVED_ENV_KEYS = {
    CONFIG_ENV_VAR,
    SCRATCH_ROOT_ENV_VAR,
}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class DispatcherConfig:
    """How to launch the MCP dispatcher under test."""

    runtime: str = "node"
    entry: Path = Path("build/index.js")
    list_timeout: float = 10.0
    batch_timeout: float = 240.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "runtime": self.runtime,
            "entry": str(self.entry),
            "list_timeout": self.list_timeout,
            "batch_timeout": self.batch_timeout,
        }


@dataclass(frozen=True)
class BridgeConfig:
    """Editor bridge naming and timing."""

    plugin_id: str = "godot_mcp_bridge"
    default_host: str = "127.0.0.1"
    default_port: int = 8765
    connect_timeout: float = 1.5
    launch_timeout: float = 30.0
    poll_interval: float = 0.25
    kill_grace: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "plugin_id": self.plugin_id,
            "default_host": self.default_host,
            "default_port": self.default_port,
            "connect_timeout": self.connect_timeout,
            "launch_timeout": self.launch_timeout,
            "poll_interval": self.poll_interval,
            "kill_grace": self.kill_grace,
        }


@dataclass(frozen=True)
class GodotConfig:
    """Executable validation settings."""

    version_timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"version_timeout": self.version_timeout}


@dataclass(frozen=True)
class DoctorConfig:
    """Resolved configuration values for godot-mcp-doctor."""

    config_file: Path
    logs_dir: Path
    addon_source: Path
    dispatcher: DispatcherConfig
    bridge: BridgeConfig
    godot: GodotConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "logs_dir": str(self.logs_dir),
            "addon_source": str(self.addon_source),
            "dispatcher": self.dispatcher.to_dict(),
            "bridge": self.bridge.to_dict(),
            "godot": self.godot.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/godot-mcp-doctor/config.yml",
    "logs_dir": "~/.local/state/godot-mcp-doctor/logs",
    "addon_source": "addons/godot_mcp_bridge",
    "dispatcher": {
        "runtime": "node",
        "entry": "build/index.js",
        "list_timeout": 10.0,
        "batch_timeout": 240.0,
    },
    "bridge": {
        "plugin_id": "godot_mcp_bridge",
        "default_host": "127.0.0.1",
        "default_port": 8765,
        "connect_timeout": 1.5,
        "launch_timeout": 30.0,
        "poll_interval": 0.25,
        "kill_grace": 2.0,
    },
    "godot": {
        "version_timeout": 10.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], DEFAULTS[section]).keys())
    for section in ("dispatcher", "bridge", "godot")
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> DoctorConfig:
    """Load and merge configuration sources into a :class:`DoctorConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_doctor_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        section_map = _as_dict(value, section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")


def _build_doctor_config(raw: Mapping[str, object]) -> DoctorConfig:
    dispatcher_map = _as_dict(raw.get("dispatcher"), "dispatcher")
    bridge_map = _as_dict(raw.get("bridge"), "bridge")
    godot_map = _as_dict(raw.get("godot"), "godot")

    dispatcher = DispatcherConfig(
        runtime=_expect_str(dispatcher_map.get("runtime", "node"), "dispatcher.runtime"),
        entry=_to_path(dispatcher_map.get("entry", "build/index.js")),
        list_timeout=_expect_positive_float(
            dispatcher_map.get("list_timeout"), "dispatcher.list_timeout", default=10.0
        ),
        batch_timeout=_expect_positive_float(
            dispatcher_map.get("batch_timeout"), "dispatcher.batch_timeout", default=240.0
        ),
    )

    default_port = _expect_int(bridge_map.get("default_port"), "bridge.default_port", default=8765)
    if not 0 < default_port < 65536:
        raise ConfigError(f"bridge.default_port must be between 1 and 65535. Got {default_port}.")
    plugin_id = _expect_str(bridge_map.get("plugin_id", "godot_mcp_bridge"), "bridge.plugin_id")
    if not plugin_id.strip():
        raise ConfigError("bridge.plugin_id must be a non-empty string.")
    bridge = BridgeConfig(
        plugin_id=plugin_id.strip(),
        default_host=_expect_str(bridge_map.get("default_host", "127.0.0.1"), "bridge.default_host"),
        default_port=default_port,
        connect_timeout=_expect_positive_float(
            bridge_map.get("connect_timeout"), "bridge.connect_timeout", default=1.5
        ),
        launch_timeout=_expect_positive_float(
            bridge_map.get("launch_timeout"), "bridge.launch_timeout", default=30.0
        ),
        poll_interval=_expect_positive_float(
            bridge_map.get("poll_interval"), "bridge.poll_interval", default=0.25
        ),
        kill_grace=_expect_positive_float(
            bridge_map.get("kill_grace"), "bridge.kill_grace", default=2.0
        ),
    )

    godot = GodotConfig(
        version_timeout=_expect_positive_float(
            godot_map.get("version_timeout"), "godot.version_timeout", default=10.0
        ),
    )

    return DoctorConfig(
        config_file=_to_path(raw.get("config_file")),
        logs_dir=_to_path(raw.get("logs_dir")),
        addon_source=_to_path(raw.get("addon_source")),
        dispatcher=dispatcher,
        bridge=bridge,
        godot=godot,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "BridgeConfig",
    "ConfigError",
    "DispatcherConfig",
    "DoctorConfig",
    "GodotConfig",
    "load_config",
]
