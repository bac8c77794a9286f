"""Cross-environment helpers for running Windows Godot builds from WSL."""
from __future__ import annotations

import logging
import ntpath
import os
import posixpath
import re
import sys
from collections.abc import Mapping, Sequence
from pathlib import Path

LOGGER = logging.getLogger(__name__)

ROUTE_TABLE_PATH = Path("/proc/net/route")
RESOLV_CONF_PATH = Path("/etc/resolv.conf")

_DRIVE_PATH_RE = re.compile(r"^([a-zA-Z]):[\\/](.*)$")
_MOUNT_PATH_RE = re.compile(r"^/mnt/([a-zA-Z])/(.*)$")
_TRANSLATED_FLAGS = frozenset({"--path", "--script"})
_VIRTUAL_PREFIXES = ("res://", "user://")


def is_wsl(env: Mapping[str, str] | None = None, platform: str | None = None) -> bool:
    """Return ``True`` when running inside the Windows Subsystem for Linux."""
    resolved_env = os.environ if env is None else env
    resolved_platform = platform or sys.platform
    if not resolved_platform.startswith("linux"):
        return False
    return "WSL_DISTRO_NAME" in resolved_env or "WSL_INTEROP" in resolved_env


def is_windows_executable(path: str) -> bool:
    """Return ``True`` for ``.exe`` paths."""
    return path.strip().lower().endswith(".exe")


def windows_to_wsl_path(path: str) -> str | None:
    """Translate ``C:\\dir\\file`` to ``/mnt/c/dir/file``; ``None`` if not a drive path."""
    match = _DRIVE_PATH_RE.match(path.strip())
    if match is None:
        return None
    drive, rest = match.groups()
    return f"/mnt/{drive.lower()}/{rest.replace(chr(92), '/')}"


def wsl_to_windows_path(path: str) -> str | None:
    """Translate ``/mnt/c/dir/file`` to ``C:\\dir\\file``; ``None`` if not a mount path."""
    match = _MOUNT_PATH_RE.match(path.strip())
    if match is None:
        return None
    drive, rest = match.groups()
    return f"{drive.upper()}:\\{rest.replace('/', chr(92))}"


def needs_windows_arguments(executable: str, platform: str | None = None) -> bool:
    """Return ``True`` when *executable* is a Windows binary driven from a POSIX host."""
    return (platform or sys.platform) != "win32" and is_windows_executable(executable)


def normalize_godot_path_for_host(path: str, platform: str | None = None) -> str:
    """Return the path the current host should use to spawn *path*."""
    trimmed = path.strip()
    if not trimmed or trimmed == "godot":
        return trimmed
    if (platform or sys.platform) == "win32":
        return trimmed
    return windows_to_wsl_path(trimmed) or trimmed


def normalize_godot_args_for_host(
    executable: str,
    args: Sequence[str],
    platform: str | None = None,
) -> list[str]:
    """Rewrite ``--path``/``--script`` values into the form *executable* expects."""
    out = list(args)
    if not needs_windows_arguments(executable, platform):
        return out
    index = 0
    while index < len(out):
        if out[index] in _TRANSLATED_FLAGS and index + 1 < len(out):
            value = out[index + 1]
            if value and not value.startswith(_VIRTUAL_PREFIXES):
                out[index + 1] = wsl_to_windows_path(value) or value
            index += 2
            continue
        index += 1
    return out


def normalize_project_path_for_compare(path: str, platform: str | None = None) -> str:
    """Return a canonical form of *path* suitable for identity comparison.

    Windows-looking paths are translated to their ``/mnt/<drive>`` form on
    POSIX hosts, slashes are unified and the result is case-folded whenever
    the path lives on a case-insensitive filesystem.
    """
    trimmed = path.strip()
    if not trimmed:
        return ""
    resolved_platform = platform or sys.platform
    if resolved_platform == "win32":
        normalized = ntpath.normpath(ntpath.abspath(trimmed)).replace("\\", "/")
        return normalized.casefold()

    translated = windows_to_wsl_path(trimmed)
    if translated is None and "\\" in trimmed:
        translated = trimmed.replace("\\", "/")
    candidate = translated or trimmed
    if not posixpath.isabs(candidate):
        candidate = posixpath.join(os.getcwd(), candidate)
    normalized = posixpath.normpath(candidate)
    if translated is not None or _MOUNT_PATH_RE.match(normalized + "/"):
        return normalized.casefold()
    if resolved_platform == "darwin":
        return normalized.casefold()
    return normalized


# ---------------------------------------------------------------------------
# Host address discovery
# ---------------------------------------------------------------------------


def parse_default_gateway(route_table: str) -> str | None:
    """Return the default-route gateway from ``/proc/net/route`` content."""
    for line in route_table.splitlines()[1:]:
        columns = line.split()
        if len(columns) < 3 or columns[1] != "00000000":
            continue
        raw = columns[2]
        try:
            value = int(raw, 16)
        except ValueError:
            continue
        octets = [(value >> shift) & 0xFF for shift in (0, 8, 16, 24)]
        gateway = ".".join(str(octet) for octet in octets)
        if gateway != "0.0.0.0":
            return gateway
    return None


def parse_nameserver(resolv_conf: str) -> str | None:
    """Return the first ``nameserver`` entry from resolv.conf content."""
    for line in resolv_conf.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[0] == "nameserver":
            return parts[1]
    return None


def _read_optional(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return None
    except OSError as exc:
        LOGGER.warning("Unable to read %s: %s", path, exc)
        return None


def resolve_windows_host_address(
    route_table_path: Path = ROUTE_TABLE_PATH,
    resolv_conf_path: Path = RESOLV_CONF_PATH,
) -> str | None:
    """Return an address on the Windows side of the WSL network boundary."""
    route_table = _read_optional(route_table_path)
    if route_table:
        gateway = parse_default_gateway(route_table)
        if gateway:
            return gateway
    resolv_conf = _read_optional(resolv_conf_path)
    if resolv_conf:
        return parse_nameserver(resolv_conf)
    return None


__all__ = [
    "is_windows_executable",
    "is_wsl",
    "needs_windows_arguments",
    "normalize_godot_args_for_host",
    "normalize_godot_path_for_host",
    "normalize_project_path_for_compare",
    "parse_default_gateway",
    "parse_nameserver",
    "resolve_windows_host_address",
    "windows_to_wsl_path",
    "wsl_to_windows_path",
]
