"""Editor bridge connectivity probe and headless auto-launch.

The probe runs as six named states. Each returns either a terminal
:class:`DoctorCheckResult` or the input of the next state:

``skip_without_project`` -> ``check_plugin`` -> ``resolve_token`` ->
``check_lock`` -> ``probe_existing`` (lock present only) -> ``auto_launch``.
"""
from __future__ import annotations

import asyncio
import logging
import socket
import sys
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from ..config import BridgeConfig
from ..processes import TailBuffer, cancel_tasks, pump_stream, terminate_process
from ..rpc.bridge_client import BridgeClientError, check_health
from ..wsl import (
    is_windows_executable,
    is_wsl,
    normalize_godot_args_for_host,
    normalize_godot_path_for_host,
    normalize_project_path_for_compare,
    resolve_windows_host_address,
)
from .models import DoctorCheckResult, ProjectLayout
from .overrides import override_files
from .setup import is_editor_plugin_enabled, read_token_file

LOGGER = logging.getLogger(__name__)

TOKEN_ENV = "GODOT_MCP_TOKEN"
HOST_ENV = "GODOT_MCP_HOST"
PORT_ENV = "GODOT_MCP_PORT"
LOOPBACK = "127.0.0.1"
BIND_ALL_HOSTS = frozenset({"0.0.0.0", "::"})

EndpointSource = Literal["configured", "file", "default"]
HealthCheck = Callable[[str, int, str, float], Awaitable[Mapping[str, Any]]]
Launcher = Callable[[Sequence[str], Path], Awaitable[asyncio.subprocess.Process]]


@dataclass(slots=True, frozen=True)
class BridgeEndpoint:
    """A ``host:port`` pair the bridge may be listening on."""

    host: str
    port: int
    source: EndpointSource

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"host": self.host, "port": self.port, "source": self.source}


async def launch_editor(command: Sequence[str], cwd: Path) -> asyncio.subprocess.Process:
    """Start a headless editor with stdout/stderr piped."""
    return await asyncio.create_subprocess_exec(
        *command,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
    )


@dataclass(slots=True, frozen=True)
class BridgeProbe:
    """Everything the states need; one instance per doctor run."""

    layout: ProjectLayout
    config: BridgeConfig = field(default_factory=BridgeConfig)
    godot_path: str | None = None
    read_only: bool = False
    env: Mapping[str, str] = field(default_factory=dict)
    platform: str = sys.platform
    health_check: HealthCheck = check_health
    launcher: Launcher = launch_editor
    host_address_resolver: Callable[[], str | None] = resolve_windows_host_address


@dataclass(slots=True, frozen=True)
class ExistingBridge:
    """Input to ``probe_existing``: a lock is present."""

    token: str
    endpoints: tuple[BridgeEndpoint, ...]


@dataclass(slots=True, frozen=True)
class LaunchRequest:
    """Input to ``auto_launch``."""

    token: str
    stale_lock_removed: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def pick_free_port(host: str = LOOPBACK) -> int:
    """Return an ephemeral port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return int(sock.getsockname()[1])


def _connect_host(host: str) -> str:
    return LOOPBACK if host in BIND_ALL_HOSTS else host


def _parse_port(raw: str | None) -> int | None:
    if raw is None:
        return None
    try:
        value = int(raw.strip())
    except ValueError:
        return None
    return value if 0 < value < 65536 else None


def _read_text(path: Path) -> str | None:
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return text or None


def candidate_endpoints(probe: BridgeProbe) -> tuple[BridgeEndpoint, ...]:
    """Return deduplicated endpoints: configured, file-declared, then default."""
    config = probe.config
    layout = probe.layout
    env_host = (probe.env.get(HOST_ENV) or "").strip() or None
    env_port = _parse_port(probe.env.get(PORT_ENV))
    file_host = _read_text(layout.host_file)
    file_port = _parse_port(_read_text(layout.port_file))

    raw: list[BridgeEndpoint] = []
    if env_host is not None or env_port is not None:
        raw.append(
            BridgeEndpoint(
                env_host or file_host or config.default_host,
                env_port or file_port or config.default_port,
                "configured",
            )
        )
    if file_host is not None or file_port is not None:
        raw.append(
            BridgeEndpoint(file_host or config.default_host, file_port or config.default_port, "file")
        )
    raw.append(BridgeEndpoint(config.default_host, config.default_port, "default"))

    seen: set[tuple[str, int]] = set()
    endpoints: list[BridgeEndpoint] = []
    for endpoint in raw:
        endpoint = replace(endpoint, host=_connect_host(endpoint.host))
        key = (endpoint.host, endpoint.port)
        if key in seen:
            continue
        seen.add(key)
        endpoints.append(endpoint)
    return tuple(endpoints)


async def _health_matches(
    probe: BridgeProbe,
    host: str,
    port: int,
    token: str,
    timeout: float,
) -> Mapping[str, Any]:
    health = await probe.health_check(host, port, token, timeout)
    reported = health.get("project_root")
    expected = normalize_project_path_for_compare(str(probe.layout.root), probe.platform)
    if not isinstance(reported, str) or (
        normalize_project_path_for_compare(reported, probe.platform) != expected
    ):
        raise BridgeClientError(
            f"Bridge at {host}:{port} serves a different project: {reported!r}",
            kind="protocol",
        )
    return health


# ---------------------------------------------------------------------------
# States
# ---------------------------------------------------------------------------


def skip_without_project(
    project_root: Path | None,
    plugin_id: str,
) -> DoctorCheckResult | ProjectLayout:
    """State 1: without a project there is nothing to connect to."""
    if project_root is None:
        return DoctorCheckResult.skip("Editor bridge check skipped (no project path given).", ok=True)
    return ProjectLayout(project_root, plugin_id)


def check_plugin(probe: BridgeProbe) -> DoctorCheckResult | BridgeProbe:
    """State 2: the plugin must be enabled in ``project.godot``."""
    layout = probe.layout
    try:
        text = layout.descriptor.read_text(encoding="utf-8")
    except FileNotFoundError:
        return DoctorCheckResult(
            ok=False,
            summary="Editor bridge check failed: project.godot is missing.",
            error=f"Missing project.godot at: {layout.descriptor}",
        )
    except OSError as exc:
        return DoctorCheckResult(
            ok=False,
            summary="Editor bridge check failed: project.godot is unreadable.",
            error=f"Failed to read {layout.descriptor}: {exc}",
        )
    if not is_editor_plugin_enabled(text, layout.plugin_id):
        return DoctorCheckResult(
            ok=False,
            summary=f"Editor plugin {layout.plugin_id} is not enabled.",
            error=f"{layout.plugin_id} is not listed under [editor_plugins] in {layout.descriptor}",
            suggestions=(
                f"Enable the plugin in Project Settings > Plugins, or rerun doctor without "
                f"--readonly to add {layout.plugin_id} to [editor_plugins].",
            ),
        )
    return probe


def resolve_token(probe: BridgeProbe) -> DoctorCheckResult | str:
    """State 3: the token comes from ``GODOT_MCP_TOKEN`` or the token file."""
    token = (probe.env.get(TOKEN_ENV) or "").strip()
    if token:
        return token
    try:
        stored = read_token_file(probe.layout.token_file)
    except OSError as exc:
        return DoctorCheckResult(
            ok=False,
            summary="Editor bridge check failed: token file is unreadable.",
            error=f"Failed to read {probe.layout.token_file}: {exc}",
        )
    if stored is None:
        return DoctorCheckResult(
            ok=False,
            summary="Editor bridge check failed: no bridge token.",
            error=f"Missing token (set {TOKEN_ENV} or create {probe.layout.token_file}).",
            suggestions=(
                f"Create {probe.layout.token_file.name} with any random string token, "
                f"or set {TOKEN_ENV}.",
            ),
        )
    return stored


def check_lock(probe: BridgeProbe, token: str) -> ExistingBridge | LaunchRequest:
    """State 4: a lock means a bridge may already be running."""
    if probe.layout.lock_file.exists():
        return ExistingBridge(token=token, endpoints=candidate_endpoints(probe))
    return LaunchRequest(token=token)


async def probe_existing(
    probe: BridgeProbe,
    existing: ExistingBridge,
) -> DoctorCheckResult | LaunchRequest:
    """State 5: talk to the running bridge, or classify the lock as stale."""
    layout = probe.layout
    failures: list[tuple[BridgeEndpoint, BridgeClientError]] = []
    for endpoint in existing.endpoints:
        try:
            health = await _health_matches(
                probe, endpoint.host, endpoint.port, existing.token, probe.config.connect_timeout
            )
        except BridgeClientError as exc:
            LOGGER.debug("Bridge probe %s:%s failed: %s", endpoint.host, endpoint.port, exc)
            failures.append((endpoint, exc))
            continue
        return DoctorCheckResult(
            ok=True,
            summary=f"Editor bridge OK at {endpoint.host}:{endpoint.port}.",
            details={
                **endpoint.to_dict(),
                "projectRoot": health.get("project_root"),
                "lockFile": str(layout.lock_file),
            },
        )

    attempts = [
        {**endpoint.to_dict(), "error": str(exc), "kind": exc.kind} for endpoint, exc in failures
    ]
    details = {"lockFile": str(layout.lock_file), "attempts": attempts}
    stale = all(exc.looks_stale for _, exc in failures)

    if not stale:
        return DoctorCheckResult(
            ok=False,
            summary="Editor bridge lock present but the bridge did not respond correctly.",
            details={**details, "stale": False},
            error="; ".join(str(exc) for _, exc in failures if not exc.looks_stale),
            suggestions=(
                f"Check that {layout.token_file.name} (or {TOKEN_ENV}) matches the running editor.",
                "Check that the port is reachable and not blocked by a firewall.",
            ),
        )

    manual_cleanup = f"If Godot is not running, delete the stale lock file: {layout.lock_file}"
    if not probe.godot_path:
        return DoctorCheckResult(
            ok=False,
            summary="Editor bridge lock looks stale; no Godot executable available to relaunch.",
            details={**details, "stale": True},
            error="No bridge answered on any candidate address.",
            suggestions=(
                manual_cleanup,
                "Set GODOT_PATH to a working Godot binary, or pass --godot-path <path>.",
            ),
        )
    if probe.read_only:
        return DoctorCheckResult(
            ok=False,
            summary="Editor bridge lock looks stale; read-only mode left it in place.",
            details={**details, "stale": True},
            error="No bridge answered on any candidate address.",
            suggestions=(manual_cleanup,),
        )

    try:
        layout.lock_file.unlink(missing_ok=True)
    except OSError as exc:
        return DoctorCheckResult(
            ok=False,
            summary="Editor bridge lock looks stale but could not be removed.",
            details={**details, "stale": True},
            error=f"Failed to remove {layout.lock_file}: {exc}",
            suggestions=(manual_cleanup,),
        )
    LOGGER.info("Removed stale bridge lock %s", layout.lock_file)
    return LaunchRequest(token=existing.token, stale_lock_removed=True)


async def auto_launch(probe: BridgeProbe, request: LaunchRequest) -> DoctorCheckResult:
    """State 6: start a headless editor and wait for its bridge to answer."""
    layout = probe.layout
    base_details: dict[str, object] = {"staleLockRemoved": request.stale_lock_removed}
    if not probe.godot_path:
        return DoctorCheckResult(
            ok=False,
            summary="Editor bridge not running and no Godot executable available to launch it.",
            details=base_details,
            error="No valid Godot executable for auto-launch.",
            suggestions=(
                "Set GODOT_PATH to a working Godot binary, or pass --godot-path <path>.",
                "Alternatively open the project in the Godot editor with the plugin enabled.",
            ),
        )
    if probe.read_only:
        return DoctorCheckResult.skip(
            "Read-only mode: editor auto-launch skipped (it writes temporary host/port files).",
            details=base_details,
            suggestions=("Rerun without --readonly to let doctor launch a headless editor.",),
        )

    executable = probe.godot_path
    host = LOOPBACK
    if is_wsl(probe.env, probe.platform) and is_windows_executable(executable):
        host = probe.host_address_resolver() or LOOPBACK
    port = pick_free_port()
    command = [
        normalize_godot_path_for_host(executable, probe.platform),
        *normalize_godot_args_for_host(
            executable, ["--headless", "-e", "--path", str(layout.root)], probe.platform
        ),
    ]
    details = {**base_details, "host": host, "port": port, "command": command}

    with override_files({layout.port_file: str(port), layout.host_file: host}) as overrides:
        result = await _launch_and_poll(probe, request.token, command, host, port, details)

    restore_errors = [
        f"Failed to restore {item.path}: {item.restore_error}"
        for item in overrides
        if item.restore_error is not None
    ]
    if restore_errors:
        result = replace(
            result,
            ok=False,
            error="; ".join(filter(None, [result.error, *restore_errors])),
            suggestions=(*result.suggestions, "Check the project's .godot_mcp_host/.godot_mcp_port files."),
        )
    return result


async def _launch_and_poll(
    probe: BridgeProbe,
    token: str,
    command: Sequence[str],
    host: str,
    port: int,
    details: Mapping[str, object],
) -> DoctorCheckResult:
    config = probe.config
    try:
        process = await probe.launcher(command, probe.layout.root)
    except OSError as exc:
        return DoctorCheckResult(
            ok=False,
            summary="Failed to launch Godot for the editor bridge check.",
            details=details,
            error=str(exc),
            suggestions=(f"Verify it works by running: {command[0]} --version",),
        )

    stdout_tail = TailBuffer()
    stderr_tail = TailBuffer()
    pumps = (
        asyncio.create_task(pump_stream(process.stdout, stdout_tail)),
        asyncio.create_task(pump_stream(process.stderr, stderr_tail)),
    )

    def _logs() -> dict[str, object]:
        return {**details, "stdout": stdout_tail.text, "stderr": stderr_tail.text}

    loop = asyncio.get_running_loop()
    deadline = loop.time() + config.launch_timeout
    last_error: BridgeClientError | None = None
    try:
        while True:
            if process.returncode is not None:
                return DoctorCheckResult(
                    ok=False,
                    summary="Godot exited before the editor bridge became reachable.",
                    details={**_logs(), "exitCode": process.returncode},
                    error=f"Godot exited early (code={process.returncode})",
                    suggestions=(
                        "Open the project in the Godot editor once to import assets, then retry.",
                    ),
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                await _health_matches(
                    probe, host, port, token, min(config.connect_timeout, remaining)
                )
            except BridgeClientError as exc:
                last_error = exc
            else:
                return DoctorCheckResult(
                    ok=True,
                    summary=f"Editor bridge OK after auto-launch at {host}:{port}.",
                    details=details,
                )
            await asyncio.sleep(min(config.poll_interval, max(deadline - loop.time(), 0)))
        return DoctorCheckResult(
            ok=False,
            summary=f"Editor bridge did not answer within {config.launch_timeout:.0f}s of launch.",
            details=_logs(),
            error=str(last_error) if last_error else "Timed out waiting for the editor bridge.",
            suggestions=(
                f"Check that the {probe.layout.plugin_id} plugin starts in headless editor mode.",
                "Increase bridge.launch_timeout in the doctor config for slow machines.",
            ),
        )
    finally:
        await terminate_process(process, grace=config.kill_grace)
        await cancel_tasks(*pumps)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


async def run_bridge_check(
    project_root: Path | None,
    *,
    config: BridgeConfig | None = None,
    godot_path: str | None = None,
    read_only: bool = False,
    env: Mapping[str, str] | None = None,
    platform: str | None = None,
    health_check: HealthCheck = check_health,
    launcher: Launcher = launch_editor,
    host_address_resolver: Callable[[], str | None] = resolve_windows_host_address,
) -> DoctorCheckResult:
    """Run the connectivity state machine and return the ``editorBridge`` check."""
    resolved_config = config or BridgeConfig()
    step = skip_without_project(project_root, resolved_config.plugin_id)
    if isinstance(step, DoctorCheckResult):
        return step
    probe = BridgeProbe(
        layout=step,
        config=resolved_config,
        godot_path=godot_path,
        read_only=read_only,
        env=dict(env or {}),
        platform=platform or sys.platform,
        health_check=health_check,
        launcher=launcher,
        host_address_resolver=host_address_resolver,
    )

    plugin = check_plugin(probe)
    if isinstance(plugin, DoctorCheckResult):
        return plugin
    token = resolve_token(probe)
    if isinstance(token, DoctorCheckResult):
        return token

    state = check_lock(probe, token)
    if isinstance(state, ExistingBridge):
        outcome = await probe_existing(probe, state)
        if isinstance(outcome, DoctorCheckResult):
            return outcome
        state = outcome
    return await auto_launch(probe, state)


__all__ = [
    "BridgeEndpoint",
    "BridgeProbe",
    "ExistingBridge",
    "LaunchRequest",
    "auto_launch",
    "candidate_endpoints",
    "check_lock",
    "check_plugin",
    "launch_editor",
    "pick_free_port",
    "probe_existing",
    "resolve_token",
    "run_bridge_check",
    "skip_without_project",
]
