"""Tests for the editor bridge connectivity check."""
from __future__ import annotations

import asyncio
import errno
import sys
from collections.abc import Mapping, Sequence
from dataclasses import replace
from pathlib import Path
from typing import Any

import pytest
from conftest import fake_bridge_server

from godot_mcp_doctor.config import BridgeConfig
from godot_mcp_doctor.doctor.bridge import (
    BridgeProbe,
    candidate_endpoints,
    pick_free_port,
    run_bridge_check,
)
from godot_mcp_doctor.doctor.models import ProjectLayout
from godot_mcp_doctor.doctor.setup import ensure_editor_plugin_enabled
from godot_mcp_doctor.rpc.bridge_client import (
    BridgeClientError,
    check_health,
    combine_connect_errors,
)

TOKEN = "0123456789abcdef0123456789abcdef"


def _config() -> BridgeConfig:
    return BridgeConfig(
        default_port=pick_free_port(),
        connect_timeout=0.5,
        launch_timeout=5.0,
        poll_interval=0.05,
        kill_grace=1.0,
    )


def _prepare(root: Path, *, token: bool = True, lock: bool = False) -> ProjectLayout:
    layout = ProjectLayout(root)
    text = layout.descriptor.read_text(encoding="utf-8")
    layout.descriptor.write_text(ensure_editor_plugin_enabled(text, layout.plugin_id), encoding="utf-8")
    if token:
        layout.token_file.write_text(TOKEN + "\n", encoding="utf-8")
    if lock:
        layout.lock_file.parent.mkdir(parents=True, exist_ok=True)
        layout.lock_file.write_text("pid=4242\n", encoding="utf-8")
    return layout


async def _refused(host: str, port: int, token: str, timeout: float) -> Mapping[str, Any]:
    raise BridgeClientError(f"Editor bridge connection refused ({host}:{port})", kind="refused")


async def _sleeping_child(command: Sequence[str], cwd: Path) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        sys.executable,
        "-c",
        "import time; time.sleep(30)",
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        cwd=str(cwd),
    )


@pytest.mark.asyncio
async def test_skipped_without_project() -> None:
    """No project means a successful skip."""
    result = await run_bridge_check(None)

    assert result.ok is True
    assert result.skipped is True


@pytest.mark.asyncio
async def test_plugin_must_be_enabled(godot_project: Path) -> None:
    """A project without the plugin entry fails before any network access."""
    result = await run_bridge_check(godot_project, health_check=_refused, env={})

    assert result.ok is False
    assert "not enabled" in result.summary


@pytest.mark.asyncio
async def test_token_required(godot_project: Path) -> None:
    """Missing token file and env var is reported with a hint."""
    _prepare(godot_project, token=False)

    result = await run_bridge_check(godot_project, health_check=_refused, env={})

    assert result.ok is False
    assert "GODOT_MCP_TOKEN" in (result.error or "")
    assert result.suggestions


def test_candidate_endpoints_order_and_dedupe(godot_project: Path) -> None:
    """Configured, file and default endpoints are deduplicated in order."""
    layout = _prepare(godot_project)
    layout.host_file.write_text("0.0.0.0\n", encoding="utf-8")
    layout.port_file.write_text("9100\n", encoding="utf-8")
    probe = BridgeProbe(layout, BridgeConfig(), env={"GODOT_MCP_PORT": "9200"})

    endpoints = [(e.host, e.port, e.source) for e in candidate_endpoints(probe)]

    assert endpoints == [
        ("127.0.0.1", 9200, "configured"),
        ("127.0.0.1", 9100, "file"),
        ("127.0.0.1", 8765, "default"),
    ]

    same = BridgeProbe(layout, BridgeConfig(default_port=9100), env={})
    assert [e.source for e in candidate_endpoints(same)] == ["file"]


@pytest.mark.asyncio
async def test_running_bridge_is_reported(godot_project: Path) -> None:
    """A live bridge for the same project passes."""
    layout = _prepare(godot_project, lock=True)

    async with fake_bridge_server(token=TOKEN, project_root=str(godot_project)) as port:
        layout.port_file.write_text(str(port), encoding="utf-8")
        result = await run_bridge_check(godot_project, config=_config(), env={}, platform="linux")

    assert result.ok is True
    assert result.details is not None
    assert result.details["port"] == port
    assert result.details["projectRoot"] == str(godot_project)
    assert layout.lock_file.exists()


@pytest.mark.asyncio
async def test_wrong_token_is_not_stale(godot_project: Path) -> None:
    """An auth failure keeps the lock and suggests checking the token."""
    layout = _prepare(godot_project, lock=True)

    async with fake_bridge_server(token="other", project_root=str(godot_project)) as port:
        layout.port_file.write_text(str(port), encoding="utf-8")
        result = await run_bridge_check(
            godot_project, config=_config(), godot_path="/opt/godot/godot", env={}, platform="linux"
        )

    assert result.ok is False
    assert result.details is not None
    assert result.details["stale"] is False
    assert "bad token" in (result.error or "")
    assert layout.lock_file.exists()


@pytest.mark.asyncio
async def test_other_project_is_not_stale(godot_project: Path, tmp_path: Path) -> None:
    """A bridge serving a different project is a hard failure."""
    layout = _prepare(godot_project, lock=True)

    async with fake_bridge_server(token=TOKEN, project_root=str(tmp_path / "elsewhere")) as port:
        layout.port_file.write_text(str(port), encoding="utf-8")
        result = await run_bridge_check(godot_project, config=_config(), env={}, platform="linux")

    assert result.ok is False
    assert "different project" in (result.error or "")
    assert layout.lock_file.exists()


@pytest.mark.asyncio
async def test_stale_lock_without_godot_is_kept(godot_project: Path) -> None:
    """Without an executable to relaunch, the stale lock is left alone."""
    layout = _prepare(godot_project, lock=True)

    result = await run_bridge_check(godot_project, config=_config(), health_check=_refused, env={})

    assert result.ok is False
    assert result.details is not None
    assert result.details["stale"] is True
    assert layout.lock_file.exists()
    assert any("delete the stale lock file" in hint for hint in result.suggestions)


@pytest.mark.asyncio
async def test_stale_lock_kept_in_read_only_mode(godot_project: Path) -> None:
    """Read-only runs never delete the lock."""
    layout = _prepare(godot_project, lock=True)

    result = await run_bridge_check(
        godot_project,
        config=_config(),
        godot_path="/opt/godot/godot",
        read_only=True,
        health_check=_refused,
        env={},
    )

    assert result.ok is False
    assert layout.lock_file.exists()


@pytest.mark.mutation_timeout
@pytest.mark.asyncio
async def test_stale_lock_removed_and_editor_launched(godot_project: Path) -> None:
    """A stale lock is cleared, the editor launched and the temp files restored."""
    layout = _prepare(godot_project, lock=True)
    launched: list[Sequence[str]] = []
    seen_files: list[tuple[str, str]] = []

    async def launcher(command: Sequence[str], cwd: Path) -> asyncio.subprocess.Process:
        launched.append(list(command))
        return await _sleeping_child(command, cwd)

    async def health(host: str, port: int, token: str, timeout: float) -> Mapping[str, Any]:
        if not layout.port_file.exists() or layout.port_file.read_text(encoding="utf-8") != str(port):
            raise BridgeClientError("refused", kind="refused")
        seen_files.append(
            (
                layout.host_file.read_text(encoding="utf-8"),
                layout.port_file.read_text(encoding="utf-8"),
            )
        )
        assert token == TOKEN
        return {"project_root": str(godot_project)}

    result = await run_bridge_check(
        godot_project,
        config=_config(),
        godot_path="/opt/godot/godot",
        health_check=health,
        launcher=launcher,
        env={},
        platform="linux",
    )

    assert result.ok is True, result
    assert result.details is not None
    assert result.details["staleLockRemoved"] is True
    assert launched[0] == ["/opt/godot/godot", "--headless", "-e", "--path", str(godot_project)]
    assert seen_files and seen_files[0][0] == "127.0.0.1"
    assert not layout.lock_file.exists()
    assert not layout.port_file.exists()
    assert not layout.host_file.exists()


@pytest.mark.mutation_timeout
@pytest.mark.asyncio
async def test_auto_launch_restores_existing_port_file(godot_project: Path) -> None:
    """Pre-existing host/port files get their original content back."""
    layout = _prepare(godot_project)
    layout.port_file.write_text("8765", encoding="utf-8")

    async def health(host: str, port: int, token: str, timeout: float) -> Mapping[str, Any]:
        return {"project_root": str(godot_project)}

    result = await run_bridge_check(
        godot_project,
        config=_config(),
        godot_path="/opt/godot/godot",
        health_check=health,
        launcher=_sleeping_child,
        env={},
        platform="linux",
    )

    assert result.ok is True
    assert layout.port_file.read_text(encoding="utf-8") == "8765"
    assert not layout.host_file.exists()


@pytest.mark.mutation_timeout
@pytest.mark.asyncio
async def test_editor_exiting_early_is_reported(godot_project: Path) -> None:
    """An editor that dies before the bridge answers yields its exit code."""
    _prepare(godot_project)

    async def launcher(command: Sequence[str], cwd: Path) -> asyncio.subprocess.Process:
        return await asyncio.create_subprocess_exec(
            sys.executable,
            "-c",
            "import sys; print('import failed'); sys.exit(3)",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

    result = await run_bridge_check(
        godot_project,
        config=_config(),
        godot_path="/opt/godot/godot",
        health_check=_refused,
        launcher=launcher,
        env={},
        platform="linux",
    )

    assert result.ok is False
    assert result.details is not None
    assert result.details["exitCode"] == 3
    assert "exited early" in (result.error or "")


@pytest.mark.asyncio
async def test_launch_failure_is_reported(godot_project: Path) -> None:
    """OS errors from the launcher become a failed check."""
    layout = _prepare(godot_project)

    async def launcher(command: Sequence[str], cwd: Path) -> asyncio.subprocess.Process:
        raise FileNotFoundError("godot not found")

    result = await run_bridge_check(
        godot_project,
        config=_config(),
        godot_path="/opt/godot/godot",
        health_check=_refused,
        launcher=launcher,
        env={},
        platform="linux",
    )

    assert result.ok is False
    assert "godot not found" in (result.error or "")
    assert not layout.port_file.exists()


@pytest.mark.asyncio
async def test_no_lock_and_no_godot(godot_project: Path) -> None:
    """Nothing running and nothing to launch is a failure with hints."""
    _prepare(godot_project)

    result = await run_bridge_check(godot_project, config=_config(), health_check=_refused, env={})

    assert result.ok is False
    assert "no Godot executable" in result.summary


@pytest.mark.asyncio
async def test_read_only_skips_auto_launch(godot_project: Path) -> None:
    """Read-only mode never writes the temporary host/port files."""
    layout = _prepare(godot_project)

    result = await run_bridge_check(
        godot_project,
        config=_config(),
        godot_path="/opt/godot/godot",
        read_only=True,
        health_check=_refused,
        env={},
    )

    assert result.ok is False
    assert result.skipped is True
    assert not layout.port_file.exists()


@pytest.mark.parametrize(
    ("errors", "kind"),
    [
        ([ConnectionRefusedError(errno.ECONNREFUSED, "refused")], "refused"),
        (
            [
                OSError(errno.EADDRNOTAVAIL, "Cannot assign requested address"),
                ConnectionRefusedError(errno.ECONNREFUSED, "refused"),
            ],
            "refused",
        ),
        ([TimeoutError(errno.ETIMEDOUT, "timed out")], "timeout"),
        ([ConnectionRefusedError(errno.ECONNREFUSED, "refused"), OSError("reset")], "io"),
        ([], "io"),
    ],
)
def test_combine_connect_errors(errors: list[OSError], kind: str) -> None:
    """Only all-refused or all-timeout address failures look stale."""
    assert combine_connect_errors(errors) == kind


@pytest.mark.parametrize("host", ["127.0.0.1", "localhost"])
@pytest.mark.asyncio
async def test_real_client_reports_refused_on_closed_port(host: str) -> None:
    """Every resolved address refusing is classified as refused."""
    with pytest.raises(BridgeClientError) as excinfo:
        await check_health(host, pick_free_port(), TOKEN, 1.0)

    assert excinfo.value.kind == "refused"
    assert excinfo.value.looks_stale is True


@pytest.mark.mutation_timeout
@pytest.mark.parametrize("host", ["127.0.0.1", "localhost"])
@pytest.mark.asyncio
async def test_stale_lock_detected_with_real_client(godot_project: Path, host: str) -> None:
    """With nothing listening the lock is removed and the override files are restored."""
    layout = _prepare(godot_project, lock=True)
    config = replace(_config(), default_host=host, launch_timeout=1.0)

    result = await run_bridge_check(
        godot_project,
        config=config,
        godot_path="/opt/godot/godot",
        launcher=_sleeping_child,
        env={},
        platform="linux",
    )

    assert result.ok is False
    assert result.details is not None
    assert result.details["staleLockRemoved"] is True
    assert "did not answer" in result.summary
    assert not layout.lock_file.exists()
    assert not layout.port_file.exists()
    assert not layout.host_file.exists()
