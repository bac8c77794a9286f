"""Dispatcher self-test: capability listing plus a functional batch."""
from __future__ import annotations

import base64
import json
import logging
import shutil
import tempfile
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ..config import SCRATCH_ROOT_ENV_VAR, DispatcherConfig
from ..godot_runtime import GODOT_PATH_ENV
from ..processes import terminate_process
from ..rpc.process_client import JsonRpcProcessClient, JsonRpcProcessError, spawn_dispatcher
from .models import PROJECT_DESCRIPTOR, DoctorCheckResult

LOGGER = logging.getLogger(__name__)

DANGEROUS_OPS_ENV = "ALLOW_DANGEROUS_OPS"
BATCH_TOOL = "godot_headless_batch"
SELFTEST_DIR = ".godot_mcp/doctor_selftest"
PNG_1X1_BASE64 = (
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR4nGP4z8DwHwAFAAH/iZk9HQAAAABJRU5ErkJggg=="
)

Spawner = Callable[..., Awaitable[Any]]


@dataclass(slots=True, frozen=True)
class SelfTestArtifact:
    """File the functional batch must leave behind."""

    path: str
    binary: bool = False
    contains: str | None = None


@dataclass(slots=True, frozen=True)
class SelfTestOutcome:
    """The ``mcpServer`` and ``mcpFunctional`` checks."""

    server: DoctorCheckResult
    functional: DoctorCheckResult


def dispatcher_command(config: DispatcherConfig, cwd: Path) -> list[str]:
    """Return the command line that starts the dispatcher."""
    entry = config.entry if config.entry.is_absolute() else cwd / config.entry
    return [config.runtime, str(entry)]


# ---------------------------------------------------------------------------
# Scratch project
# ---------------------------------------------------------------------------


def _fixture(name: str) -> str:
    return f"{SELFTEST_DIR}/{name}"


def _res(name: str) -> str:
    return f"res://{_fixture(name)}"


def write_scratch_project(root: Path) -> None:
    """Create a minimal project with the fixtures the batch reads."""
    root.mkdir(parents=True, exist_ok=True)
    (root / PROJECT_DESCRIPTOR).write_text(
        "\n".join(
            [
                "; Engine configuration file.",
                "; It's best edited using the editor, not directly.",
                "config_version=5",
                "",
                "[application]",
                'config/name="godot-mcp-doctor-selftest"',
                "",
            ]
        ),
        encoding="utf-8",
    )
    fixtures = root / SELFTEST_DIR
    fixtures.mkdir(parents=True, exist_ok=True)
    (fixtures / "sprite.png").write_bytes(base64.b64decode(PNG_1X1_BASE64))
    sheet = {
        "frames": [
            {
                "filename": "idle 0",
                "frame": {"x": 0, "y": 0, "w": 1, "h": 1},
                "duration": 100,
            }
        ],
        "meta": {
            "image": "sprite.png",
            "size": {"w": 1, "h": 1},
            "frameTags": [{"name": "idle", "from": 0, "to": 0, "direction": "forward"}],
        },
    }
    (fixtures / "sprite.json").write_text(json.dumps(sheet, indent=2) + "\n", encoding="utf-8")
    (fixtures / "fixture.gd").write_text(
        "extends Node2D\n\nsignal pinged\n\nfunc _on_pinged() -> void:\n\tpass\n",
        encoding="utf-8",
    )
    (fixtures / "Fixture.tscn").write_text(
        '[gd_scene format=3]\n\n[node name="Fixture" type="Node2D"]\n',
        encoding="utf-8",
    )


def build_selftest_batch(
    project_path: Path,
) -> tuple[dict[str, object], tuple[SelfTestArtifact, ...]]:
    """Return the batch arguments and the artifacts it should produce."""
    world_scene = _res("World.tscn")
    tileset = _res("tileset.tres")
    fixture_script = _res("fixture.gd")
    steps: list[dict[str, object]] = [
        {
            "operation": "write_text_file",
            "params": {"path": _fixture("notes.txt"), "content": "doctor self-test\n"},
        },
        {"operation": "read_text_file", "params": {"path": _fixture("notes.txt")}},
        {
            "operation": "create_resource",
            "params": {"resourcePath": _fixture("BoxMesh.tres"), "type": "BoxMesh"},
        },
        {
            "operation": "create_scene",
            "params": {"scenePath": _fixture("Main.tscn"), "rootNodeType": "Node2D"},
        },
        {
            "operation": "add_node",
            "params": {
                "scenePath": _fixture("Main.tscn"),
                "parentNodePath": "root",
                "nodeType": "Sprite2D",
                "nodeName": "Sprite",
            },
        },
        {
            "operation": "attach_script",
            "params": {
                "scenePath": _fixture("Main.tscn"),
                "nodePath": "root",
                "scriptPath": fixture_script,
            },
        },
        {
            "operation": "set_node_properties",
            "params": {
                "scenePath": _fixture("Main.tscn"),
                "nodePath": "root/Sprite",
                "props": {"position": {"$type": "Vector2", "x": 4, "y": 4}},
            },
        },
        {
            "operation": "connect_signal",
            "params": {
                "scenePath": _fixture("Main.tscn"),
                "fromNodePath": "root/Sprite",
                "signal": "visibility_changed",
                "toNodePath": "root",
                "method": "queue_redraw",
            },
        },
        {"operation": "validate_scene", "params": {"scenePath": _fixture("Main.tscn")}},
        {"operation": "save_scene", "params": {"scenePath": _fixture("Main.tscn")}},
        {
            "operation": "instance_scene",
            "params": {
                "scenePath": _fixture("Main.tscn"),
                "parentNodePath": "root",
                "instanceScenePath": _res("Fixture.tscn"),
                "nodeName": "FixtureInstance",
            },
        },
        {
            "operation": "op_tileset_create_from_atlas",
            "params": {
                "pngPath": _res("sprite.png"),
                "tileSize": 1,
                "outputTilesetPath": tileset,
                "allowOverwrite": True,
            },
        },
        {
            "operation": "op_world_scene_ensure_layers",
            "params": {
                "scenePath": world_scene,
                "tilesetPath": tileset,
                "layers": [{"name": "Terrain", "type": "tile"}],
            },
        },
        {
            "operation": "op_world_generate_tiles",
            "params": {
                "scenePath": world_scene,
                "layerName": "Terrain",
                "mapSize": {"width": 4, "height": 4},
                "seed": 1,
                "tilesetPath": tileset,
            },
        },
        {
            "operation": "op_export_preview",
            "params": {
                "scenePath": world_scene,
                "layerName": "Terrain",
                "outputPngPath": _res("world_preview.png"),
            },
        },
        {
            "operation": "load_sprite",
            "params": {
                "scenePath": _fixture("Main.tscn"),
                "nodePath": "root/Sprite",
                "texturePath": _res("sprite.png"),
            },
        },
        {
            "operation": "op_spriteframes_from_aseprite_json",
            "params": {
                "spritesheetPngPath": _res("sprite.png"),
                "asepriteJsonPath": _res("sprite.json"),
                "spriteFramesPath": _res("sprite_frames.tres"),
                "fps": 10,
                "loop": True,
            },
        },
        {"operation": "update_project_uids", "params": {}},
        {"operation": "doctor_scan", "params": {"include_scenes": True, "include_scripts": True}},
    ]
    artifacts = (
        SelfTestArtifact(_fixture("notes.txt")),
        SelfTestArtifact(_fixture("BoxMesh.tres")),
        SelfTestArtifact(_fixture("Main.tscn"), contains=fixture_script),
        SelfTestArtifact(_fixture("tileset.tres")),
        SelfTestArtifact(_fixture("World.tscn")),
        SelfTestArtifact(_fixture("sprite_frames.tres")),
        SelfTestArtifact(_fixture("world_preview.png"), binary=True),
    )
    arguments = {"projectPath": str(project_path), "steps": steps, "stopOnError": True}
    return arguments, artifacts


def verify_artifacts(
    root: Path,
    artifacts: Sequence[SelfTestArtifact],
) -> tuple[list[str], list[str]]:
    """Return ``(expected, missing)`` project-relative paths.

    Binary artifacts must be non-empty and artifacts with ``contains`` must
    mention that text; otherwise they count as missing.
    """
    expected = [artifact.path for artifact in artifacts]
    missing: list[str] = []
    for artifact in artifacts:
        target = root / artifact.path
        try:
            info = target.stat()
        except FileNotFoundError:
            missing.append(artifact.path)
            continue
        if artifact.binary and info.st_size <= 0:
            missing.append(artifact.path)
        elif artifact.contains is not None:
            text = target.read_text(encoding="utf-8", errors="replace")
            if artifact.contains not in text:
                missing.append(artifact.path)
    return expected, missing


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


async def run_self_test(
    config: DispatcherConfig,
    godot_path: str | None,
    *,
    cwd: Path,
    env: Mapping[str, str],
    spawn: Spawner = spawn_dispatcher,
    scratch_parent: Path | None = None,
    kill_grace: float = 2.0,
) -> SelfTestOutcome:
    """Start the dispatcher, list its tools and run the functional batch."""
    command = dispatcher_command(config, cwd)
    entry = Path(command[1])
    if not entry.is_file():
        return SelfTestOutcome(
            server=DoctorCheckResult(
                ok=False,
                summary="MCP server build output missing.",
                details={"entry": str(entry)},
                error=f"Dispatcher entry not found: {entry}",
                suggestions=(f"Build the MCP server first (e.g. npm run build) so {entry} exists.",),
            ),
            functional=DoctorCheckResult.skip("Functional self-test skipped (server not built)."),
        )

    scratch = Path(tempfile.mkdtemp(prefix="godot-mcp-doctor-", dir=scratch_parent))
    project = scratch / "SelfTestProject"
    child_env = dict(env)
    child_env[GODOT_PATH_ENV] = godot_path or ""
    child_env[DANGEROUS_OPS_ENV] = "true" if godot_path else "false"
    child_env[SCRATCH_ROOT_ENV_VAR] = str(scratch)

    process = None
    client: JsonRpcProcessClient | None = None
    try:
        try:
            process = await spawn(command, env=child_env, cwd=cwd)
        except JsonRpcProcessError as exc:
            return SelfTestOutcome(
                server=DoctorCheckResult(
                    ok=False,
                    summary="MCP server failed to start.",
                    details={"command": command},
                    error=str(exc),
                    suggestions=(f"Check that '{config.runtime}' is installed and on PATH.",),
                ),
                functional=DoctorCheckResult.skip("Functional self-test skipped (server not started)."),
            )
        client = JsonRpcProcessClient(process)

        try:
            tools = await client.list_tools(config.list_timeout)
        except JsonRpcProcessError as exc:
            return SelfTestOutcome(
                server=DoctorCheckResult(
                    ok=False,
                    summary="MCP server did not answer tools/list.",
                    details={"command": command, "stderr": client.stderr_tail.text},
                    error=str(exc),
                    suggestions=("Run the server manually and check its stderr output.",),
                ),
                functional=DoctorCheckResult.skip("Functional self-test skipped (tools/list failed)."),
            )
        server = DoctorCheckResult(
            ok=True,
            summary=f"MCP server OK ({len(tools)} tools).",
            details={"toolCount": len(tools)},
        )

        if not godot_path:
            return SelfTestOutcome(
                server=server,
                functional=DoctorCheckResult.skip(
                    "Functional self-test skipped (no valid Godot executable).",
                    suggestions=(
                        "Set GODOT_PATH to a working Godot binary, or pass --godot-path <path>.",
                    ),
                ),
            )

        write_scratch_project(project)
        arguments, artifacts = build_selftest_batch(project)
        functional = await _run_batch(
            client, project, arguments, arguments["steps"], artifacts, config.batch_timeout
        )
        return SelfTestOutcome(server=server, functional=functional)
    finally:
        if client is not None:
            await client.dispose()
        if process is not None:
            await terminate_process(process, grace=kill_grace)
        try:
            shutil.rmtree(scratch)
        except OSError as exc:
            LOGGER.warning("Failed to remove self-test scratch directory %s: %s", scratch, exc)


async def _run_batch(
    client: JsonRpcProcessClient,
    project: Path,
    arguments: Mapping[str, object],
    steps: Sequence[object],
    artifacts: Sequence[SelfTestArtifact],
    timeout: float,
) -> DoctorCheckResult:
    step_count = len(steps)
    try:
        response = await client.call_tool(BATCH_TOOL, arguments, timeout)
    except JsonRpcProcessError as exc:
        return DoctorCheckResult(
            ok=False,
            summary="Functional self-test failed: batch request error.",
            details={"steps": step_count, "stderr": client.stderr_tail.text},
            error=str(exc),
        )
    if not response.ok:
        return DoctorCheckResult(
            ok=False,
            summary=f"Functional self-test failed: {response.summary}",
            details={"steps": step_count, "batch": response.to_dict()},
            error=response.summary,
            suggestions=("Re-run with a Godot 4.x binary; the batch needs headless editor support.",),
        )
    expected, missing = verify_artifacts(project, artifacts)
    if missing:
        return DoctorCheckResult(
            ok=False,
            summary=(
                f"Functional self-test failed: {len(missing)} artifact(s) missing or incomplete."
            ),
            details={"steps": step_count, "expected": expected, "missing": missing},
            error=f"Missing artifacts: {', '.join(missing)}",
        )
    return DoctorCheckResult(
        ok=True,
        summary=f"Functional self-test OK ({step_count} steps).",
        details={"steps": step_count, "expected": expected, "missing": []},
    )


__all__ = [
    "BATCH_TOOL",
    "DANGEROUS_OPS_ENV",
    "PNG_1X1_BASE64",
    "SELFTEST_DIR",
    "SelfTestArtifact",
    "SelfTestOutcome",
    "build_selftest_batch",
    "dispatcher_command",
    "run_self_test",
    "verify_artifacts",
]
