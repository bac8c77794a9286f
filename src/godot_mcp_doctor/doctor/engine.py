"""Stage execution harness for the doctor command."""

from __future__ import annotations

import logging
import os
import sys
import time
import traceback
from collections.abc import Awaitable, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ..config import DoctorConfig
from ..godot_runtime import (
    GODOT_PATH_ENV,
    GodotPathDetectionError,
    GodotResolver,
    ValidityCache,
)
from ..rpc.bridge_client import check_health
from ..rpc.process_client import spawn_dispatcher
from .bridge import HealthCheck, Launcher, launch_editor, run_bridge_check
from .models import (
    CHECK_NAMES,
    DoctorCheckResult,
    DoctorOptions,
    DoctorResult,
    GodotDetails,
    ProjectDetails,
    ProjectLayout,
    ProjectSetupOutcome,
)
from .selftest import SelfTestOutcome, Spawner, run_self_test
from .setup import is_editor_plugin_enabled, reconcile_project

LOGGER = logging.getLogger(__name__)

SUMMARY_OK = "DOCTOR OK: environment looks good."
SUMMARY_FAIL = "DOCTOR FAIL: one or more checks failed."
SET_GODOT_PATH_HINT = "Set GODOT_PATH to a working Godot binary, or pass --godot-path <path>."
MAX_TRIED_CANDIDATES = 6


@dataclass(slots=True)
class DoctorRuntime:
    """Collaborators for a single doctor run."""

    config: DoctorConfig
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    cwd: Path = field(default_factory=Path.cwd)
    platform: str = sys.platform
    cache: ValidityCache | None = None
    spawn: Spawner = spawn_dispatcher
    health_check: HealthCheck = check_health
    launcher: Launcher = launch_editor

    def validity_cache(self) -> ValidityCache:
        """Return the run's cache, creating it on first use."""
        if self.cache is None:
            self.cache = ValidityCache(timeout=self.config.godot.version_timeout)
        return self.cache


def _duration_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _unexpected_failure(stage: str, exc: Exception, duration_ms: int) -> DoctorCheckResult:
    LOGGER.error("Doctor stage %s raised an unexpected error: %s", stage, exc)
    return DoctorCheckResult(
        ok=False,
        summary=f"Stage '{stage}' raised an unexpected error: {exc}",
        details={
            "exception": repr(exc),
            "traceback": traceback.format_exc(),
            "durationMs": duration_ms,
        },
        error=str(exc),
    )


async def _guarded(stage: str, call: Callable[[], Awaitable[DoctorCheckResult]]) -> DoctorCheckResult:
    start = time.perf_counter()
    try:
        return await call()
    except Exception as exc:
        return _unexpected_failure(stage, exc, _duration_ms(start))


def dedupe_suggestions(suggestions: Iterable[str]) -> list[str]:
    """Drop empty strings and exact duplicates, keeping first-seen order."""
    return [item for item in dict.fromkeys(suggestions) if item]


# ---------------------------------------------------------------------------
# Godot executable
# ---------------------------------------------------------------------------


async def resolve_godot_details(
    options: DoctorOptions,
    runtime: DoctorRuntime,
) -> tuple[GodotDetails, list[str]]:
    """Resolve the executable: ``--godot-path``, then ``GODOT_PATH``, then discovery."""
    strict = options.strict_path_validation
    cache = runtime.validity_cache()
    suggestions: list[str] = []

    explicit = (options.godot_path or "").strip()
    if explicit:
        if await cache.is_valid(explicit):
            return GodotDetails(True, explicit, "cli", strict), suggestions
        suggestions.append(
            f"Fix the provided --godot-path (expected '{explicit} --version' to succeed)."
        )
        return (
            GodotDetails(
                False, explicit, "cli", strict, error=f"Godot executable is not valid: {explicit}"
            ),
            suggestions,
        )

    from_env = (runtime.env.get(GODOT_PATH_ENV) or "").strip()
    if from_env and not await cache.is_valid(from_env):
        suggestions.append(
            f"Godot path from GODOT_PATH is invalid: {from_env} "
            f"(expected '{from_env} --version' to succeed)"
        )

    resolver = GodotResolver(cache, env=runtime.env, platform=runtime.platform, cwd=runtime.cwd)
    try:
        resolved = await resolver.resolve(strict=strict)
    except GodotPathDetectionError as exc:
        suggestions.extend([SET_GODOT_PATH_HINT, "Verify it works by running: <godot> --version"])
        return (
            GodotDetails(
                False,
                None,
                "none",
                strict,
                error=str(exc),
                attempted_candidates=tuple(item.to_dict() for item in exc.attempted),
            ),
            suggestions,
        )

    if resolved.valid:
        origin = "env" if resolved.origin == "env" else "auto"
        return GodotDetails(True, resolved.path, origin, strict), suggestions

    if resolved.disabled:
        suggestions.append(SET_GODOT_PATH_HINT)
        return (
            GodotDetails(
                False,
                resolved.path,
                "env",
                strict,
                error="Godot auto-detection is disabled (GODOT_PATH is set but empty).",
            ),
            suggestions,
        )

    suggestions.extend(
        [
            f"Auto-detected Godot path is invalid: {resolved.path} "
            f"(expected '{resolved.path} --version' to succeed)",
            SET_GODOT_PATH_HINT,
            "Verify it works by running: <godot> --version",
        ]
    )
    return (
        GodotDetails(
            False,
            resolved.path,
            "auto",
            strict,
            error=f"Godot executable is not valid: {resolved.path}",
            attempted_candidates=tuple(item.to_dict() for item in resolved.attempted),
        ),
        suggestions,
    )


# ---------------------------------------------------------------------------
# Project
# ---------------------------------------------------------------------------


def resolve_project_details(
    project_path: str,
    *,
    plugin_id: str,
    addon_source: Path,
    cwd: Path,
) -> tuple[ProjectDetails, list[str]]:
    """Report which bridge files exist under *project_path*."""
    root = Path(project_path).expanduser()
    if not root.is_absolute():
        root = cwd / root
    root = Path(os.path.normpath(root))
    layout = ProjectLayout(root, plugin_id)

    if not root.exists():
        return (
            ProjectDetails(
                ok=False,
                path=str(root),
                project_godot_path=str(layout.descriptor),
                error=f"Project path does not exist: {root}",
            ),
            [f"Pass a valid Godot project root containing project.godot (got: {root})."],
        )

    suggestions: list[str] = []
    has_descriptor = layout.descriptor.is_file()
    has_addon = layout.addon_dir.exists()
    plugin_enabled = False
    if has_descriptor:
        try:
            plugin_enabled = is_editor_plugin_enabled(
                layout.descriptor.read_text(encoding="utf-8"), plugin_id
            )
        except OSError as exc:
            suggestions.append(f"Failed to read {layout.descriptor}: {exc}")
    has_token = layout.token_file.exists()
    has_port = layout.port_file.exists()
    has_host = layout.host_file.exists()

    if not has_descriptor:
        suggestions.append(
            f"Missing project.godot at: {layout.descriptor} (pass the Godot project root)."
        )
    if not has_addon:
        suggestions.append(f"Missing editor bridge addon at: {layout.addon_dir} (non-fatal).")
        suggestions.append(
            f"To install/sync it: godot-mcp-doctor doctor --project {root} "
            f"(copies the addon from {addon_source})"
        )
    if not has_token:
        suggestions.append(f"Missing {layout.token_file.name} at: {layout.token_file} (non-fatal).")
        suggestions.append("Create it with any random string token.")
    if not has_port:
        suggestions.append(f"Missing {layout.port_file.name} at: {layout.port_file} (non-fatal).")
        suggestions.append("(Optional) Create it with a port number like 8765.")
    if not has_host:
        suggestions.append(f"Missing {layout.host_file.name} at: {layout.host_file} (non-fatal).")
        suggestions.append("(Optional) Create it with a host value like 127.0.0.1.")

    details = ProjectDetails(
        ok=has_descriptor,
        path=str(root),
        project_godot_path=str(layout.descriptor),
        has_project_godot=has_descriptor,
        has_bridge_addon=has_addon,
        has_bridge_plugin_enabled=plugin_enabled,
        has_token_file=has_token,
        has_port_file=has_port,
        has_host_file=has_host,
    )
    return details, suggestions


def _setup_check(outcome: ProjectSetupOutcome, addon_source: Path) -> DoctorCheckResult:
    suggestions: list[str] = []
    if outcome.planned_changes and outcome.lock_file_exists:
        suggestions.append("Close the Godot editor, then rerun doctor to apply project setup.")
    if outcome.error and not addon_source.is_dir() and not outcome.addon_copied:
        suggestions.append(
            f"Set addon_source in the doctor config to the godot_mcp_bridge addon directory "
            f"(currently {addon_source})."
        )
    return DoctorCheckResult(
        ok=outcome.ok,
        summary=outcome.summary,
        skipped=outcome.skipped,
        details=outcome.to_dict(),
        error=outcome.error,
        suggestions=tuple(suggestions),
    )


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


async def run_doctor(options: DoctorOptions, runtime: DoctorRuntime) -> DoctorResult:
    """Run every doctor stage in dependency order and aggregate the results."""
    config = runtime.config
    suggestions: list[str] = []

    godot, godot_suggestions = await resolve_godot_details(options, runtime)
    suggestions.extend(godot_suggestions)
    godot_path = godot.path if godot.ok else None

    addon_source = config.addon_source
    if not addon_source.is_absolute():
        addon_source = runtime.cwd / addon_source

    project: ProjectDetails | None = None
    project_root: Path | None = None
    if options.project_path:
        project, project_suggestions = resolve_project_details(
            options.project_path,
            plugin_id=config.bridge.plugin_id,
            addon_source=addon_source,
            cwd=runtime.cwd,
        )
        suggestions.extend(project_suggestions)
        project_root = Path(project.path)

    checks: dict[str, DoctorCheckResult] = {}

    if project is not None and project_root is not None:
        layout = ProjectLayout(project_root, config.bridge.plugin_id)

        async def _setup() -> DoctorCheckResult:
            outcome = reconcile_project(
                layout, addon_source=addon_source, read_only=options.read_only
            )
            return _setup_check(outcome, addon_source)

        checks["projectSetup"] = await _guarded("projectSetup", _setup)

    selftest_holder: list[SelfTestOutcome] = []

    async def _selftest() -> DoctorCheckResult:
        outcome = await run_self_test(
            config.dispatcher,
            godot_path,
            cwd=runtime.cwd,
            env=runtime.env,
            spawn=runtime.spawn,
            kill_grace=config.bridge.kill_grace,
        )
        selftest_holder.append(outcome)
        return outcome.server

    checks["mcpServer"] = await _guarded("mcpServer", _selftest)
    if selftest_holder:
        checks["mcpFunctional"] = selftest_holder[0].functional
    else:
        checks["mcpFunctional"] = DoctorCheckResult.skip(
            "Functional self-test skipped (self-test crashed)."
        )

    if project_root is not None:

        async def _bridge() -> DoctorCheckResult:
            return await run_bridge_check(
                project_root,
                config=config.bridge,
                godot_path=godot_path,
                read_only=options.read_only,
                env=runtime.env,
                platform=runtime.platform,
                health_check=runtime.health_check,
                launcher=runtime.launcher,
            )

        checks["editorBridge"] = await _guarded("editorBridge", _bridge)

    for name in CHECK_NAMES:
        check = checks.get(name)
        if check is not None:
            suggestions.extend(check.suggestions)

    ok = (
        godot.ok
        and (project is None or project.ok)
        and checks["mcpServer"].ok
        and checks["mcpFunctional"].ok
        and (
            project is None
            or (checks["projectSetup"].ok and checks["editorBridge"].ok)
        )
    )
    ordered = {name: checks[name] for name in CHECK_NAMES if name in checks}
    return DoctorResult(
        ok=ok,
        summary=SUMMARY_OK if ok else SUMMARY_FAIL,
        godot=godot,
        project=project,
        checks=ordered,
        suggestions=tuple(dedupe_suggestions(suggestions)),
    )


# ---------------------------------------------------------------------------
# Plain-text rendering
# ---------------------------------------------------------------------------


def _presence(flag: bool, missing: str = "MISSING (non-fatal)") -> str:
    return "OK" if flag else missing


def format_doctor_report(result: DoctorResult) -> str:
    """Render *result* as the human-readable multi-line report."""
    lines = [result.summary]

    godot = result.godot
    lines.append(f"Strict path validation: {'true' if godot.strict_path_validation else 'false'}")
    if godot.ok:
        lines.append(f"Godot: OK ({godot.origin}) -> {godot.path}")
    else:
        lines.append(f"Godot: FAIL -> {godot.error or 'not found'}")
        attempted = list(godot.attempted_candidates)
        if attempted:
            tried = ", ".join(
                f"{item.get('origin')}={item.get('candidate')}"
                for item in attempted[:MAX_TRIED_CANDIDATES]
            )
            suffix = ", …" if len(attempted) > MAX_TRIED_CANDIDATES else ""
            lines.append(f"Godot tried: {tried}{suffix}")

    project = result.project
    if project is None:
        lines.append("Project: SKIPPED (pass --project <path> to enable checks)")
    else:
        if project.ok:
            lines.append(f"Project: OK -> {project.path}")
            lines.append(f"- project.godot: OK ({project.project_godot_path})")
        else:
            lines.append(f"Project: FAIL -> {project.error or 'invalid project'}")
            lines.append(
                f"- project.godot: {_presence(project.has_project_godot, 'MISSING')} "
                f"({project.project_godot_path})"
            )
        lines.append(f"- addons/godot_mcp_bridge: {_presence(project.has_bridge_addon)}")
        lines.append(f"- .godot_mcp_token: {_presence(project.has_token_file)}")
        lines.append(f"- .godot_mcp_port: {_presence(project.has_port_file)}")
        lines.append(f"- .godot_mcp_host: {_presence(project.has_host_file)}")

    for name, check in result.checks.items():
        if check.skipped:
            status = "SKIPPED"
        else:
            status = "OK" if check.ok else "FAIL"
        line = f"Check {name}: {status} -> {check.summary}"
        if check.error and not check.ok:
            line = f"{line} ({check.error})"
        lines.append(line)

    if result.suggestions:
        lines.append("")
        lines.append("Suggestions:")
        lines.extend(f"- {item}" for item in result.suggestions)

    return "\n".join(lines)


__all__ = [
    "DoctorRuntime",
    "SUMMARY_FAIL",
    "SUMMARY_OK",
    "dedupe_suggestions",
    "format_doctor_report",
    "resolve_godot_details",
    "resolve_project_details",
    "run_doctor",
]
