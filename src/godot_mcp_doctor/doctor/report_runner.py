"""Generate a project diagnostics report through the dispatcher."""
from __future__ import annotations

import asyncio
import logging
import math
import posixpath
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from ..config import DispatcherConfig
from ..exit_codes import ExitCode
from ..godot_runtime import GODOT_PATH_ENV
from ..processes import terminate_process
from ..rpc.process_client import JsonRpcProcessClient, JsonRpcProcessError, spawn_dispatcher
from .selftest import DANGEROUS_OPS_ENV, Spawner, dispatcher_command

LOGGER = logging.getLogger(__name__)

DEFAULT_REPORT_PATH = ".godot_mcp/reports/doctor_report.md"
EXTERNAL_TOOLS_ENV = "ALLOW_EXTERNAL_TOOLS"
WORKSPACE_TOOL = "godot_workspace_manager"
READY_TIMEOUT = 10.0
READY_INTERVAL = 0.05
REPORT_TIMEOUT = 240.0


class ReportPathError(ValueError):
    """Raised when a report path is not a safe project-relative file path."""


def validate_report_relative_path(value: str) -> str:
    """Return the normalised project-relative report path.

    Raises :class:`ReportPathError` for empty values, ``res://``/``user://``
    URIs, absolute paths, paths escaping the project root and directories.
    """
    raw = value.strip()
    if not raw:
        raise ReportPathError("doctor-report-path must not be empty")
    if raw.startswith("user://"):
        raise ReportPathError(
            "doctor-report-path must be project-relative (user:// is not supported)"
        )
    if raw.startswith("res://"):
        raise ReportPathError(
            "doctor-report-path must be a filesystem path relative to the project root "
            "(res:// is not supported)"
        )
    slashed = raw.replace("\\", "/")
    normalized = posixpath.normpath(slashed)
    if (
        normalized in (".", "..")
        or normalized.startswith("../")
        or "/../" in normalized
        or posixpath.isabs(normalized)
    ):
        raise ReportPathError(
            "doctor-report-path must be project-relative and must not escape the project root"
        )
    # normpath drops a trailing slash, so check the input form.
    if slashed.endswith("/"):
        raise ReportPathError("doctor-report-path must be a file path")
    return normalized


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return math.floor(value) if math.isfinite(value) else None
    if isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
        return math.floor(number) if math.isfinite(number) else None
    return None


def extract_severity_counts(details: Mapping[str, Any]) -> tuple[dict[str, int], int] | None:
    """Return ``(issueCountBySeverity, issueCountTotal)`` from a tool's details."""
    summary = details.get("summary")
    if not isinstance(summary, Mapping):
        return None
    by_severity = summary.get("issueCountBySeverity")
    if not isinstance(by_severity, Mapping):
        return None
    total = _as_int(summary.get("issueCountTotal"))
    counts = {key: _as_int(by_severity.get(key)) for key in ("error", "warning", "info")}
    if total is None or any(count is None for count in counts.values()):
        return None
    return {key: int(count) for key, count in counts.items() if count is not None}, total


async def wait_for_server_ready(
    client: JsonRpcProcessClient,
    *,
    timeout: float = READY_TIMEOUT,
    interval: float = READY_INTERVAL,
) -> None:
    """Poll ``tools/list`` until the dispatcher answers or *timeout* elapses.

    Polling stops early once the child has exited; its stderr tail is
    included in the error.
    """
    loop = asyncio.get_running_loop()
    started = loop.time()
    last_error: Exception | None = None
    while loop.time() - started < timeout:
        if client.returncode is not None:
            await client.wait_stderr_closed()
            message = f"Server exited before it was ready (code={client.returncode})"
            stderr = client.stderr_tail.text.strip()
            raise JsonRpcProcessError(f"{message}: {stderr}" if stderr else message)
        remaining = max(0.001, timeout - (loop.time() - started))
        try:
            await client.list_tools(min(1.0, remaining))
            return
        except JsonRpcProcessError as exc:
            last_error = exc
        await asyncio.sleep(interval)
    raise JsonRpcProcessError(
        f"Timed out waiting for server ready ({timeout:.0f}s): {last_error}"
    )


def _error_output(code: str, message: str, **details: object) -> dict[str, object]:
    error: dict[str, object] = {"code": code, "message": message}
    if details:
        error["details"] = details
    return {"ok": False, "error": error}


async def run_doctor_report_cli(
    project_path: str,
    report_relative_path: str | None = None,
    godot_path: str | None = None,
    *,
    config: DispatcherConfig | None = None,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    spawn: Spawner = spawn_dispatcher,
    ready_timeout: float = READY_TIMEOUT,
    kill_grace: float = 2.0,
) -> tuple[ExitCode, dict[str, object]]:
    """Run the dispatcher's ``doctor_report`` action and summarise its outcome."""
    base = cwd or Path.cwd()
    resolved_project = Path(project_path).expanduser()
    if not resolved_project.is_absolute():
        resolved_project = base / resolved_project
    resolved_project = Path(posixpath.normpath(str(resolved_project)))

    requested = (report_relative_path or "").strip() or DEFAULT_REPORT_PATH
    try:
        report_path = validate_report_relative_path(requested)
    except ReportPathError as exc:
        return ExitCode.FAILED, _error_output(
            "E_PATH_VALIDATION", str(exc), reportRelativePath=requested
        )

    source_env = dict(env or {})
    child_env = dict(source_env)
    child_env[GODOT_PATH_ENV] = (godot_path or source_env.get(GODOT_PATH_ENV) or "").strip()
    child_env[DANGEROUS_OPS_ENV] = "false"
    child_env[EXTERNAL_TOOLS_ENV] = "false"

    command = dispatcher_command(config or DispatcherConfig(), base)
    process = None
    client: JsonRpcProcessClient | None = None
    try:
        process = await spawn(command, env=child_env, cwd=base)
        client = JsonRpcProcessClient(process)
        await wait_for_server_ready(client, timeout=ready_timeout)
        response = await client.call_tool(
            WORKSPACE_TOOL,
            {
                "action": "doctor_report",
                "projectPath": str(resolved_project),
                "reportRelativePath": report_path,
            },
            REPORT_TIMEOUT,
        )
    except JsonRpcProcessError as exc:
        LOGGER.debug("doctor-report failed: %s", exc)
        return ExitCode.FAILED, _error_output("E_DOCTOR_REPORT_CLI", str(exc))
    finally:
        if client is not None:
            await client.dispose()
        if process is not None:
            await terminate_process(process, grace=kill_grace)

    if not response.ok:
        return ExitCode.FAILED, {
            "ok": False,
            "toolOk": False,
            "summary": response.summary,
            "error": response.error,
            "details": dict(response.details) or None,
        }

    reported = response.details.get("reportPath")
    reported_path = reported if isinstance(reported, str) else None
    parsed = extract_severity_counts(response.details)
    by_severity, total = parsed if parsed is not None else (None, None)
    ok = reported_path is not None and by_severity is not None and by_severity["error"] == 0
    return ExitCode.from_ok(ok), {
        "ok": ok,
        "toolOk": True,
        "projectPath": str(resolved_project),
        "reportPath": reported_path,
        "issueCountBySeverity": by_severity,
        "issueCountTotal": total,
        "toolSummary": response.summary,
    }


__all__ = [
    "DEFAULT_REPORT_PATH",
    "ReportPathError",
    "extract_severity_counts",
    "run_doctor_report_cli",
    "validate_report_relative_path",
    "wait_for_server_ready",
]
