"""Command-line interface for godot-mcp-doctor.

The CLI wires configuration, structured logging and the async doctor stages
together. Every command runs inside a ``StructuredLogger`` operation so that
``operations.jsonl`` records what was checked and how it ended.
"""
from __future__ import annotations

import asyncio
import json
import os
import textwrap
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console

from . import __version__
from .config import ConfigError, DoctorConfig, load_config
from .diagnostics import render_doctor_report_markdown, report_from_scan_result
from .doctor import (
    DoctorOptions,
    DoctorResult,
    DoctorRuntime,
    format_doctor_report,
    run_doctor,
    run_doctor_report_cli,
)
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to godot-mcp-doctor's YAML config file.",
)

GODOT_PATH_OPTION = typer.Option(
    None,
    "--godot-path",
    help="Godot executable to validate instead of GODOT_PATH/auto-detection.",
)
PROJECT_OPTION = typer.Option(
    None,
    "--project",
    help="Godot project root (directory containing project.godot).",
)
STRICT_PATH_OPTION = typer.Option(
    False,
    "--strict-path-validation",
    help="Fail instead of falling back to a default path when detection finds nothing.",
)
READONLY_OPTION = typer.Option(
    False,
    "--readonly",
    help="Report project setup changes and stale locks without modifying anything.",
)
DOCTOR_JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the doctor result as JSON.",
)
REPORT_PATH_OPTION = typer.Option(
    None,
    "--report-path",
    help="Project-relative Markdown report path (default .godot_mcp/reports/doctor_report.md).",
)
RENDER_OUTPUT_OPTION = typer.Option(
    None,
    "--output",
    "-o",
    dir_okay=False,
    help="Write the Markdown report to this file instead of stdout.",
)
RENDER_PROJECT_OPTION = typer.Option(
    "",
    "--project-path",
    help="Project path shown in the report header.",
)
RENDER_GODOT_VERSION_OPTION = typer.Option(
    None,
    "--godot-version",
    help="Godot version shown in the report header.",
)

_CHECK_STATUS_STYLE = {
    "ok": "[green]PASS[/green]",
    "skipped": "[yellow]SKIP[/yellow]",
    "fail": "[red]FAIL[/red]",
}


app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Environment and connectivity doctor for Godot MCP setups.

        Validates the Godot executable, reconciles the editor bridge files of
        a project, self-tests the MCP dispatcher and probes the editor bridge.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: DoctorConfig
    logger: StructuredLogger


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        config = load_config(config_file=config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(code=int(ExitCode.USAGE)) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the godot-mcp-doctor version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"godot-mcp-doctor {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.USAGE),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _print_json(payload: Mapping[str, object]) -> None:
    console.print(json.dumps(payload, indent=2), markup=False, highlight=False, soft_wrap=True)


def _check_status(ok: bool, skipped: bool) -> str:
    if skipped:
        return _CHECK_STATUS_STYLE["skipped"]
    return _CHECK_STATUS_STYLE["ok" if ok else "fail"]


def _render_doctor_result(result: DoctorResult) -> None:
    """Render a doctor result in a human-friendly format."""
    lines = format_doctor_report(result).split("\n")
    style = "green" if result.ok else "red"
    console.print(f"[{style}]{lines[0]}[/{style}]")
    for line in lines[1:]:
        if line.startswith("Check "):
            continue
        console.print(line, markup=False, highlight=False)
    if result.checks:
        console.print()
        for name, check in result.checks.items():
            console.print(
                f"{_check_status(check.ok, check.skipped)} {name}: ", end="", highlight=False
            )
            console.print(check.summary, markup=False, highlight=False)
            if check.error and not check.ok:
                console.print(f"  error: {check.error}", markup=False, highlight=False)


def _failed_checks(result: DoctorResult) -> list[str]:
    failed: list[str] = []
    if not result.godot.ok:
        failed.append("godot")
    if result.project is not None and not result.project.ok:
        failed.append("project")
    failed.extend(name for name, check in result.checks.items() if not check.ok)
    return failed


@app.command()
def doctor(
    ctx: typer.Context,
    godot_path: str | None = GODOT_PATH_OPTION,
    project: str | None = PROJECT_OPTION,
    strict_path_validation: bool = STRICT_PATH_OPTION,
    readonly: bool = READONLY_OPTION,
    json_output: bool = DOCTOR_JSON_OPTION,
) -> None:
    """Check Godot, the project bridge files, the MCP server and the editor bridge."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor",
        args={
            "godot_path": godot_path,
            "project": project,
            "strict_path_validation": strict_path_validation,
            "readonly": readonly,
            "json": json_output,
        },
        target={"kind": "project" if project else "environment", "scope": project or "global"},
    ) as op:
        options = DoctorOptions(
            godot_path=godot_path,
            project_path=project,
            strict_path_validation=strict_path_validation,
            read_only=readonly,
        )
        doctor_runtime = DoctorRuntime(config=runtime.config, env=dict(os.environ))
        result = asyncio.run(run_doctor(options, doctor_runtime))
        payload = result.to_dict()

        for name, check in result.checks.items():
            status = "skipped" if check.skipped else ("ok" if check.ok else "failed")
            op.add_step(f"check.{name}", status=status, detail=check.summary)

        if json_output:
            _print_json(payload)
        else:
            _render_doctor_result(result)

        log_context = {"result": payload}
        if result.ok:
            op.success(result.summary, context=log_context)
            return

        rc = int(ExitCode.from_ok(result.ok))
        op.error(
            result.summary,
            rc=rc,
            errors=_failed_checks(result) or None,
            context=log_context,
        )
        raise typer.Exit(code=rc)


@app.command("doctor-report")
def doctor_report(
    ctx: typer.Context,
    project: str = typer.Option(
        ...,
        "--project",
        help="Godot project root to scan.",
    ),
    report_path: str | None = REPORT_PATH_OPTION,
    godot_path: str | None = GODOT_PATH_OPTION,
) -> None:
    """Ask the MCP server to scan a project and write a Markdown diagnostics report."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "doctor-report",
        args={"project": project, "report_path": report_path, "godot_path": godot_path},
        target={"kind": "project", "scope": project},
    ) as op:
        exit_code, output = asyncio.run(
            run_doctor_report_cli(
                project,
                report_path,
                godot_path,
                config=runtime.config.dispatcher,
                env=dict(os.environ),
                kill_grace=runtime.config.bridge.kill_grace,
            )
        )
        _print_json(output)

        if exit_code == ExitCode.OK:
            op.success("Doctor report generated.", context={"output": output})
            return

        error = output.get("error")
        message = "Doctor report reported errors."
        if isinstance(error, Mapping) and isinstance(error.get("message"), str):
            message = str(error["message"])
        elif isinstance(output.get("summary"), str):
            message = str(output["summary"])
        op.error(message, rc=int(exit_code), context={"output": output})
        raise typer.Exit(code=int(exit_code))


@app.command("render-report")
def render_report(
    ctx: typer.Context,
    scan_json: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="JSON file holding a raw scan result ({meta, issues}).",
    ),
    output: Path | None = RENDER_OUTPUT_OPTION,
    project_path: str = RENDER_PROJECT_OPTION,
    godot_version: str | None = RENDER_GODOT_VERSION_OPTION,
) -> None:
    """Normalise a raw scan result and render it as Markdown."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "render-report",
        args={
            "scan_json": scan_json,
            "output": output,
            "project_path": project_path,
            "godot_version": godot_version,
        },
        target={"kind": "report", "scope": str(scan_json)},
    ) as op:
        try:
            payload = json.loads(scan_json.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            _command_error(op, f"Unable to read scan result {scan_json}: {exc}", rc=int(ExitCode.USAGE))

        report = report_from_scan_result(
            payload,
            project_path=project_path,
            godot_version=godot_version,
        )
        markdown = render_doctor_report_markdown(report)
        op.add_step("render", detail=f"{report.summary.total} issue(s)")

        if output is None:
            console.print(markdown, end="", markup=False, highlight=False, soft_wrap=True)
            op.success("Rendered doctor report.", changed=0)
            return

        try:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_text(markdown, encoding="utf-8", newline="\n")
        except OSError as exc:
            _command_error(op, f"Unable to write {output}: {exc}", rc=int(ExitCode.FAILED))
        console.print(f"[green]Report written:[/green] {output}")
        op.success("Rendered doctor report.", changed=1, context={"output": str(output)})


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
