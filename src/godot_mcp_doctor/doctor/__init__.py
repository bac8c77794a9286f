"""Environment and connectivity checks for Godot MCP projects."""

from __future__ import annotations

from .bridge import run_bridge_check
from .engine import DoctorRuntime, format_doctor_report, run_doctor
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
from .overrides import FileOverride, override_files
from .report_runner import ReportPathError, run_doctor_report_cli, validate_report_relative_path
from .selftest import SelfTestOutcome, run_self_test
from .setup import (
    BridgeLockedError,
    ensure_editor_plugin_enabled,
    is_editor_plugin_enabled,
    reconcile_project,
)

__all__ = [
    "BridgeLockedError",
    "CHECK_NAMES",
    "DoctorCheckResult",
    "DoctorOptions",
    "DoctorResult",
    "DoctorRuntime",
    "FileOverride",
    "GodotDetails",
    "ProjectDetails",
    "ProjectLayout",
    "ProjectSetupOutcome",
    "ReportPathError",
    "SelfTestOutcome",
    "ensure_editor_plugin_enabled",
    "format_doctor_report",
    "is_editor_plugin_enabled",
    "override_files",
    "reconcile_project",
    "run_bridge_check",
    "run_doctor",
    "run_doctor_report_cli",
    "run_self_test",
    "validate_report_relative_path",
]
