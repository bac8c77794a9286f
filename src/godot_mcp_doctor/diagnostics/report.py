"""Assemble :class:`DoctorReport` values from scan output."""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime

from .models import DoctorIssue, DoctorReport, DoctorScanOptions
from .normalize import dedupe_and_sort_issues, normalize_issues, summarize_issues

_BOOL_OPTIONS = {
    "includeAssets": "include_assets",
    "includeScripts": "include_scripts",
    "includeScenes": "include_scenes",
    "includeUID": "include_uid",
    "includeExport": "include_export",
    "deepSceneInstantiate": "deep_scene_instantiate",
}
_INT_OPTIONS = {
    "maxIssuesPerCategory": "max_issues_per_category",
    "timeBudgetMs": "time_budget_ms",
}


def with_scan_defaults(options: Mapping[str, object] | None) -> DoctorScanOptions:
    """Fill in defaults for any missing or malformed scan option."""
    defaults = DoctorScanOptions()
    if not isinstance(options, Mapping):
        return defaults
    values: dict[str, object] = {}
    for key, attr in _BOOL_OPTIONS.items():
        value = options.get(key)
        if isinstance(value, bool):
            values[attr] = value
    for key, attr in _INT_OPTIONS.items():
        value = options.get(key)
        if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
            values[attr] = max(1, math.floor(value))
    return DoctorScanOptions(**values)  # type: ignore[arg-type]


def build_doctor_report(
    *,
    project_path: str,
    godot_version: str | None,
    options: Mapping[str, object] | None,
    meta: Mapping[str, object] | None,
    issues: Iterable[DoctorIssue],
    generated_at: str | None = None,
) -> DoctorReport:
    """Return an immutable report; the timestamp is captured exactly once here."""
    ordered = dedupe_and_sort_issues(issues)
    timestamp = generated_at or datetime.now(UTC).isoformat().replace("+00:00", "Z")
    return DoctorReport(
        generated_at=timestamp,
        project_path=project_path,
        godot_version=godot_version,
        options=with_scan_defaults(options),
        issues=tuple(ordered),
        summary=summarize_issues(ordered, meta),
        meta=dict(meta) if isinstance(meta, Mapping) else None,
    )


def report_from_scan_result(
    payload: object,
    *,
    project_path: str,
    godot_version: str | None = None,
    options: Mapping[str, object] | None = None,
    generated_at: str | None = None,
) -> DoctorReport:
    """Build a report from a raw ``{"meta": ..., "issues": [...]}`` document."""
    raw = payload if isinstance(payload, Mapping) else {}
    meta = raw.get("meta")
    scan_options = options
    if scan_options is None and isinstance(meta, Mapping):
        candidate = meta.get("options")
        scan_options = candidate if isinstance(candidate, Mapping) else None
    return build_doctor_report(
        project_path=project_path,
        godot_version=godot_version,
        options=scan_options,
        meta=meta if isinstance(meta, Mapping) else None,
        issues=normalize_issues(raw.get("issues")),
        generated_at=generated_at,
    )


__all__ = ["build_doctor_report", "report_from_scan_result", "with_scan_defaults"]
