"""Markdown rendering for diagnostics reports.

:func:`render_doctor_report_markdown` is a pure function of its argument; the
only timestamp in the output is ``report.generated_at``.
"""

from __future__ import annotations

import re

from .models import CATEGORY_VALUES, DoctorIssue, DoctorReport

CATEGORY_TITLES = {
    "environment": "Environment",
    "project": "Project Settings",
    "assets": "Assets / Import",
    "scripts": "Scripts",
    "scenes": "Scenes / Resources",
    "uid": "UID",
    "export": "Export",
    "other": "Other",
}
SEVERITY_BADGES = {"error": "ERROR", "warning": "WARN", "info": "INFO"}
TOP_ERRORS_LIMIT = 10
REPORT_FOOTER = "Generated by godot-mcp-doctor doctor_report."

_ANCHOR_UNSAFE = re.compile(r"[^a-z0-9]+")


def _flag(value: bool) -> str:
    return "true" if value else "false"


def escape_table_cell(value: str) -> str:
    """Make *value* safe for a single Markdown table cell."""
    flattened = value.replace("\r\n", "\n").replace("\r", "\n").replace("\n", " ")
    return flattened.replace("|", "\\|").strip()


def location_text(issue: DoctorIssue) -> str:
    """Return ``file:line node:<path> uid:<uid>`` for whatever is known."""
    location = issue.location
    if location is None:
        return ""
    bits: list[str] = []
    if location.file:
        bits.append(f"{location.file}:{location.line}" if location.line else location.file)
    if location.node_path:
        bits.append(f"node:{location.node_path}")
    if location.uid:
        bits.append(f"uid:{location.uid}")
    return " ".join(bits)


def issue_anchor(issue: DoctorIssue, index: int) -> str:
    """Return a stable HTML anchor for the *index*-th issue in a category."""
    base = f"{issue.severity}-{issue.category}-{issue.issue_id}-{index + 1}".lower()
    anchor = _ANCHOR_UNSAFE.sub("-", base).strip("-")
    return anchor or f"issue-{index + 1}"


def _render_issue_details(issue: DoctorIssue, index: int) -> list[str]:
    lines = [
        f"### {SEVERITY_BADGES[issue.severity]} • {issue.issue_id}",
        f'<a id="{issue_anchor(issue, index)}"></a>',
        "",
        f"- Category: `{issue.category}`",
    ]
    location = location_text(issue)
    if location:
        lines.append(f"- Location: `{location}`")
    if issue.title.strip():
        lines.append(f"- Title: {issue.title}")
    if issue.message.strip():
        lines.append(f"- Message: {issue.message}")
    if issue.evidence:
        lines.append(f"- Evidence: `{issue.evidence}`")
    if issue.suggested_fix:
        lines.append(f"- How to fix: {issue.suggested_fix}")
    if issue.related_actions:
        actions = ", ".join(f"`{action}`" for action in sorted(set(issue.related_actions)))
        lines.append(f"- Related actions: {actions}")
    lines.append("")
    return lines


def render_doctor_report_markdown(report: DoctorReport) -> str:
    """Render *report* as Markdown with ``\\n`` line endings and one trailing newline."""
    options = report.options
    summary = report.summary
    by_severity = summary.by_severity
    duration = summary.scan_duration_ms if summary.scan_duration_ms is not None else "unknown"

    lines: list[str] = [
        "# Doctor Report",
        "",
        f"- Generated: `{report.generated_at}`",
        f"- Project: `{report.project_path}`",
        f"- Godot: `{report.godot_version or 'unknown'}`",
        "",
        "## Scan Options",
        "",
        f"- includeAssets: `{_flag(options.include_assets)}`",
        f"- includeScripts: `{_flag(options.include_scripts)}`",
        f"- includeScenes: `{_flag(options.include_scenes)}`",
        f"- includeUID: `{_flag(options.include_uid)}`",
        f"- includeExport: `{_flag(options.include_export)}`",
        f"- deepSceneInstantiate: `{_flag(options.deep_scene_instantiate)}`",
        f"- maxIssuesPerCategory: `{options.max_issues_per_category}`",
        f"- timeBudgetMs: `{options.time_budget_ms}`",
        "",
        "## Executive Summary",
        "",
        (
            f"- Total issues: `{summary.total}` "
            f"(errors `{by_severity.get('error', 0)}`, "
            f"warnings `{by_severity.get('warning', 0)}`, "
            f"info `{by_severity.get('info', 0)}`)"
        ),
        f"- Scan duration: `{duration}` ms",
        "",
    ]

    top_errors = [issue for issue in report.issues if issue.severity == "error"][:TOP_ERRORS_LIMIT]
    if top_errors:
        lines.extend(["### Top Errors", "", "| # | Issue | Location | Message |", "| -: | --- | --- | --- |"])
        for position, issue in enumerate(top_errors, start=1):
            lines.append(
                f"| {position} | `{escape_table_cell(issue.issue_id)}` "
                f"| `{escape_table_cell(location_text(issue))}` "
                f"| {escape_table_cell(issue.message)} |"
            )
        lines.append("")

    lines.extend(["## Issues By Category", ""])
    for category in CATEGORY_VALUES:
        bucket = [issue for issue in report.issues if issue.category == category]
        if not bucket:
            continue
        title = CATEGORY_TITLES[category]
        lines.extend([f"### {title}", "", "| Severity | IssueId | Title | Location |", "| --- | --- | --- | --- |"])
        for issue in bucket:
            lines.append(
                f"| `{SEVERITY_BADGES[issue.severity]}` "
                f"| `{escape_table_cell(issue.issue_id)}` "
                f"| {escape_table_cell(issue.title)} "
                f"| `{escape_table_cell(location_text(issue))}` |"
            )
        lines.extend(["", f"#### {title} Details", ""])
        for index, issue in enumerate(bucket):
            lines.extend(_render_issue_details(issue, index))

    lines.extend(["---", REPORT_FOOTER])
    return "\n".join(lines).rstrip() + "\n"


__all__ = [
    "CATEGORY_TITLES",
    "REPORT_FOOTER",
    "SEVERITY_BADGES",
    "escape_table_cell",
    "issue_anchor",
    "location_text",
    "render_doctor_report_markdown",
]
