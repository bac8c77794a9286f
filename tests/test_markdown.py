"""Tests for Markdown report rendering."""
from __future__ import annotations

from godot_mcp_doctor.diagnostics import DoctorReport, render_doctor_report_markdown, report_from_scan_result
from godot_mcp_doctor.diagnostics.markdown import REPORT_FOOTER, escape_table_cell, issue_anchor

SCAN = {
    "meta": {"scanDurationMs": 321},
    "issues": [
        {
            "issueId": "SCRIPT_PARSE",
            "severity": "error",
            "category": "scripts",
            "title": "Parse | failure",
            "message": "Unexpected token\non line 4",
            "location": {"file": "res://player.gd", "line": 4},
            "suggestedFix": "Fix the syntax.",
            "relatedActions": ["godot_headless_op", "godot_headless_op", "a_action"],
        },
        {
            "issueId": "UID_MISSING",
            "severity": "warning",
            "category": "uid",
            "title": "Missing UID",
            "message": "No uid",
            "location": {"uid": "uid://abc"},
        },
    ],
}


def _report() -> DoctorReport:
    return report_from_scan_result(
        SCAN,
        project_path="/work/game",
        godot_version="4.3.stable",
        generated_at="2024-05-01T10:00:00Z",
    )


def test_render_is_deterministic() -> None:
    """Rendering the same report twice gives identical text."""
    report = _report()

    assert render_doctor_report_markdown(report) == render_doctor_report_markdown(report)


def test_render_header_and_summary() -> None:
    """The header carries the report metadata and severity counts."""
    text = render_doctor_report_markdown(_report())

    assert text.startswith("# Doctor Report\n\n- Generated: `2024-05-01T10:00:00Z`\n")
    assert "- Project: `/work/game`" in text
    assert "- Godot: `4.3.stable`" in text
    assert "- includeExport: `false`" in text
    assert "- Total issues: `2` (errors `1`, warnings `1`, info `0`)" in text
    assert "- Scan duration: `321` ms" in text
    assert text.endswith(f"---\n{REPORT_FOOTER}\n")
    assert "\r" not in text


def test_render_top_errors_escapes_cells() -> None:
    """Table cells have pipes escaped and newlines flattened."""
    text = render_doctor_report_markdown(_report())

    assert "### Top Errors" in text
    assert "| 1 | `SCRIPT_PARSE` | `res://player.gd:4` | Unexpected token on line 4 |" in text
    assert "| `ERROR` | `SCRIPT_PARSE` | Parse \\| failure | `res://player.gd:4` |" in text


def test_render_category_sections_in_order() -> None:
    """Categories appear in canonical order with detail blocks."""
    text = render_doctor_report_markdown(_report())

    assert text.index("### Scripts") < text.index("### UID")
    assert "### Assets / Import" not in text
    assert '<a id="error-scripts-script-parse-1"></a>' in text
    assert "- Location: `uid:uid://abc`" in text
    assert "- How to fix: Fix the syntax." in text
    assert "- Related actions: `a_action`, `godot_headless_op`" in text


def test_render_without_errors_or_version() -> None:
    """Empty reports omit the top-errors table and show unknowns."""
    report = report_from_scan_result({}, project_path="/p", generated_at="t")

    text = render_doctor_report_markdown(report)

    assert "### Top Errors" not in text
    assert "- Godot: `unknown`" in text
    assert "- Scan duration: `unknown` ms" in text


def test_escape_table_cell_and_anchor() -> None:
    """Helpers produce Markdown-safe values."""
    assert escape_table_cell(" a|b\r\nc ") == "a\\|b c"
    issue = _report().issues[0]
    assert issue_anchor(issue, 2) == "error-scripts-script-parse-3"


def test_render_keeps_issues_differing_only_by_message() -> None:
    """Issues that differ only in message both render, ordered by message."""
    twin = {
        "issueId": "SCENE_BROKEN_DEP",
        "severity": "error",
        "category": "scenes",
        "title": "Broken dependency",
        "location": {"file": "res://main.tscn", "line": 2},
    }
    report = report_from_scan_result(
        {"issues": [{**twin, "message": "Zeta missing"}, {**twin, "message": "Alpha missing"}]},
        project_path="/work/game",
        generated_at="2024-05-01T10:00:00Z",
    )

    text = render_doctor_report_markdown(report)

    assert "- Total issues: `2` (errors `2`, warnings `0`, info `0`)" in text
    assert "Zeta missing" in text
    assert "Alpha missing" in text
    assert text.index("Alpha missing") < text.index("Zeta missing")
    assert '<a id="error-scenes-scene-broken-dep-1"></a>' in text
    assert '<a id="error-scenes-scene-broken-dep-2"></a>' in text
