"""Project diagnostics: issue normalisation and report rendering."""

from __future__ import annotations

from .markdown import render_doctor_report_markdown
from .models import (
    CATEGORY_VALUES,
    SEVERITY_VALUES,
    DoctorIssue,
    DoctorReport,
    DoctorReportSummary,
    DoctorScanOptions,
    IssueCategory,
    IssueLocation,
    IssueSeverity,
)
from .normalize import (
    dedupe_and_sort_issues,
    get_top_issues,
    normalize_issues,
    summarize_issues,
)
from .report import build_doctor_report, report_from_scan_result, with_scan_defaults

__all__ = [
    "CATEGORY_VALUES",
    "DoctorIssue",
    "DoctorReport",
    "DoctorReportSummary",
    "DoctorScanOptions",
    "IssueCategory",
    "IssueLocation",
    "IssueSeverity",
    "SEVERITY_VALUES",
    "build_doctor_report",
    "dedupe_and_sort_issues",
    "get_top_issues",
    "normalize_issues",
    "render_doctor_report_markdown",
    "report_from_scan_result",
    "summarize_issues",
    "with_scan_defaults",
]
