"""Coerce loosely-typed scan output into canonical :class:`DoctorIssue` values.

Nothing in this module raises on malformed input: unknown severities become
``info``, unknown categories become ``other``, and invalid location fields are
dropped one by one.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping, Sequence
from typing import cast

from .models import (
    CATEGORY_VALUES,
    SEVERITY_VALUES,
    DoctorIssue,
    DoctorReportSummary,
    IssueCategory,
    IssueLocation,
    IssueSeverity,
)


def _non_empty_str(value: object, fallback: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _finite_number(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str) and value.strip():
        try:
            numeric = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return numeric if math.isfinite(numeric) else None


def normalize_severity(value: object) -> IssueSeverity:
    """Return a valid severity, defaulting to ``info``."""
    raw = value.strip().lower() if isinstance(value, str) else ""
    if raw in SEVERITY_VALUES:
        return cast(IssueSeverity, raw)
    return "info"


def normalize_category(value: object) -> IssueCategory:
    """Return a valid category, defaulting to ``other``."""
    raw = value.strip().lower() if isinstance(value, str) else ""
    if raw in CATEGORY_VALUES:
        return cast(IssueCategory, raw)
    return "other"


def normalize_location(value: object) -> IssueLocation | None:
    """Validate each location field; return ``None`` when nothing survives."""
    if not isinstance(value, Mapping):
        return None
    line_value = _finite_number(value.get("line"))
    line = math.floor(line_value) if line_value is not None and line_value > 0 else None
    location = IssueLocation(
        file=_optional_str(value.get("file")),
        line=line,
        node_path=_optional_str(value.get("nodePath")),
        uid=_optional_str(value.get("uid")),
    )
    if location == IssueLocation():
        return None
    return location


def _related_actions(raw: Mapping[str, object]) -> tuple[str, ...] | None:
    value = raw.get("relatedActions", raw.get("relatedMcpActions"))
    if not isinstance(value, (list, tuple)):
        return None
    return tuple(item.strip() for item in value if isinstance(item, str) and item.strip())


def normalize_issue(raw: Mapping[str, object]) -> DoctorIssue:
    """Normalise a single raw mapping."""
    return DoctorIssue(
        issue_id=_non_empty_str(raw.get("issueId"), "UNKNOWN"),
        severity=normalize_severity(raw.get("severity")),
        category=normalize_category(raw.get("category")),
        title=_non_empty_str(raw.get("title"), "Untitled issue"),
        message=_non_empty_str(raw.get("message"), ""),
        location=normalize_location(raw.get("location")),
        evidence=_optional_str(raw.get("evidence")),
        suggested_fix=_optional_str(raw.get("suggestedFix")),
        related_actions=_related_actions(raw),
    )


def normalize_issues(raw_issues: object) -> list[DoctorIssue]:
    """Normalise a raw issue list; non-mapping entries are skipped."""
    if not isinstance(raw_issues, (list, tuple)):
        return []
    return [normalize_issue(item) for item in raw_issues if isinstance(item, Mapping)]


def dedupe_and_sort_issues(issues: Iterable[DoctorIssue]) -> list[DoctorIssue]:
    """Drop duplicates (first occurrence wins) and apply the report ordering."""
    seen: set[tuple[object, ...]] = set()
    unique: list[DoctorIssue] = []
    for issue in issues:
        key = issue.dedupe_key
        if key in seen:
            continue
        seen.add(key)
        unique.append(issue)
    # list.sort is stable, so fully tied issues keep their scan order.
    unique.sort(key=lambda issue: issue.sort_key)
    return unique


def summarize_issues(
    issues: Sequence[DoctorIssue],
    meta: Mapping[str, object] | None,
) -> DoctorReportSummary:
    """Count issues by severity and category and pick up the scan duration."""
    by_severity = {severity: 0 for severity in SEVERITY_VALUES}
    by_category: dict[str, int] = {}
    for issue in issues:
        by_severity[issue.severity] += 1
        by_category[issue.category] = by_category.get(issue.category, 0) + 1

    duration: int | None = None
    if isinstance(meta, Mapping):
        numeric = _finite_number(meta.get("scanDurationMs"))
        if numeric is not None:
            duration = math.floor(numeric)

    return DoctorReportSummary(
        total=len(issues),
        by_severity=by_severity,
        by_category=by_category,
        scan_duration_ms=duration,
    )


def get_top_issues(issues: Sequence[DoctorIssue], max_count: int) -> list[DoctorIssue]:
    """Return the first *max_count* issues (never negative)."""
    count = max(0, math.floor(max_count))
    return list(issues[:count])


__all__ = [
    "dedupe_and_sort_issues",
    "get_top_issues",
    "normalize_category",
    "normalize_issue",
    "normalize_issues",
    "normalize_location",
    "normalize_severity",
    "summarize_issues",
]
