"""Data models for project diagnostics reports."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Literal

IssueSeverity = Literal["error", "warning", "info"]
IssueCategory = Literal[
    "environment",
    "project",
    "assets",
    "scripts",
    "scenes",
    "uid",
    "export",
    "other",
]

# Keep these in sync with the Literal types above; order is significant.
SEVERITY_VALUES: tuple[IssueSeverity, ...] = ("error", "warning", "info")
CATEGORY_VALUES: tuple[IssueCategory, ...] = (
    "environment",
    "project",
    "assets",
    "scripts",
    "scenes",
    "uid",
    "export",
    "other",
)

SEVERITY_RANK: Mapping[str, int] = {"error": 0, "warning": 1, "info": 2}
CATEGORY_RANK: Mapping[str, int] = {
    "environment": 0,
    "project": 1,
    "assets": 2,
    "scripts": 3,
    "scenes": 4,
    "uid": 5,
    "export": 6,
    "other": 99,
}


@dataclass(slots=True, frozen=True)
class IssueLocation:
    """Where an issue was found. At least one field is always set."""

    file: str | None = None
    line: int | None = None
    node_path: str | None = None
    uid: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the camelCase JSON shape, omitting absent fields."""
        payload: dict[str, object] = {}
        if self.file is not None:
            payload["file"] = self.file
        if self.line is not None:
            payload["line"] = self.line
        if self.node_path is not None:
            payload["nodePath"] = self.node_path
        if self.uid is not None:
            payload["uid"] = self.uid
        return payload


@dataclass(slots=True, frozen=True)
class DoctorIssue:
    """A single canonical diagnostic issue."""

    issue_id: str
    severity: IssueSeverity
    category: IssueCategory
    title: str
    message: str
    location: IssueLocation | None = None
    evidence: str | None = None
    suggested_fix: str | None = None
    related_actions: tuple[str, ...] | None = None

    @property
    def dedupe_key(self) -> tuple[object, ...]:
        """Composite identity; two issues with the same key are duplicates."""
        location = self.location or IssueLocation()
        return (
            self.issue_id,
            self.severity,
            self.category,
            location.file,
            location.line,
            location.node_path,
            location.uid,
            self.title,
            self.message,
        )

    @property
    def sort_key(self) -> tuple[object, ...]:
        """Total ordering used for rendered reports."""
        location = self.location or IssueLocation()
        return (
            SEVERITY_RANK.get(self.severity, 99),
            CATEGORY_RANK.get(self.category, 999),
            location.file or "",
            location.line or 0,
            self.issue_id,
            self.title,
            self.message,
        )

    def to_dict(self) -> dict[str, object]:
        """Return the JSON shape emitted in reports."""
        payload: dict[str, object] = {
            "issueId": self.issue_id,
            "severity": self.severity,
            "category": self.category,
            "title": self.title,
            "message": self.message,
        }
        if self.location is not None:
            payload["location"] = self.location.to_dict()
        if self.evidence is not None:
            payload["evidence"] = self.evidence
        if self.suggested_fix is not None:
            payload["suggestedFix"] = self.suggested_fix
        if self.related_actions is not None:
            payload["relatedActions"] = list(self.related_actions)
        return payload


@dataclass(slots=True, frozen=True)
class DoctorScanOptions:
    """Scan options with every default filled in."""

    include_assets: bool = True
    include_scripts: bool = True
    include_scenes: bool = True
    include_uid: bool = True
    include_export: bool = False
    max_issues_per_category: int = 200
    time_budget_ms: int = 180_000
    deep_scene_instantiate: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return the camelCase JSON shape."""
        return {
            "includeAssets": self.include_assets,
            "includeScripts": self.include_scripts,
            "includeScenes": self.include_scenes,
            "includeUID": self.include_uid,
            "includeExport": self.include_export,
            "maxIssuesPerCategory": self.max_issues_per_category,
            "timeBudgetMs": self.time_budget_ms,
            "deepSceneInstantiate": self.deep_scene_instantiate,
        }


@dataclass(slots=True, frozen=True)
class DoctorReportSummary:
    """Issue counts for a report."""

    total: int
    by_severity: Mapping[str, int]
    by_category: Mapping[str, int]
    scan_duration_ms: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the camelCase JSON shape."""
        return {
            "issueCountTotal": self.total,
            "issueCountBySeverity": dict(self.by_severity),
            "issueCountByCategory": dict(self.by_category),
            "scanDurationMs": self.scan_duration_ms,
        }


@dataclass(slots=True, frozen=True)
class DoctorReport:
    """A complete, immutable diagnostics report."""

    generated_at: str
    project_path: str
    godot_version: str | None
    options: DoctorScanOptions
    issues: tuple[DoctorIssue, ...]
    summary: DoctorReportSummary
    meta: Mapping[str, Any] | None = field(default=None, compare=False)

    def to_dict(self) -> dict[str, object]:
        """Return the camelCase JSON shape."""
        return {
            "generatedAt": self.generated_at,
            "projectPath": self.project_path,
            "godotVersion": self.godot_version,
            "options": self.options.to_dict(),
            "issues": [issue.to_dict() for issue in self.issues],
            "summary": self.summary.to_dict(),
        }


__all__ = [
    "CATEGORY_RANK",
    "CATEGORY_VALUES",
    "DoctorIssue",
    "DoctorReport",
    "DoctorReportSummary",
    "DoctorScanOptions",
    "IssueCategory",
    "IssueLocation",
    "IssueSeverity",
    "SEVERITY_RANK",
    "SEVERITY_VALUES",
]
