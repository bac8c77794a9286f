"""Data models for doctor checks."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

BRIDGE_NAME = "godot_mcp"
PROJECT_DESCRIPTOR = "project.godot"
ADDON_MARKER = "plugin.cfg"

GodotOrigin = Literal["cli", "env", "auto", "none"]
CheckName = Literal["projectSetup", "mcpServer", "mcpFunctional", "editorBridge"]

# Order in which checks are reported. Keep in sync with ``CheckName``.
CHECK_NAMES: tuple[CheckName, ...] = (
    "projectSetup",
    "mcpServer",
    "mcpFunctional",
    "editorBridge",
)


@dataclass(slots=True, frozen=True)
class ProjectLayout:
    """Bridge-related paths inside a Godot project."""

    root: Path
    plugin_id: str = f"{BRIDGE_NAME}_bridge"

    @property
    def descriptor(self) -> Path:
        return self.root / PROJECT_DESCRIPTOR

    @property
    def addon_dir(self) -> Path:
        return self.root / "addons" / self.plugin_id

    @property
    def addon_marker(self) -> Path:
        return self.addon_dir / ADDON_MARKER

    @property
    def token_file(self) -> Path:
        return self.root / f".{BRIDGE_NAME}_token"

    @property
    def port_file(self) -> Path:
        return self.root / f".{BRIDGE_NAME}_port"

    @property
    def host_file(self) -> Path:
        return self.root / f".{BRIDGE_NAME}_host"

    @property
    def state_dir(self) -> Path:
        return self.root / f".{BRIDGE_NAME}"

    @property
    def lock_file(self) -> Path:
        return self.state_dir / "bridge.lock"


@dataclass(slots=True, frozen=True)
class DoctorOptions:
    """Inputs accepted by :func:`run_doctor`."""

    godot_path: str | None = None
    project_path: str | None = None
    strict_path_validation: bool = False
    read_only: bool = False


@dataclass(slots=True, frozen=True)
class DoctorCheckResult:
    """Uniform outcome for every doctor stage."""

    ok: bool
    summary: str
    skipped: bool = False
    details: Mapping[str, Any] | None = None
    error: str | None = None
    suggestions: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def skip(
        cls,
        reason: str,
        *,
        ok: bool = False,
        details: Mapping[str, Any] | None = None,
        suggestions: Sequence[str] = (),
    ) -> DoctorCheckResult:
        """Return a skipped result carrying *reason* as its summary."""
        return cls(
            ok=ok,
            summary=reason,
            skipped=True,
            details=details,
            suggestions=tuple(suggestions),
        )

    def to_dict(self) -> dict[str, object]:
        """Return the JSON shape used under ``details.checks``."""
        payload: dict[str, object] = {"ok": self.ok, "summary": self.summary}
        if self.skipped:
            payload["skipped"] = True
        if self.details:
            payload["details"] = dict(self.details)
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True, frozen=True)
class ProjectSetupOutcome:
    """Result of reconciling a project's bridge files."""

    ok: bool
    skipped: bool
    summary: str
    addon_copied: bool = False
    plugin_enabled_updated: bool = False
    token_created: bool = False
    lock_file_exists: bool = False
    error: str | None = None
    planned_changes: Sequence[str] = field(default_factory=tuple)

    @property
    def changed(self) -> bool:
        """Return ``True`` when anything was written."""
        return self.addon_copied or self.plugin_enabled_updated or self.token_created

    def to_dict(self) -> dict[str, object]:
        """Return the camelCase JSON shape."""
        payload: dict[str, object] = {
            "addonCopied": self.addon_copied,
            "pluginEnabledUpdated": self.plugin_enabled_updated,
            "tokenCreated": self.token_created,
            "lockFileExists": self.lock_file_exists,
        }
        if self.planned_changes:
            payload["plannedChanges"] = list(self.planned_changes)
        return payload


@dataclass(slots=True, frozen=True)
class GodotDetails:
    """How (and whether) a Godot executable was resolved."""

    ok: bool
    path: str | None
    origin: GodotOrigin
    strict_path_validation: bool
    error: str | None = None
    attempted_candidates: Sequence[Mapping[str, object]] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        """Return the camelCase JSON shape."""
        payload: dict[str, object] = {
            "ok": self.ok,
            "path": self.path,
            "origin": self.origin,
            "strictPathValidation": self.strict_path_validation,
        }
        if self.error:
            payload["error"] = self.error
        if self.attempted_candidates:
            payload["attemptedCandidates"] = [dict(item) for item in self.attempted_candidates]
        return payload


@dataclass(slots=True, frozen=True)
class ProjectDetails:
    """Presence of the bridge files in the target project."""

    ok: bool
    path: str
    project_godot_path: str
    has_project_godot: bool = False
    has_bridge_addon: bool = False
    has_bridge_plugin_enabled: bool = False
    has_token_file: bool = False
    has_port_file: bool = False
    has_host_file: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return the camelCase JSON shape."""
        payload: dict[str, object] = {
            "ok": self.ok,
            "path": self.path,
            "projectGodotPath": self.project_godot_path,
            "hasProjectGodot": self.has_project_godot,
            "hasBridgeAddon": self.has_bridge_addon,
            "hasBridgePluginEnabled": self.has_bridge_plugin_enabled,
            "hasTokenFile": self.has_token_file,
            "hasPortFile": self.has_port_file,
            "hasHostFile": self.has_host_file,
        }
        if self.error:
            payload["error"] = self.error
        return payload


@dataclass(slots=True, frozen=True)
class DoctorResult:
    """Aggregate doctor outcome."""

    ok: bool
    summary: str
    godot: GodotDetails
    project: ProjectDetails | None = None
    checks: Mapping[str, DoctorCheckResult] = field(default_factory=dict)
    suggestions: Sequence[str] = field(default_factory=tuple)

    def to_dict(self) -> dict[str, object]:
        """Return the JSON contract consumed by scripts and CI."""
        details: dict[str, object] = {"godot": self.godot.to_dict()}
        if self.project is not None:
            details["project"] = self.project.to_dict()
        if self.checks:
            details["checks"] = {name: check.to_dict() for name, check in self.checks.items()}
        return {
            "ok": self.ok,
            "summary": self.summary,
            "details": details,
            "suggestions": list(self.suggestions),
        }


__all__ = [
    "ADDON_MARKER",
    "BRIDGE_NAME",
    "CHECK_NAMES",
    "CheckName",
    "DoctorCheckResult",
    "DoctorOptions",
    "DoctorResult",
    "GodotDetails",
    "GodotOrigin",
    "PROJECT_DESCRIPTOR",
    "ProjectDetails",
    "ProjectLayout",
    "ProjectSetupOutcome",
]
