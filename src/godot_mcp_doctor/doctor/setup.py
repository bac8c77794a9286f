"""Planning and execution helpers for project bridge setup."""
from __future__ import annotations

import logging
import re
import secrets
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from .models import ProjectLayout, ProjectSetupOutcome

LOGGER = logging.getLogger(__name__)

EDITOR_PLUGINS_SECTION = "[editor_plugins]"
_SECTION_HEADER = re.compile(r"^\s*\[[^\]]+\]\s*$")
_QUOTED = re.compile(r'"([^"]*)"')


class BridgeLockedError(RuntimeError):
    """Raised when a bridge lock appears while setup is writing files."""


@dataclass(slots=True)
class RepairAction:
    """Single setup step that the reconciler can apply."""

    step_id: str
    description: str
    detail: str
    apply: Callable[[], None]


# ---------------------------------------------------------------------------
# project.godot editing
# ---------------------------------------------------------------------------


def normalize_newlines(text: str) -> str:
    """Return *text* with CRLF line endings converted to LF."""
    return text.replace("\r\n", "\n")


def detect_newline(text: str) -> str:
    """Return the line ending to write back: CRLF if *text* uses it, else LF."""
    return "\r\n" if "\r\n" in text else "\n"


def serialize_packed_string_array(values: Iterable[str]) -> str:
    """Render *values* as a Godot ``PackedStringArray`` literal."""
    unique = [value for value in dict.fromkeys(values) if value]
    quoted = ", ".join('"' + value.replace('"', '\\"') + '"' for value in unique)
    return f"PackedStringArray({quoted})"


def _find_section(lines: list[str]) -> tuple[int, int] | None:
    start = next(
        (index for index, line in enumerate(lines) if line.strip() == EDITOR_PLUGINS_SECTION),
        None,
    )
    if start is None:
        return None
    end = next(
        (index for index in range(start + 1, len(lines)) if _SECTION_HEADER.match(lines[index])),
        len(lines),
    )
    return start, end


def _find_enabled_line(lines: list[str], start: int, end: int) -> int | None:
    return next(
        (index for index in range(start + 1, end) if lines[index].strip().startswith("enabled=")),
        None,
    )


def ensure_editor_plugin_enabled(text: str, plugin_id: str) -> str:
    """Return *text* with *plugin_id* listed under ``[editor_plugins]``.

    Line endings are normalised to LF. When the plugin is already enabled the
    normalised input is returned unchanged, so callers can compare against it
    to decide whether a write is needed.
    """
    normalized = normalize_newlines(text)
    lines = normalized.split("\n")
    enabled_line = f"enabled={serialize_packed_string_array([plugin_id])}"

    section = _find_section(lines)
    if section is None:
        out = list(lines)
        if out and out[-1].strip() != "":
            out.append("")
        out.extend([EDITOR_PLUGINS_SECTION, enabled_line, ""])
        return "\n".join(out)

    start, end = section
    index = _find_enabled_line(lines, start, end)
    if index is None:
        insert_at = end
        while insert_at - 1 > start and lines[insert_at - 1].strip() == "":
            insert_at -= 1
        out = list(lines)
        out.insert(insert_at, enabled_line)
        return "\n".join(out)

    existing = _QUOTED.findall(lines[index])
    if plugin_id in existing:
        return normalized
    out = list(lines)
    out[index] = f"enabled={serialize_packed_string_array([*existing, plugin_id])}"
    return "\n".join(out)


def is_editor_plugin_enabled(text: str, plugin_id: str) -> bool:
    """Return ``True`` when *plugin_id* is listed under ``[editor_plugins]``."""
    lines = normalize_newlines(text).split("\n")
    section = _find_section(lines)
    if section is None:
        return False
    index = _find_enabled_line(lines, *section)
    if index is None:
        return False
    return plugin_id in _QUOTED.findall(lines[index])


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------


def generate_token() -> str:
    """Return 32 hex characters from a cryptographically secure source."""
    return secrets.token_hex(16)


def read_token_file(path: Path) -> str | None:
    """Return the stripped token stored in *path*, or ``None`` if absent/empty."""
    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    return text or None


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def plan_project_setup(layout: ProjectLayout, addon_source: Path) -> list[RepairAction]:
    """Return the setup steps still needed for *layout*.

    Raises ``OSError`` when ``project.godot`` cannot be read.
    """
    actions: list[RepairAction] = []

    if not layout.addon_marker.exists():
        actions.append(
            RepairAction(
                step_id="setup.addon",
                description=f"Copy bridge addon into {layout.addon_dir}",
                detail=str(addon_source),
                apply=lambda: _copy_addon(addon_source, layout.addon_dir),
            )
        )

    with layout.descriptor.open(encoding="utf-8", newline="") as handle:
        raw = handle.read()
    newline = detect_newline(raw)
    original = normalize_newlines(raw)
    updated = ensure_editor_plugin_enabled(original, layout.plugin_id)
    if updated != original:
        actions.append(
            RepairAction(
                step_id="setup.plugin",
                description=f"Enable editor plugin {layout.plugin_id} in {layout.descriptor.name}",
                detail=str(layout.descriptor),
                apply=lambda: layout.descriptor.write_text(
                    updated, encoding="utf-8", newline=newline
                ),
            )
        )

    if read_token_file(layout.token_file) is None:
        actions.append(
            RepairAction(
                step_id="setup.token",
                description=f"Create {layout.token_file.name} with a random token",
                detail=str(layout.token_file),
                apply=lambda: layout.token_file.write_text(f"{generate_token()}\n", encoding="utf-8"),
            )
        )

    return actions


def _copy_addon(source: Path, destination: Path) -> None:
    if not source.is_dir():
        raise FileNotFoundError(f"Bridge addon source not found: {source}")
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copytree(source, destination, dirs_exist_ok=True)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def reconcile_project(
    layout: ProjectLayout,
    *,
    addon_source: Path,
    read_only: bool = False,
) -> ProjectSetupOutcome:
    """Bring *layout* to the configured state, or report what would change.

    A present bridge lock means an editor is attached; files are then only
    inspected. The lock is re-checked before every write so that an editor
    starting mid-run aborts the remaining steps.
    """
    if not layout.descriptor.is_file():
        return ProjectSetupOutcome(
            ok=False,
            skipped=True,
            summary=f"Project setup skipped: missing {layout.descriptor}",
            error=f"Missing project.godot at: {layout.descriptor}",
        )

    lock_present = layout.lock_file.exists()
    try:
        actions = plan_project_setup(layout, addon_source)
    except OSError as exc:
        return ProjectSetupOutcome(
            ok=False,
            skipped=False,
            summary="Project setup failed while inspecting files.",
            lock_file_exists=lock_present,
            error=f"Failed to read {layout.descriptor}: {exc}",
        )
    planned = tuple(action.description for action in actions)

    if not actions:
        return ProjectSetupOutcome(
            ok=True,
            skipped=False,
            summary="Project setup OK (addon, plugin, token already in place).",
            lock_file_exists=lock_present,
        )

    if lock_present:
        return ProjectSetupOutcome(
            ok=False,
            skipped=True,
            summary="Project setup incomplete; bridge lock present so no changes were made.",
            lock_file_exists=True,
            error=f"Cannot modify project while Godot editor bridge is active ({layout.lock_file})",
            planned_changes=planned,
        )

    if read_only:
        return ProjectSetupOutcome(
            ok=True,
            skipped=True,
            summary=f"Read-only mode: {len(actions)} setup change(s) pending.",
            planned_changes=planned,
        )

    done: set[str] = set()
    errors: list[str] = []
    for action in actions:
        try:
            if layout.lock_file.exists():
                raise BridgeLockedError("Cannot modify project while Godot editor bridge is active")
            LOGGER.info("Applying %s: %s", action.step_id, action.description)
            action.apply()
        except BridgeLockedError as exc:
            LOGGER.warning("Setup aborted before %s: %s", action.step_id, exc)
            errors.append(str(exc))
            break
        except OSError as exc:
            LOGGER.warning("Setup step %s failed: %s", action.step_id, exc)
            errors.append(str(exc))
            continue
        done.add(action.step_id)

    outcome_flags = {
        "addon_copied": "setup.addon" in done,
        "plugin_enabled_updated": "setup.plugin" in done,
        "token_created": "setup.token" in done,
    }
    if errors:
        return ProjectSetupOutcome(
            ok=False,
            skipped=False,
            summary=f"Project setup failed ({len(done)} of {len(actions)} change(s) applied).",
            lock_file_exists=layout.lock_file.exists(),
            error="; ".join(errors),
            planned_changes=tuple(a.description for a in actions if a.step_id not in done),
            **outcome_flags,
        )
    return ProjectSetupOutcome(
        ok=True,
        skipped=False,
        summary=f"Project setup applied {len(done)} change(s).",
        **outcome_flags,
    )


__all__ = [
    "BridgeLockedError",
    "EDITOR_PLUGINS_SECTION",
    "RepairAction",
    "detect_newline",
    "ensure_editor_plugin_enabled",
    "generate_token",
    "is_editor_plugin_enabled",
    "normalize_newlines",
    "plan_project_setup",
    "read_token_file",
    "reconcile_project",
    "serialize_packed_string_array",
]
