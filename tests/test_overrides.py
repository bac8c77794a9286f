"""Tests for scoped file overrides."""
from __future__ import annotations

from pathlib import Path

import pytest

from godot_mcp_doctor.doctor.overrides import FileOverride, override_files


def test_override_restores_existing_file(tmp_path: Path) -> None:
    """Original bytes come back after the block."""
    target = tmp_path / ".godot_mcp_port"
    target.write_bytes(b"8765\r\n")

    with FileOverride(target, "9001") as override:
        assert target.read_text(encoding="utf-8") == "9001"
        assert override.existed is True

    assert target.read_bytes() == b"8765\r\n"


def test_override_removes_created_file(tmp_path: Path) -> None:
    """Files that did not exist are deleted on exit."""
    target = tmp_path / "nested" / ".godot_mcp_host"

    with FileOverride(target, "127.0.0.1"):
        assert target.exists()

    assert not target.exists()


def test_override_restores_on_exception(tmp_path: Path) -> None:
    """Exceptions inside the block still restore state."""
    existing = tmp_path / "port"
    existing.write_text("1", encoding="utf-8")
    fresh = tmp_path / "host"

    with pytest.raises(RuntimeError):
        with override_files({existing: "2", fresh: "localhost"}):
            raise RuntimeError("boom")

    assert existing.read_text(encoding="utf-8") == "1"
    assert not fresh.exists()


def test_restore_is_idempotent(tmp_path: Path) -> None:
    """Calling restore twice is harmless."""
    target = tmp_path / "file"
    override = FileOverride(target, "x")
    override.restore()

    with override:
        pass
    override.restore()

    assert not target.exists()
    assert override.restore_error is None


def test_restore_error_is_recorded(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing restore is captured rather than raised."""
    target = tmp_path / "file"
    target.write_text("orig", encoding="utf-8")

    with FileOverride(target, "new") as override:
        def fail(self: Path, data: bytes) -> int:
            raise PermissionError("read-only")

        monkeypatch.setattr(Path, "write_bytes", fail)

    assert isinstance(override.restore_error, PermissionError)
