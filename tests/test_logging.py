"""Tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from godot_mcp_doctor.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger._operations_log_path  # type: ignore[attr-defined]
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_operation_writes_one_record(tmp_path: Path) -> None:
    """A finished operation appends one JSON line with steps and result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "doctor",
        args={"project": tmp_path / "proj", "json": True},
        target={"kind": "project", "scope": "proj"},
    ) as op:
        op.add_step("check.mcpServer", detail="MCP server OK (3 tools).")
        op.success("DOCTOR OK: environment looks good.", changed=0)

    (record,) = _records(logger)
    assert record["command"] == "doctor"
    assert record["args"] == {"project": str(tmp_path / "proj"), "json": True}
    assert record["target"] == {"kind": "project", "scope": "proj"}
    assert record["steps"] == [
        {"id": "check.mcpServer", "status": "ok", "detail": "MCP server OK (3 tools)."}
    ]
    assert record["result"] == {
        "status": "success",
        "message": "DOCTOR OK: environment looks good.",
        "changed": 0,
    }


def test_operation_defaults_to_success(tmp_path: Path) -> None:
    """Scopes closed without an explicit outcome are logged as completed."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("render-report"):
        pass

    (record,) = _records(logger)
    assert record["result"] == {"status": "success", "message": "Completed."}


def test_operation_records_unhandled_exception(tmp_path: Path) -> None:
    """Exceptions escaping the scope are logged as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="boom"):
        with logger.operation("doctor"):
            raise ValueError("boom")

    (record,) = _records(logger)
    result = record["result"]
    assert isinstance(result, dict)
    assert result["status"] == "error"
    assert result["errors"] == ["ValueError: boom"]
    assert result["rc"] == 1


def test_warning_and_error_context_are_sanitised(tmp_path: Path) -> None:
    """Non-JSON values in context are converted to strings."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("doctor") as op:
        op.warning("partial", warnings=["editorBridge"], context={"path": tmp_path, "ids": {1}})
    with logger.operation("doctor-report") as op:
        op.error("failed", rc=1, context={"items": ("a", "b")})

    warning, error = _records(logger)
    assert warning["result"] == {
        "status": "warning",
        "message": "partial",
        "warnings": ["editorBridge"],
        "context": {"path": str(tmp_path), "ids": "{1}"},
    }
    assert error["result"] == {
        "status": "error",
        "message": "failed",
        "errors": ["failed"],
        "rc": 1,
        "context": {"items": ["a", "b"]},
    }


def test_structured_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Logger gracefully disables itself when log directory cannot be created."""
    log_dir = tmp_path / "logs"

    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo", args={"foo": "bar"}) as op:
        op.success("done", changed=0)


def test_structured_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures mark the logger disabled so subsequent writes are skipped."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]

    original_open = Path.open

    def fail_once(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_once)

    with logger.operation("demo") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    with logger.operation("demo-2") as op:
        op.success("done", changed=0)
