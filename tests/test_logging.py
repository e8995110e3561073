"""Tests for the structured logging subsystem."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from deployctl.logging import StructuredLogger


def _records(logs_dir: Path) -> list[dict[str, object]]:
    lines = (logs_dir / "operations.jsonl").read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_operation_writes_json_and_human_records(tmp_path: Path) -> None:
    """Each operation appends one JSON line and one human line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("update", args={"url": None, "path": tmp_path}, target={"kind": "deployment"}) as op:
        op.add_step("pipeline.BackingUp")
        op.add_step("pipeline.Merging", status="warning", detail={"files": 3})
        op.set_lock_wait_ms(12)
        op.success("Updated to version 2.0.0.", changed=1, backups=["backup-1"])

    [record] = _records(tmp_path / "logs")
    assert record["command"] == "update"
    assert record["args"] == {"url": None, "path": str(tmp_path)}
    assert [step["name"] for step in record["steps"]] == ["pipeline.BackingUp", "pipeline.Merging"]
    assert record["steps"][1]["detail"] == {"files": 3}
    assert record["lock_wait_ms"] == 12
    assert record["result"]["status"] == "success"
    assert record["result"]["backups"] == ["backup-1"]
    human = (tmp_path / "logs" / "deployctl.log").read_text(encoding="utf-8")
    assert "SUCCESS update: Updated to version 2.0.0." in human


def test_operation_defaults_to_success(tmp_path: Path) -> None:
    """An operation that records nothing is logged as successful."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("config show"):
        pass

    assert _records(tmp_path / "logs")[0]["result"]["status"] == "success"


def test_operation_records_exceptions(tmp_path: Path) -> None:
    """Escaping exceptions are recorded as errors and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("restore"):
            raise ValueError("bad backup")

    result = _records(tmp_path / "logs")[0]["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["bad backup"]
    assert result["rc"] == 1


def test_warning_result_keeps_messages(tmp_path: Path) -> None:
    """Warnings are persisted alongside the message."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("update") as op:
        op.warning("Updated with warnings.", warnings=["migrate failed"], changed=1)

    result = _records(tmp_path / "logs")[0]["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["migrate failed"]


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
    assert logger.enabled is False

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

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("demo-2") as op:
        op.success("done", changed=0)
