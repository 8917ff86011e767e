"""Failure-mode tests for the structured logging subsystem."""
from __future__ import annotations

import json
import threading
from pathlib import Path

import pytest

from provisionctl.logging import StructuredLogger


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

    with logger.operation("verify", args={"targets": ["alpha"]}) as op:
        op.success("done", changed=0)
    logger.event("warning", "ignored")


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

    with logger.operation("save") as op:
        op.success("done", changed=0)

    assert logger._enabled is False  # type: ignore[attr-defined]

    # Subsequent operations should not raise even though logger is disabled.
    with logger.operation("save") as op:
        op.success("done", changed=0)


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("verify", args={"path": Path("foo")}, target={"names": ("a",)}) as op:
        op.warning(
            "warned",
            warnings=("note",),
            errors=("err",),
            changed=1,
            context={"path": Path("/var/aegir"), "obj": Custom()},
        )

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    assert record["command"] == "verify"
    assert record["args"] == {"path": "foo"}
    assert record["target"] == {"names": ["a"]}
    result = record["result"]
    assert result["status"] == "warning"
    assert result["warnings"] == ["note"]
    assert result["errors"] == ["err"]
    assert result["changed"] == 1
    assert result["context"] == {"path": "/var/aegir", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("delete") as op:
        op.error("boom", errors=None, rc=2, context={"value": {1, 2}})

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    result = record["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["rc"] == 2
    assert result["context"] == {"value": "{1, 2}"}


def test_unhandled_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError):
        with logger.operation("verify"):
            raise ValueError("unexpected")

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    assert record["result"]["status"] == "error"
    assert "unexpected" in record["result"]["message"]


def test_scope_without_result_records_success(tmp_path: Path) -> None:
    """Leaving a scope silently counts as success."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("list"):
        pass

    record = json.loads(logger._operations_log_path.read_text(encoding="utf-8"))  # type: ignore[attr-defined]
    assert record["result"]["status"] == "success"


def test_events_are_thread_safe(tmp_path: Path) -> None:
    """Concurrent events produce one intact JSON line each."""
    logger = StructuredLogger(tmp_path / "logs")

    def emit(index: int) -> None:
        for step in range(20):
            logger.event("info", "verified", target=f"site{index}", step=step)

    threads = [threading.Thread(target=emit, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    lines = (tmp_path / "logs" / "events.log").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 80
    assert all(json.loads(line)["message"] == "verified" for line in lines)
