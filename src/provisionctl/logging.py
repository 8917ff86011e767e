"""Structured JSON-lines logging for provisionctl operations.

Every CLI command runs inside an :class:`OperationScope`. When the scope closes
a single JSON record describing the command, its arguments, the target and the
result is appended to ``operations.log``. Pipeline events that are not tied to
a command result (isolated hook failures, post-action warnings) are appended to
``events.log`` via :meth:`StructuredLogger.event`.

Logging must never break provisioning: when the log directory cannot be
created or a write fails the logger disables itself and subsequent calls become
no-ops.
"""
from __future__ import annotations

import json
import os
import threading
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

OPERATIONS_LOG = "operations.log"
EVENTS_LOG = "events.log"


def _timestamp() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collect the result of one logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        args: Mapping[str, object] | None,
        target: Mapping[str, object] | None,
    ) -> None:
        """Initialise the scope for *command*."""
        self._logger = logger
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.op_id = uuid.uuid4().hex[:12]
        self.started_at = _timestamp()
        self._start = time.perf_counter()
        self.result: dict[str, object] | None = None

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a successful outcome."""
        self._set_result(
            "success",
            message,
            changed=changed,
            warnings=warnings,
            errors=None,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record an outcome that completed with warnings."""
        self._set_result(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        rc: int = 1,
        changed: int = 0,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Record a failed outcome."""
        self._set_result(
            "error",
            message,
            changed=changed,
            warnings=None,
            errors=errors if errors else [message],
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        changed: int,
        warnings: Sequence[str] | None,
        errors: Sequence[str] | None,
        context: Mapping[str, object] | None,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
            "context": _sanitize(dict(context or {})),
            "rc": rc,
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON record describing this operation."""
        return {
            "timestamp": self.started_at,
            "op_id": self.op_id,
            "command": self.command,
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSONL logger for operations and pipeline events."""

    def __init__(self, log_dir: Path) -> None:
        """Prepare *log_dir*; disable logging when it cannot be created."""
        self.log_dir = Path(log_dir)
        self._operations_log_path = self.log_dir / OPERATIONS_LOG
        self._events_log_path = self.log_dir / EVENTS_LOG
        self._lock = threading.Lock()
        self._enabled = True
        try:
            self.log_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return ``True`` while log writes are still attempted."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and write its record on exit."""
        scope = OperationScope(self, command, args, target)
        try:
            yield scope
        except Exception as exc:
            if scope.result is None:
                scope.error(f"Unhandled error: {exc}", errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._append(self._operations_log_path, scope.to_record())

    def event(self, level: str, message: str, **context: object) -> None:
        """Append a free-standing pipeline event to ``events.log``."""
        record = {
            "timestamp": _timestamp(),
            "pid": os.getpid(),
            "level": level,
            "message": message,
            "context": _sanitize(context),
        }
        self._append(self._events_log_path, record)

    def _append(self, path: Path, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=False) + "\n"
        with self._lock:
            try:
                with path.open("a", encoding="utf-8") as handle:
                    handle.write(line)
            except OSError:
                self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
