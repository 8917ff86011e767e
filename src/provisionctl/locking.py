"""File-based locking primitives for mutating commands.

Locks are advisory ``flock`` locks on files under the runtime directory:

* ``<runtime_dir>/provisionctl.lock`` serialises mutating commands globally.
* ``<runtime_dir>/contexts/<name>.lock`` guards a single context.

Lock files persist after release so operators can inspect the metadata of the
last holder.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "provisionctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Metadata describing an acquired lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-context locks with a bounded wait."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default timeout (seconds)."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def global_path(self) -> Path:
        """Return the path of the global lock file."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    def context_path(self, name: str) -> Path:
        """Return the path of the lock file guarding context *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / "contexts" / f"{safe}.lock"

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock for the duration of the block."""
        with self._acquire(self.global_path(), timeout) as handle:
            yield handle

    @contextmanager
    def context_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for context *name* for the duration of the block."""
        with self._acquire(self.context_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_contexts(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by each context lock (sorted)."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self.global_lock(timeout=timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.context_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective_timeout = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as exc:
                    if time.monotonic() - start >= effective_timeout:
                        raise LockTimeoutError(
                            f"Timed out after {effective_timeout:.1f}s waiting for lock {path}"
                        ) from exc
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            self._write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
