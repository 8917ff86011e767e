"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from provisionctl.locking import LockManager, LockTimeoutError


def test_context_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "contexts" / "alpha.lock"
    with manager.context_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert lock_path.exists()
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.context_lock("alpha", timeout=0.2):
        pass


def test_context_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.context_lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.context_lock("alpha", timeout=0.1):
                pass


def test_global_lock_timeout(tmp_path: Path) -> None:
    """The global lock serialises mutating commands."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.global_lock():
        with pytest.raises(LockTimeoutError):
            with manager.mutate_contexts(["beta"], timeout=0.1):
                pass


def test_mutate_contexts_acquires_global_then_contexts(tmp_path: Path) -> None:
    """Lock bundles acquire global first followed by per-context locks."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.mutate_contexts(["beta", "alpha", "beta"]) as bundle:
        assert bundle.wait_ms >= 0
        assert [handle.path.name for handle in bundle.handles] == [
            "provisionctl.lock",
            "alpha.lock",
            "beta.lock",
        ]
        assert (tmp_path / "run" / "provisionctl.lock").exists()
        assert (tmp_path / "run" / "contexts" / "alpha.lock").exists()
        assert (tmp_path / "run" / "contexts" / "beta.lock").exists()
