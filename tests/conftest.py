"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import grp
import os
from pathlib import Path

import pytest

from provisionctl.config import AppConfig, load_config
from provisionctl.contexts import (
    ContextStore,
    PlatformContext,
    ServerContext,
    SiteContext,
)


def current_group() -> str:
    """Return a group the test process may assign to files it owns."""
    try:
        return grp.getgrgid(os.getgid()).gr_name
    except KeyError:
        return str(os.getgid())


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    """Configuration rooted entirely under ``tmp_path``."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={},
        overrides={
            "config_root": str(tmp_path / "config"),
            "platforms_root": str(tmp_path / "platforms"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "templates_dir": str(tmp_path / "templates"),
            "web_group": current_group(),
        },
    )


@pytest.fixture()
def store(app_config: AppConfig) -> ContextStore:
    """An empty context store."""
    return ContextStore(app_config.contexts_dir)


@pytest.fixture()
def hosting_tree(store: ContextStore) -> dict[str, object]:
    """Save one server hosting one platform with two sites."""
    server = ServerContext(
        name="web1",
        uri="web1.example.com",
        services={"http": {"type": "apache", "port": 8080}, "db": {"type": "mysql"}},
    )
    platform = PlatformContext(name="d10", parent="web1")
    first = SiteContext(
        name="alpha",
        uri="alpha.example.com",
        parent="d10",
        configuration={"aliases": ["www.alpha.example.com"]},
    )
    second = SiteContext(name="beta", uri="beta.example.com", parent="d10")
    for context in (server, platform, first, second):
        store.save(context)
    return {"server": server, "platform": platform, "alpha": first, "beta": second}
