"""Tests for the service registry, executable probing and post-actions."""
from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Any

import pytest

from provisionctl.contexts import ContextType
from provisionctl.services import (
    APACHE,
    MYSQL,
    NGINX,
    Service,
    ServiceError,
    ServiceRegistry,
    ServiceUnavailable,
    UnknownService,
    default_registry,
    get_apache_executable,
    resolve_executable,
    run_post_action,
)
from provisionctl.services.http import APACHE_DEFAULT_EXECUTABLE


def test_default_registry_contents() -> None:
    """Built-in services are registered in a stable order."""
    registry = default_registry()

    assert [service.key for service in registry.services()] == [
        "http/apache",
        "http/nginx",
        "db/mysql",
    ]
    assert registry.service_types() == ["http", "db"]


def test_configurations_follow_declaration_order() -> None:
    """Site descriptors keep the order the service declares them in."""
    registry = default_registry()

    site = registry.configurations_for("http", "apache", ContextType.SITE)
    platform = registry.configurations_for("http", "apache", ContextType.PLATFORM)
    server = registry.configurations_for("db", "mysql", ContextType.SERVER)

    assert [item.name for item in site] == ["apache-vhost", "drupal-services"]
    assert [item.name for item in platform] == ["apache-platform"]
    assert [item.name for item in server] == ["mysql-client"]
    assert registry.configurations_for("http", "nginx", ContextType.PLATFORM) == ()
    assert registry.configurations_for("db", "mysql", ContextType.SITE) == ()


def test_unknown_service_raises() -> None:
    """Unregistered type/subtype pairs are reported with the known keys."""
    registry = default_registry()

    with pytest.raises(UnknownService, match="http/lighttpd"):
        registry.get("http", "lighttpd")


def test_duplicate_registration_raises() -> None:
    """A type/subtype pair is registered once."""
    registry = ServiceRegistry([APACHE])

    with pytest.raises(ServiceError, match="already registered"):
        registry.register(APACHE)


def test_restart_command_override() -> None:
    """A ``restart_cmd`` binding replaces the detected command."""
    binding = {"type": "apache", "restart_cmd": "systemctl reload apache2"}

    assert APACHE.post_action_command(binding) == ["systemctl", "reload", "apache2"]
    assert MYSQL.post_action_command({"type": "mysql"}) is None
    assert NGINX.post_action_command({"type": "nginx"})[-2:] == ["-s", "reload"]


def test_resolve_executable_prefers_path(tmp_path: Path) -> None:
    """Candidates derived from PATH are probed before fixed locations."""
    custom = tmp_path / "custom" / "bin"
    custom.mkdir(parents=True)
    binary = custom / "apache2ctl"
    binary.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    binary.chmod(0o755)

    found = get_apache_executable(env_path=f"{tmp_path / 'empty'}:{custom}")

    assert found == str(binary)


def test_resolve_executable_falls_back_to_default() -> None:
    """With no executable candidate the default location is returned."""
    found = get_apache_executable(env_path="", is_executable=lambda path: False)

    assert found == APACHE_DEFAULT_EXECUTABLE


def test_resolve_executable_probe_order() -> None:
    """Every PATH entry is tried with every name before fixed candidates."""
    probed: list[str] = []

    def record(path: str) -> bool:
        probed.append(path)
        return path == "/opt/fixed"

    found = resolve_executable(("a", "b"), ("/opt/fixed",), "/one:/two", is_executable=record)

    assert found == "/opt/fixed"
    assert probed == ["/one/a", "/one/b", "/two/a", "/two/b", "/opt/fixed"]


def test_resolve_executable_without_default_raises() -> None:
    """No match and no default is an error."""
    with pytest.raises(ServiceUnavailable):
        resolve_executable(("nothing",), (), "", is_executable=lambda path: False)


def _completed(returncode: int, stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout="", stderr=stderr)


def test_run_post_action_success() -> None:
    """Commands run with a timeout and captured output."""
    calls: list[dict[str, Any]] = []

    def runner(command: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        calls.append({"command": command, **kwargs})
        return _completed(0)

    run_post_action(["sudo", "/usr/sbin/apachectl", "graceful"], timeout=5, runner=runner)

    assert calls[0]["command"] == ["sudo", "/usr/sbin/apachectl", "graceful"]
    assert calls[0]["timeout"] == 5
    assert calls[0]["capture_output"] is True


def test_run_post_action_failures() -> None:
    """Non-zero exits, timeouts and missing binaries raise ``ServiceError``."""

    def failing(command: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        return _completed(1, stderr="syntax error")

    def slow(command: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise subprocess.TimeoutExpired(command, kwargs["timeout"])

    def missing(command: list[str], **kwargs: Any) -> subprocess.CompletedProcess[str]:
        raise FileNotFoundError(command[0])

    with pytest.raises(ServiceError, match="syntax error"):
        run_post_action(["apachectl", "graceful"], timeout=1, runner=failing)
    with pytest.raises(ServiceError, match="timed out"):
        run_post_action(["apachectl", "graceful"], timeout=1, runner=slow)
    with pytest.raises(ServiceError, match="not found"):
        run_post_action(["apachectl", "graceful"], timeout=1, runner=missing)


def test_custom_service_registration() -> None:
    """Additional services can be registered alongside the built-ins."""
    registry = default_registry()
    registry.register(Service(service_type="cache", subtype="redis", label="Redis"))

    assert registry.get("cache", "redis").label == "Redis"
    assert registry.configurations_for("cache", "redis", ContextType.SITE) == ()
