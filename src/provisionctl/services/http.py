"""Web server services: Apache and Nginx.

Server-level configuration lives under ``<config_root>/<server>/``; platform
and vhost fragments are included from ``<server>/<subtype>/platform.d`` and
``<server>/<subtype>/vhost.d``. After a target's artifacts are written the web
server is asked to pick them up (``apachectl graceful`` / ``nginx -s
reload``).
"""
from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from ..artifacts import ArtifactTarget, ConfigurationDescriptor, RenderError
from ..contexts import ContextType
from .base import Service, resolve_executable
from .drupal import DRUPAL_SERVICES

APACHE_DEFAULT_EXECUTABLE = "/usr/sbin/apachectl"
APACHE_EXECUTABLE_NAMES = ("apache2ctl", "apachectl")
APACHE_FIXED_CANDIDATES = (
    "/usr/local/sbin/apachectl",  # freebsd
    "/usr/sbin/apache2ctl",  # debian + apache2
    "/usr/apache2/2.2/bin/apachectl",  # solaris
    APACHE_DEFAULT_EXECUTABLE,
)

NGINX_DEFAULT_EXECUTABLE = "/usr/sbin/nginx"
NGINX_FIXED_CANDIDATES = (
    "/usr/local/sbin/nginx",
    "/usr/local/nginx/sbin/nginx",
    NGINX_DEFAULT_EXECUTABLE,
)


def get_apache_executable(
    env_path: str | None = None,
    is_executable: Callable[[str], bool] | None = None,
) -> str:
    """Return the apachectl binary to use, falling back to ``/usr/sbin/apachectl``."""
    kwargs = {"is_executable": is_executable} if is_executable is not None else {}
    return resolve_executable(
        APACHE_EXECUTABLE_NAMES,
        APACHE_FIXED_CANDIDATES,
        os.environ.get("PATH", "") if env_path is None else env_path,
        default=APACHE_DEFAULT_EXECUTABLE,
        **kwargs,
    )


def get_nginx_executable(
    env_path: str | None = None,
    is_executable: Callable[[str], bool] | None = None,
) -> str:
    """Return the nginx binary to use, falling back to ``/usr/sbin/nginx``."""
    kwargs = {"is_executable": is_executable} if is_executable is not None else {}
    return resolve_executable(
        ("nginx",),
        NGINX_FIXED_CANDIDATES,
        os.environ.get("PATH", "") if env_path is None else env_path,
        default=NGINX_DEFAULT_EXECUTABLE,
        **kwargs,
    )


def apache_restart_command(binding: Mapping[str, Any]) -> list[str]:
    """Graceful restart through sudo, as the provisioning user lacks root."""
    return ["sudo", get_apache_executable(), "graceful"]


def nginx_restart_command(binding: Mapping[str, Any]) -> list[str]:
    """Reload nginx through sudo."""
    return ["sudo", get_nginx_executable(), "-s", "reload"]


def _fragment_dir(target: ArtifactTarget, subtype: str, kind: str) -> Path:
    return target.server_config_dir() / subtype / kind


def _server_data(subtype: str) -> Callable[[ArtifactTarget], dict[str, Any]]:
    def build(target: ArtifactTarget) -> dict[str, Any]:
        includes = [str(_fragment_dir(target, subtype, "vhost.d"))]
        if subtype == "apache":
            includes.insert(0, str(_fragment_dir(target, subtype, "platform.d")))
        return {
            "server": target.server.name,
            "port": target.server.http_port,
            "web_group": target.web_group,
            "includes": includes,
        }

    return build


def _platform_data(target: ArtifactTarget) -> dict[str, Any]:
    return {
        "platform": target.context.name,
        "server": target.server.name,
        "root": str(target.platform_root()),
    }


def _vhost_data(target: ArtifactTarget) -> dict[str, Any]:
    site = target.site
    if site is None:
        raise RenderError(f"{target.context.identifier} is not a site.")
    return {
        "uri": site.uri,
        "aliases": site.aliases,
        "port": target.server.http_port,
        "root": str(target.platform_root()),
        "site_dir": str(target.site_dir()),
        "redirection": site.configuration.get("redirection"),
    }


def _server_descriptor(subtype: str) -> ConfigurationDescriptor:
    return ConfigurationDescriptor(
        name=f"{subtype}-server",
        template_id=f"{subtype}/server.conf.j2",
        description=f"{subtype.title()} server configuration file",
        path=lambda target: target.server_config_dir() / f"{subtype}.conf",
        build=_server_data(subtype),
        hook=f"provision_{subtype}_server_config",
    )


def _vhost_descriptor(subtype: str) -> ConfigurationDescriptor:
    return ConfigurationDescriptor(
        name=f"{subtype}-vhost",
        template_id=f"{subtype}/vhost.conf.j2",
        description=f"{subtype.title()} virtual host configuration file",
        path=lambda target: _fragment_dir(target, subtype, "vhost.d") / target.context.uri,
        build=_vhost_data,
        hook=f"provision_{subtype}_vhost_config",
    )


APACHE_PLATFORM = ConfigurationDescriptor(
    name="apache-platform",
    template_id="apache/platform.conf.j2",
    description="Apache platform configuration file",
    path=lambda target: _fragment_dir(target, "apache", "platform.d")
    / f"{target.context.name}.conf",
    build=_platform_data,
    hook="provision_apache_dir_config",
)

APACHE = Service(
    service_type="http",
    subtype="apache",
    label="Apache",
    configurations={
        ContextType.SERVER: (_server_descriptor("apache"),),
        ContextType.PLATFORM: (APACHE_PLATFORM,),
        ContextType.SITE: (_vhost_descriptor("apache"), DRUPAL_SERVICES),
    },
    post_action=apache_restart_command,
)

NGINX = Service(
    service_type="http",
    subtype="nginx",
    label="Nginx",
    configurations={
        ContextType.SERVER: (_server_descriptor("nginx"),),
        ContextType.SITE: (_vhost_descriptor("nginx"), DRUPAL_SERVICES),
    },
    post_action=nginx_restart_command,
)

__all__ = [
    "APACHE",
    "APACHE_DEFAULT_EXECUTABLE",
    "NGINX",
    "NGINX_DEFAULT_EXECUTABLE",
    "apache_restart_command",
    "get_apache_executable",
    "get_nginx_executable",
    "nginx_restart_command",
]
