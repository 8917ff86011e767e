"""Pluggable services and the registry that resolves them."""
from __future__ import annotations

from .base import (
    Service,
    ServiceError,
    ServiceUnavailable,
    UnknownService,
    resolve_executable,
    run_post_action,
)
from .db import MYSQL
from .http import APACHE, NGINX, get_apache_executable, get_nginx_executable
from .registry import ServiceRegistry, default_registry

__all__ = [
    "APACHE",
    "MYSQL",
    "NGINX",
    "Service",
    "ServiceError",
    "ServiceRegistry",
    "ServiceUnavailable",
    "UnknownService",
    "default_registry",
    "get_apache_executable",
    "get_nginx_executable",
    "resolve_executable",
    "run_post_action",
]
