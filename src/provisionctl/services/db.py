"""Database services."""
from __future__ import annotations

from typing import Any

from ..artifacts import ArtifactTarget, ConfigurationDescriptor
from ..contexts import ContextType
from .base import Service


def _client_data(target: ArtifactTarget) -> dict[str, Any]:
    binding = target.binding
    data: dict[str, Any] = {
        "host": str(binding.get("host", "localhost")),
        "port": int(binding.get("port", 3306)),
        "user": str(binding.get("user", "aegir_root")),
    }
    if binding.get("password"):
        data["password"] = str(binding["password"])
    return data


MYSQL_CLIENT = ConfigurationDescriptor(
    name="mysql-client",
    template_id="mysql/client.cnf.j2",
    description="MySQL client credentials file",
    path=lambda target: target.server_config_dir() / "mysql" / "client.cnf",
    build=_client_data,
    hook="provision_mysql_client_config",
    mode=0o400,
)

MYSQL = Service(
    service_type="db",
    subtype="mysql",
    label="MySQL",
    configurations={ContextType.SERVER: (MYSQL_CLIENT,)},
)

__all__ = ["MYSQL", "MYSQL_CLIENT"]
