"""Drupal site configuration shared by the http services."""
from __future__ import annotations

from pathlib import Path
from typing import Any

from ..artifacts import ArtifactTarget, ConfigurationDescriptor

SERVICES_HOOK = "provision_drupal_services"


def _services_path(target: ArtifactTarget) -> Path:
    return target.site_dir() / "services.yml"


def _services_data(target: ArtifactTarget) -> dict[str, Any]:
    return {
        "parameters": {
            "renderer.config": {
                "required_cache_contexts": [
                    "languages:language_interface",
                    "theme",
                    "user.permissions",
                    "url.path",
                ],
                "auto_placeholder_conditions": {
                    "max-age": 0,
                    "contexts": ["session", "user"],
                    "tags": [],
                },
            },
        },
    }


DRUPAL_SERVICES = ConfigurationDescriptor(
    name="drupal-services",
    template_id="drupal/services.yml.j2",
    description="Drupal services.yml file",
    path=_services_path,
    build=_services_data,
    hook=SERVICES_HOOK,
    mode=0o440,
)

__all__ = ["DRUPAL_SERVICES", "SERVICES_HOOK"]
