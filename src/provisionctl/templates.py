"""Jinja2 template engine used to render configuration artifacts.

Built-in templates ship inside the package (``provisionctl/templates``). An
operator override directory (``templates_dir`` in the config) shadows them
file-by-file, so a single template can be customised without copying the
rest.
"""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml
from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    PackageLoader,
    StrictUndefined,
)


def _to_yaml(value: object, indent: int = 2) -> str:
    return yaml.safe_dump(value, sort_keys=False, default_flow_style=False, indent=indent)


@dataclass(slots=True)
class TemplateEngine:
    """Render packaged (or overridden) templates."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine whose loader prefers templates in *override_dir*."""
        loaders = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(PackageLoader("provisionctl", "templates"))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
            autoescape=False,
        )
        environment.filters["to_yaml"] = _to_yaml
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        template = self.environment.get_template(template_name)
        return template.render(**dict(context))


__all__ = ["TemplateEngine"]
