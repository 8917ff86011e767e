"""Configuration artifacts: descriptor, generation pipeline and writer.

A :class:`ConfigurationDescriptor` is the static declaration a service makes
("the apache vhost for a site lives at ... and is rendered from ..."). A
:class:`ConfigurationArtifact` binds a descriptor to one resolved target and
runs the pipeline:

1. build the default data tree,
2. collect hook contributions and reduce them into the data,
3. render the template (or produce empty content when the data is empty),
4. resolve path, mode and group from the hosting chain.

:class:`ArtifactWriter` then writes the content atomically.
"""
from __future__ import annotations

import grp
import os
import tempfile
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from jinja2 import TemplateError

from .contexts import Context, HostingChain, PlatformContext, ServerContext, SiteContext

if TYPE_CHECKING:
    from .hooks import ExtensionHookBus
    from .templates import TemplateEngine

DEFAULT_MODE = 0o440


class ArtifactError(RuntimeError):
    """Base class for artifact generation and write failures."""


class RenderError(ArtifactError):
    """Raised when an artifact's data cannot be built or rendered."""


class WriteError(ArtifactError):
    """Raised when an artifact cannot be written to its target path."""


@dataclass(frozen=True, slots=True)
class ArtifactTarget:
    """Everything a descriptor may derive paths and data from."""

    chain: HostingChain
    binding: Mapping[str, Any]
    config_root: Path
    platforms_root: Path
    default_web_group: str

    @property
    def context(self) -> Context:
        """Return the context being verified."""
        return self.chain.context

    @property
    def server(self) -> ServerContext:
        """Return the hosting server."""
        return self.chain.server

    @property
    def platform(self) -> PlatformContext | None:
        """Return the hosting platform (the context itself for platforms)."""
        if isinstance(self.chain.context, PlatformContext):
            return self.chain.context
        return self.chain.platform

    @property
    def site(self) -> SiteContext | None:
        """Return the site when the target is a site."""
        return self.chain.site

    @property
    def web_group(self) -> str:
        """Group owning generated files: the server's web group or the default."""
        return self.server.web_group or self.default_web_group

    def server_config_dir(self) -> Path:
        """Directory holding generated configuration for the hosting server."""
        return self.config_root / self.server.name

    def platform_root(self) -> Path:
        """Document root of the hosting platform."""
        if self.platform is None:
            raise RenderError(f"{self.context.identifier} is not hosted on a platform.")
        return self.platform.root(self.platforms_root)

    def site_dir(self) -> Path:
        """Drupal-style ``sites/<uri>`` directory for a site target."""
        if self.site is None:
            raise RenderError(f"{self.context.identifier} is not a site.")
        return self.platform_root() / "sites" / self.site.uri


@dataclass(frozen=True, slots=True)
class ConfigurationDescriptor:
    """Static declaration of one generated configuration file."""

    name: str
    template_id: str
    description: str
    path: Callable[[ArtifactTarget], Path]
    build: Callable[[ArtifactTarget], dict[str, Any]]
    hook: str | None = None
    mode: int = DEFAULT_MODE


class ConfigurationArtifact:
    """One descriptor bound to one target, carried through the pipeline."""

    def __init__(
        self,
        descriptor: ConfigurationDescriptor,
        target: ArtifactTarget,
        *,
        templates: TemplateEngine,
        hooks: ExtensionHookBus,
    ) -> None:
        """Bind *descriptor* to *target*."""
        self.descriptor = descriptor
        self.target = target
        self._templates = templates
        self._hooks = hooks
        self.data: dict[str, Any] = {}
        self.content: str = ""
        self.warnings: list[str] = []

    @property
    def description(self) -> str:
        """Human readable description of the artifact."""
        return self.descriptor.description

    @property
    def path(self) -> Path:
        """Target path; a pure function of the target."""
        return self.descriptor.path(self.target)

    @property
    def mode(self) -> int:
        """Numeric permission bits for the written file."""
        return self.descriptor.mode

    @property
    def group(self) -> str:
        """Owning group, taken from the hosting server."""
        return self.target.web_group

    def process(self) -> ConfigurationArtifact:
        """Build, merge and render; raise :class:`RenderError` on failure."""
        try:
            self.data = self.descriptor.build(self.target)
        except ArtifactError:
            raise
        except Exception as exc:
            raise RenderError(
                f"Failed to build data for {self.descriptor.name}: {exc}"
            ) from exc

        if self.descriptor.hook:
            contributions = self._hooks.invoke(
                self.descriptor.hook, self.target.context.uri, self.data
            )
            self.data, warnings = self._hooks.reduce(self.data, contributions)
            self.warnings.extend(warnings)

        if not self.data:
            self.content = ""
            return self

        try:
            self.content = self._templates.render_to_string(
                self.descriptor.template_id, {"data": self.data}
            )
        except (TemplateError, yaml.YAMLError) as exc:
            raise RenderError(
                f"Failed to render {self.descriptor.template_id} for "
                f"{self.target.context.identifier}: {exc}"
            ) from exc
        return self


@dataclass(slots=True)
class WriteResult:
    """Outcome of writing one artifact."""

    path: Path
    changed: bool
    warnings: list[str] = field(default_factory=list)


class ArtifactWriter:
    """Write artifacts atomically, one writer per path at a time."""

    def __init__(self) -> None:
        """Initialise the per-path lock table."""
        self._locks: dict[Path, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, path: Path) -> threading.Lock:
        """Return the lock serialising writes to *path*."""
        key = Path(os.path.abspath(path))
        with self._guard:
            return self._locks.setdefault(key, threading.Lock())

    def write(self, artifact: ConfigurationArtifact) -> WriteResult:
        """Write *artifact*; raise :class:`WriteError` when the path is unusable."""
        path = artifact.path
        payload = artifact.content.encode("utf-8")
        with self.lock_for(path):
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                previous = path.read_bytes() if path.is_file() else None
            except OSError as exc:
                raise WriteError(f"Cannot prepare {path}: {exc}") from exc

            warnings: list[str] = []
            if previous == payload:
                try:
                    os.chmod(path, artifact.mode)
                except OSError as exc:
                    raise WriteError(f"Cannot set mode on {path}: {exc}") from exc
                self._apply_group(path, path, artifact.group, warnings)
                return WriteResult(path=path, changed=False, warnings=warnings)

            try:
                tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
            except OSError as exc:
                raise WriteError(f"Cannot write {path}: {exc}") from exc
            tmp_path = Path(tmp_name)
            try:
                with os.fdopen(tmp_fd, "wb") as handle:
                    try:
                        handle.write(payload)
                        handle.flush()
                        os.fsync(handle.fileno())
                    finally:
                        os.fchmod(handle.fileno(), artifact.mode)
                        self._apply_group(handle.fileno(), path, artifact.group, warnings)
                os.replace(tmp_path, path)
            except OSError as exc:
                raise WriteError(f"Cannot write {path}: {exc}") from exc
            finally:
                tmp_path.unlink(missing_ok=True)
        return WriteResult(path=path, changed=True, warnings=warnings)

    @staticmethod
    def _apply_group(
        target: int | Path,
        path: Path,
        group: str,
        warnings: list[str],
    ) -> None:
        try:
            gid = grp.getgrnam(group).gr_gid
        except KeyError:
            warnings.append(f"Group '{group}' does not exist; ownership of {path} unchanged.")
            return
        try:
            if isinstance(target, int):
                os.fchown(target, -1, gid)
            else:
                os.chown(target, -1, gid)
        except PermissionError:
            warnings.append(f"Not permitted to set group '{group}' on {path}.")


__all__ = [
    "ArtifactError",
    "ArtifactTarget",
    "ArtifactWriter",
    "ConfigurationArtifact",
    "ConfigurationDescriptor",
    "DEFAULT_MODE",
    "RenderError",
    "WriteError",
    "WriteResult",
]
