"""Filesystem-backed registry of context definitions.

Each context lives in its own YAML file under ``<config_root>/provision``
named ``<type>.<name>.yml``. The store is an explicit handle: nothing is cached
between calls, every lookup reads the directory again and every mutation is
flushed immediately with an atomic replace.
"""
from __future__ import annotations

import glob
import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage provisionctl contexts. "
        "Install with `pip install provisionctl`."
    ) from exc

from .errors import (
    ContextInUse,
    ContextNotFound,
    NoContextsFound,
    ParseError,
)
from .models import (
    Context,
    ContextType,
    PlatformContext,
    ServerContext,
    SiteContext,
    VerificationRecord,
    build_context,
    parse_context_type,
)

CONTEXT_SUFFIX = ".yml"
FILE_MODE = 0o640


@dataclass(frozen=True, slots=True)
class HostingChain:
    """A context together with the platform and server that host it."""

    context: Context
    server: ServerContext
    platform: PlatformContext | None = None

    @property
    def site(self) -> SiteContext | None:
        """Return the site when the chain was resolved for a site."""
        return self.context if isinstance(self.context, SiteContext) else None


@dataclass(frozen=True)
class ContextStore:
    """Discover, load and persist context definitions."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, context: Context) -> Path:
        """Return the canonical file path for *context*."""
        return self.root / f"{context.identifier}{CONTEXT_SUFFIX}"

    # ------------------------------------------------------------------
    # Discovery
    # ------------------------------------------------------------------
    def discover(self, name_pattern: str | None = None) -> dict[str, Context]:
        """Return every context whose file name ends with ``<pattern>.yml``."""
        if not self.root.is_dir():
            return {}
        pattern = f"*{glob.escape(name_pattern or '')}{CONTEXT_SUFFIX}"
        contexts: dict[str, Context] = {}
        for path in sorted(self.root.glob(pattern)):
            if path.name.startswith(".") or not path.is_file():
                continue
            context = self._read(path)
            if context.name in contexts:
                existing = contexts[context.name]
                raise ParseError(
                    f"Context name '{context.name}' is used by both "
                    f"{existing.identifier} and {context.identifier}."
                )
            contexts[context.name] = context
        return contexts

    def load(self, name: str) -> Context:
        """Return the context named *name*."""
        context = self.discover(name).get(name)
        if context is None:
            raise ContextNotFound(f"Context not found with name: {name}")
        return context

    def get_all_servers(self) -> dict[str, ServerContext]:
        """Return every server context keyed by name."""
        contexts = self.discover()
        if not contexts:
            raise NoContextsFound("No contexts found. Use `provisionctl save` to create one.")
        return {
            name: context
            for name, context in contexts.items()
            if isinstance(context, ServerContext)
        }

    def get_server_options(self, service_type: str | None = None) -> dict[str, str]:
        """Return ``name -> "<name>: <subtype>"`` labels for servers.

        With *service_type* only servers bound to that service are listed.
        Without it every server is listed along with all its bound subtypes.
        """
        options: dict[str, str] = {}
        for name, server in self.get_all_servers().items():
            if service_type:
                subtype = server.service_subtype(service_type)
                if subtype is None:
                    continue
                options[name] = f"{name}: {subtype}"
                continue
            subtypes = [
                subtype
                for subtype in (server.service_subtype(kind) for kind in server.services)
                if subtype
            ]
            options[name] = f"{name}: {', '.join(subtypes)}" if subtypes else name
        return options

    def children_of(self, name: str) -> list[Context]:
        """Return contexts whose parent reference is *name*."""
        return [
            context for context in self.discover().values() if context.parent == name
        ]

    # ------------------------------------------------------------------
    # Graph resolution
    # ------------------------------------------------------------------
    def resolve_chain(self, context: Context) -> HostingChain:
        """Resolve the platform and server hosting *context*."""
        if isinstance(context, ServerContext):
            return HostingChain(context=context, server=context)
        if isinstance(context, PlatformContext):
            server = self._load_parent(context, ContextType.SERVER)
            return HostingChain(context=context, server=server)  # type: ignore[arg-type]
        platform = self._load_parent(context, ContextType.PLATFORM)
        server = self._load_parent(platform, ContextType.SERVER)
        return HostingChain(
            context=context,
            server=server,  # type: ignore[arg-type]
            platform=platform,  # type: ignore[arg-type]
        )

    def service_bindings(self, chain: HostingChain) -> dict[str, dict[str, Any]]:
        """Return service bindings for the chain's context.

        Bindings declared on the context (or its platform) override the
        hosting server's binding for the same service type.
        """
        bindings: dict[str, dict[str, Any]] = {}
        layers = [chain.server]
        if chain.platform is not None:
            layers.append(chain.platform)
        if chain.context not in layers:
            layers.append(chain.context)
        for layer in layers:
            for service_type, binding in layer.services.items():
                bindings[service_type] = dict(binding)
        return bindings

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save(self, context: Context) -> Path:
        """Atomically write *context* to its canonical path."""
        self.ensure_root()
        path = self.path_for(context)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(context.to_dict(), handle, sort_keys=False)
            os.chmod(tmp_path, FILE_MODE)
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)
        context.saved = True
        return path

    def record_verification(self, context: Context, record: VerificationRecord) -> None:
        """Attach *record* to *context* and persist it."""
        context.verification = record
        self.save(context)

    def remove(self, name: str) -> None:
        """Delete the context named *name* unless other contexts depend on it."""
        context = self.load(name)
        children = self.children_of(name)
        if children:
            joined = ", ".join(child.identifier for child in children)
            raise ContextInUse(f"Context '{name}' is still referenced by: {joined}.")
        self.path_for(context).unlink(missing_ok=True)
        context.saved = False

    # ------------------------------------------------------------------
    def _read(self, path: Path) -> Context:
        identifier = path.name[: -len(CONTEXT_SUFFIX)]
        segments = identifier.split(".")
        if len(segments) != 2 or not all(segments):
            raise ParseError(
                f"Invalid context file name {path.name!r}: expected '<type>.<name>.yml'."
            )
        context_type = parse_context_type(segments[0])
        name = segments[1]

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise ParseError(f"Failed to parse context file {path}: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ParseError(f"Context file {path} must contain a mapping at the top level.")

        declared_name = data.get("name")
        if declared_name is not None and str(declared_name) != name:
            raise ParseError(
                f"Context file {path.name} declares name {declared_name!r}, expected {name!r}."
            )
        declared_type = data.get("type")
        if declared_type is not None and parse_context_type(declared_type) is not context_type:
            raise ParseError(
                f"Context file {path.name} declares type {declared_type!r}, "
                f"expected {context_type.value!r}."
            )

        context = build_context(context_type, name, data)
        context.saved = True
        return context

    def _load_parent(self, context: Context, expected: ContextType) -> Context:
        if not context.parent:
            raise ContextNotFound(
                f"{context.type.value.title()} '{context.name}' does not reference a "
                f"{expected.value}."
            )
        parent = self.discover(context.parent).get(context.parent)
        if parent is None or parent.type is not expected:
            raise ContextNotFound(
                f"{expected.value.title()} '{context.parent}' referenced by "
                f"{context.identifier} not found."
            )
        return parent


__all__ = ["ContextStore", "HostingChain"]
