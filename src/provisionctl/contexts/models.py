"""Context entities: the named nodes of the hosting topology.

A :class:`ServerContext` hosts platforms, a :class:`PlatformContext` (a code
base on disk) hosts sites and a :class:`SiteContext` is a single hosted site.
Parents are referenced by name only; the store resolves them on demand so a
missing parent is detected at lookup time rather than hidden behind a dangling
object reference.

Variants are a closed set. :func:`build_context` is the only way to turn a
type discriminant read from disk into an instance.
"""
from __future__ import annotations

from collections.abc import Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar

from .errors import ParseError, UnknownContextType


class ContextType(str, Enum):
    """Discriminant for the context variants."""

    SERVER = "server"
    PLATFORM = "platform"
    SITE = "site"


class VerifyState(str, Enum):
    """Verification lifecycle of a single target."""

    UNVERIFIED = "unverified"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    FAILED = "failed"


@dataclass(slots=True)
class VerificationRecord:
    """Outcome of the most recent verify run for a context."""

    state: VerifyState
    verified_at: str | None = None
    artifacts: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def now(
        cls,
        state: VerifyState,
        *,
        artifacts: Sequence[str] = (),
        errors: Sequence[str] = (),
        warnings: Sequence[str] = (),
    ) -> VerificationRecord:
        """Build a record stamped with the current UTC time."""
        stamp = datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")
        return cls(
            state=state,
            verified_at=stamp,
            artifacts=list(artifacts),
            errors=list(errors),
            warnings=list(warnings),
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, object]) -> VerificationRecord:
        """Parse a record from its serialised mapping."""
        try:
            state = VerifyState(str(raw.get("state", VerifyState.UNVERIFIED.value)))
        except ValueError as exc:
            raise ParseError(f"Unknown verification state {raw.get('state')!r}.") from exc
        verified_at = raw.get("verified_at")
        return cls(
            state=state,
            verified_at=str(verified_at) if verified_at is not None else None,
            artifacts=[str(item) for item in _as_list(raw.get("artifacts"))],
            errors=[str(item) for item in _as_list(raw.get("errors"))],
            warnings=[str(item) for item in _as_list(raw.get("warnings"))],
        )

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "state": self.state.value,
            "verified_at": self.verified_at,
            "artifacts": list(self.artifacts),
            "errors": list(self.errors),
            "warnings": list(self.warnings),
        }


@dataclass(eq=True)
class Context:
    """Common attributes shared by every context variant."""

    TYPE: ClassVar[ContextType]
    PARENT_KEY: ClassVar[str | None] = None

    name: str
    uri: str = ""
    parent: str | None = None
    services: dict[str, dict[str, Any]] = field(default_factory=dict)
    configuration: dict[str, Any] = field(default_factory=dict)
    verification: VerificationRecord | None = None
    saved: bool = field(default=False, compare=False)

    def __post_init__(self) -> None:
        """Validate identity fields."""
        self.name = self.name.strip()
        if not self.name or "." in self.name or "/" in self.name:
            raise ParseError(
                f"Invalid context name {self.name!r}: names must be non-empty and "
                "contain neither '.' nor '/'."
            )
        self.uri = (self.uri or "").strip() or self.name
        # The uri names generated files and directories.
        if "/" in self.uri or "\\" in self.uri or self.uri in {".", ".."}:
            raise ParseError(
                f"Invalid uri {self.uri!r} for context '{self.name}': a uri must be a "
                "single path segment."
            )
        if self.PARENT_KEY is None and self.parent is not None:
            raise ParseError(f"{self.TYPE.value} contexts do not have a parent.")

    @property
    def type(self) -> ContextType:
        """Return the variant discriminant."""
        return self.TYPE

    @property
    def identifier(self) -> str:
        """Return the ``<type>.<name>`` registry identifier."""
        return f"{self.TYPE.value}.{self.name}"

    def service_subtype(self, service_type: str) -> str | None:
        """Return the bound subtype for *service_type* (e.g. ``apache``)."""
        binding = self.services.get(service_type)
        if not isinstance(binding, Mapping):
            return None
        subtype = binding.get("type")
        return str(subtype) if subtype else None

    def to_dict(self) -> dict[str, object]:
        """Return the mapping persisted to the context file."""
        payload: dict[str, object] = {
            "name": self.name,
            "type": self.TYPE.value,
            "uri": self.uri,
        }
        if self.PARENT_KEY is not None:
            payload[self.PARENT_KEY] = self.parent
        payload["services"] = deepcopy(self.services)
        payload["configuration"] = deepcopy(self.configuration)
        if self.verification is not None:
            payload["verification"] = self.verification.to_dict()
        return payload


@dataclass(eq=True)
class ServerContext(Context):
    """A machine hosting platforms and services."""

    TYPE: ClassVar[ContextType] = ContextType.SERVER

    @property
    def web_group(self) -> str | None:
        """Group the web server runs as; artifacts are group-owned by it."""
        value = self.configuration.get("web_group")
        return str(value) if value else None

    @property
    def http_port(self) -> int:
        """Port the http service listens on."""
        binding = self.services.get("http") or {}
        try:
            return int(binding.get("port", 80))
        except (TypeError, ValueError):
            return 80


@dataclass(eq=True)
class PlatformContext(Context):
    """A code base on a server, hosting one or more sites."""

    TYPE: ClassVar[ContextType] = ContextType.PLATFORM
    PARENT_KEY: ClassVar[str | None] = "server"

    def root(self, platforms_root: Path) -> Path:
        """Return the platform's document root."""
        value = self.configuration.get("root")
        if value:
            return Path(str(value)).expanduser()
        return platforms_root / self.name


@dataclass(eq=True)
class SiteContext(Context):
    """A single site served from a platform."""

    TYPE: ClassVar[ContextType] = ContextType.SITE
    PARENT_KEY: ClassVar[str | None] = "platform"

    @property
    def aliases(self) -> list[str]:
        """Additional host names served by the site."""
        return [str(alias) for alias in _as_list(self.configuration.get("aliases"))]


CONTEXT_TYPES: dict[ContextType, type[Context]] = {
    ContextType.SERVER: ServerContext,
    ContextType.PLATFORM: PlatformContext,
    ContextType.SITE: SiteContext,
}


def parse_context_type(value: object) -> ContextType:
    """Translate a raw discriminant into :class:`ContextType`."""
    try:
        return ContextType(str(value).strip().lower())
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ContextType)
        raise UnknownContextType(
            f"Unknown context type {value!r}. Allowed: {allowed}."
        ) from exc


def build_context(
    context_type: ContextType | str,
    name: str,
    data: Mapping[str, object] | None = None,
) -> Context:
    """Construct the variant registered for *context_type* from *data*."""
    resolved = (
        context_type if isinstance(context_type, ContextType) else parse_context_type(context_type)
    )
    cls = CONTEXT_TYPES[resolved]
    raw = dict(data or {})

    services = raw.get("services") or {}
    if not isinstance(services, Mapping):
        raise ParseError(f"Context '{name}': 'services' must be a mapping.")
    normalised_services: dict[str, dict[str, Any]] = {}
    for service_type, binding in services.items():
        if isinstance(binding, str):
            normalised_services[str(service_type)] = {"type": binding}
        elif isinstance(binding, Mapping):
            normalised_services[str(service_type)] = dict(deepcopy(binding))
        else:
            raise ParseError(
                f"Context '{name}': service '{service_type}' must be a subtype name or mapping."
            )

    configuration = raw.get("configuration") or {}
    if not isinstance(configuration, Mapping):
        raise ParseError(f"Context '{name}': 'configuration' must be a mapping.")

    parent: str | None = None
    if cls.PARENT_KEY is not None:
        parent_value = raw.get(cls.PARENT_KEY)
        parent = str(parent_value).strip() if parent_value else None

    verification_raw = raw.get("verification")
    verification = None
    if isinstance(verification_raw, Mapping):
        verification = VerificationRecord.from_dict(verification_raw)

    uri_value = raw.get("uri")
    return cls(
        name=name,
        uri=str(uri_value).strip() if uri_value else "",
        parent=parent,
        services=normalised_services,
        configuration=dict(deepcopy(configuration)),
        verification=verification,
    )


def _as_list(value: object) -> list[object]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


__all__ = [
    "CONTEXT_TYPES",
    "Context",
    "ContextType",
    "PlatformContext",
    "ServerContext",
    "SiteContext",
    "VerificationRecord",
    "VerifyState",
    "build_context",
    "parse_context_type",
]
