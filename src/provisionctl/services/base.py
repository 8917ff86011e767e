"""Service definitions and the helpers shared by concrete services."""
from __future__ import annotations

import os
import shlex
import subprocess
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ..artifacts import ConfigurationDescriptor
from ..contexts import ContextType

PostAction = Callable[[Mapping[str, Any]], list[str]]
CommandRunner = Callable[..., subprocess.CompletedProcess[str]]


class ServiceError(RuntimeError):
    """Raised when service lookups or service commands fail."""


class UnknownService(ServiceError):
    """Raised when a context binds a service type/subtype that is not registered."""


class ServiceUnavailable(ServiceError):
    """Raised when no control executable can be found for a service."""


@dataclass(frozen=True, slots=True)
class Service:
    """A pluggable capability contributing configuration descriptors."""

    service_type: str
    subtype: str
    label: str
    configurations: Mapping[ContextType, tuple[ConfigurationDescriptor, ...]] = field(
        default_factory=dict
    )
    post_action: PostAction | None = None

    @property
    def key(self) -> str:
        """Return ``<type>/<subtype>``."""
        return f"{self.service_type}/{self.subtype}"

    def configurations_for(self, context_type: ContextType) -> tuple[ConfigurationDescriptor, ...]:
        """Return descriptors declared for *context_type*, in declaration order."""
        return tuple(self.configurations.get(context_type, ()))

    def post_action_command(self, binding: Mapping[str, Any]) -> list[str] | None:
        """Return the post-action command for *binding*, if the service has one.

        A ``restart_cmd`` entry on the binding overrides the detected command.
        """
        override = binding.get("restart_cmd")
        if isinstance(override, str) and override.strip():
            return shlex.split(override)
        if self.post_action is None:
            return None
        return self.post_action(binding)


def _is_executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def resolve_executable(
    names: Sequence[str],
    fixed_candidates: Sequence[str],
    env_path: str | None,
    *,
    default: str | None = None,
    is_executable: Callable[[str], bool] = _is_executable,
) -> str:
    """Return the first executable candidate.

    Candidates derived from *env_path* (``<dir>/<name>`` for every ``PATH``
    entry and every name) are probed before *fixed_candidates*. When nothing is
    executable *default* is returned, or :class:`ServiceUnavailable` is raised
    if there is no default.
    """
    candidates: list[str] = []
    for directory in (env_path or "").split(os.pathsep):
        if not directory:
            continue
        for name in names:
            candidates.append(os.path.join(directory, name))
    candidates.extend(fixed_candidates)

    for candidate in candidates:
        if is_executable(candidate):
            return candidate
    if default is None:
        raise ServiceUnavailable(f"None of {', '.join(names)} found on this system.")
    return default


def run_post_action(
    command: Sequence[str],
    *,
    timeout: float,
    runner: CommandRunner = subprocess.run,
) -> subprocess.CompletedProcess[str]:
    """Run a service post-action; raise :class:`ServiceError` on any failure."""
    try:
        result = runner(  # noqa: S603
            list(command),
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )
    except FileNotFoundError as exc:
        raise ServiceError(f"{command[0]} not found: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ServiceError(
            f"{' '.join(command)} timed out after {timeout:.0f}s"
        ) from exc
    if result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise ServiceError(
            f"{' '.join(command)} failed (exit {result.returncode}): {message}"
        )
    return result


__all__ = [
    "CommandRunner",
    "PostAction",
    "Service",
    "ServiceError",
    "ServiceUnavailable",
    "UnknownService",
    "resolve_executable",
    "run_post_action",
]
