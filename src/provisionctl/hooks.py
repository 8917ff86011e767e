"""Extension hook bus.

Extensions contribute to an artifact's data before it is rendered. A callback
registered for a hook name receives ``(uri, data)`` and returns either
``None`` (no contribution) or a partial mapping that is merged into the
artifact data. A callback that edits its copy and returns it contributes only
its edits. Under the legacy ``mutate`` policy callbacks receive the shared
buffer itself and edit it in place.

Contributions are reduced strictly in registration order; a failing callback
is logged and skipped without aborting the artifact.

Third-party packages register callbacks through the ``provisionctl.hooks``
entry-point group. Each entry point resolves to a ``register(bus)`` callable::

    [project.entry-points."provisionctl.hooks"]
    redis = "provision_redis:register"
"""
from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from copy import deepcopy
from dataclasses import dataclass, field
from enum import Enum
from importlib.metadata import entry_points
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .logging import StructuredLogger

HookCallback = Callable[[str, dict[str, Any]], Any]


class MergePolicy(str, Enum):
    """How hook contributions are folded into artifact data."""

    DEEP_MERGE = "deep-merge"
    REPLACE = "replace"
    MUTATE = "mutate"


class ExtensionHookError(RuntimeError):
    """Raised (and recorded) when a hook callback fails."""

    def __init__(self, hook: str, contributor: str, cause: BaseException) -> None:
        """Describe the failing *contributor* for *hook*."""
        super().__init__(f"Hook '{hook}' contributor '{contributor}' failed: {cause}")
        self.hook = hook
        self.contributor = contributor
        self.cause = cause


@dataclass(slots=True, frozen=True)
class HookContribution:
    """Result of one contributor for one hook invocation."""

    contributor: str
    value: object = None
    error: ExtensionHookError | None = None
    payload: object = field(default=None, repr=False, compare=False)

    @property
    def is_empty(self) -> bool:
        """Return ``True`` when the contributor returned nothing usable."""
        return self.error is not None or self.value is None


@dataclass(slots=True, frozen=True)
class _Registration:
    name: str
    callback: HookCallback


def deep_merge(
    base: Mapping[str, Any],
    contribution: Mapping[str, Any],
    *,
    warnings: list[str] | None = None,
    _path: str = "",
) -> dict[str, Any]:
    """Return *base* with *contribution* merged in.

    Mappings merge key by key, sequences concatenate and the contribution wins
    when both sides hold scalars. A mapping or sequence already present is never
    replaced by a value of a different shape; such keys are skipped and noted in
    *warnings*.
    """
    merged: dict[str, Any] = deepcopy(dict(base))
    for key, value in contribution.items():
        location = f"{_path}.{key}" if _path else str(key)
        if key not in merged:
            merged[key] = deepcopy(value)
            continue
        existing = merged[key]
        if isinstance(existing, Mapping):
            if isinstance(value, Mapping):
                merged[key] = deep_merge(existing, value, warnings=warnings, _path=location)
            elif warnings is not None:
                warnings.append(f"Ignored non-mapping value for mapping key '{location}'.")
            continue
        if _is_sequence(existing):
            if _is_sequence(value):
                merged[key] = [*existing, *deepcopy(list(value))]
            elif warnings is not None:
                warnings.append(f"Ignored non-sequence value for sequence key '{location}'.")
            continue
        if isinstance(value, Mapping) or _is_sequence(value):
            merged[key] = deepcopy(value)
            continue
        merged[key] = value
    return merged


def _is_sequence(value: object) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


def _diff(
    original: Mapping[str, Any],
    edited: Mapping[str, Any],
    path: tuple[str, ...] = (),
) -> tuple[dict[str, Any], list[tuple[tuple[str, ...], Any]]]:
    """Split the edits made to a copy of *original* into additions and replacements.

    Additions are new keys and items appended to existing sequences; they are
    merged like any partial contribution. Every other change is a replacement
    of the value at its key path. Removed keys are not carried over.
    """
    additions: dict[str, Any] = {}
    replacements: list[tuple[tuple[str, ...], Any]] = []
    for key, value in edited.items():
        if key not in original:
            additions[key] = value
            continue
        before = original[key]
        if value == before:
            continue
        if isinstance(before, Mapping) and isinstance(value, Mapping):
            nested, replaced = _diff(before, value, (*path, key))
            if nested:
                additions[key] = nested
            replacements.extend(replaced)
        elif (
            _is_sequence(before)
            and _is_sequence(value)
            and list(value[: len(before)]) == list(before)
        ):
            additions[key] = list(value[len(before):])
        else:
            replacements.append(((*path, key), value))
    return additions, replacements


def _apply_edits(
    result: dict[str, Any],
    original: Mapping[str, Any],
    edited: Mapping[str, Any],
    warnings: list[str],
) -> dict[str, Any]:
    additions, replacements = _diff(original, edited)
    merged = deep_merge(result, additions, warnings=warnings)
    for path, value in replacements:
        node: Any = merged
        for key in path[:-1]:
            node = node.get(key) if isinstance(node, Mapping) else None
        if not isinstance(node, dict):
            warnings.append(f"Ignored edit to '{'.'.join(map(str, path))}'.")
            continue
        node[path[-1]] = deepcopy(value)
    return merged


class ExtensionHookBus:
    """Registry of hook callbacks and the reducer for their contributions."""

    def __init__(
        self,
        *,
        policy: MergePolicy | str = MergePolicy.DEEP_MERGE,
        logger: StructuredLogger | None = None,
    ) -> None:
        """Create an empty bus using *policy* for reductions."""
        self.policy = MergePolicy(policy)
        self._logger = logger
        self._registrations: dict[str, list[_Registration]] = {}

    def register(self, hook: str, callback: HookCallback, *, name: str | None = None) -> None:
        """Register *callback* for *hook*; invocation follows registration order."""
        contributor = name or getattr(callback, "__qualname__", None) or repr(callback)
        self._registrations.setdefault(hook, []).append(
            _Registration(name=contributor, callback=callback)
        )

    def contributors(self, hook: str) -> list[str]:
        """Return the contributor names registered for *hook*, in order."""
        return [registration.name for registration in self._registrations.get(hook, [])]

    def load_entry_points(self, group: str) -> list[str]:
        """Let installed extensions register themselves; return loaded names."""
        loaded: list[str] = []
        for entry_point in entry_points(group=group):
            try:
                register = entry_point.load()
                register(self)
            except Exception as exc:  # noqa: BLE001 - extensions must not break the CLI
                self._log(
                    "warning",
                    f"Failed to load hook extension '{entry_point.name}': {exc}",
                    group=group,
                    entry_point=entry_point.value,
                )
                continue
            loaded.append(entry_point.name)
        return loaded

    def invoke(self, hook: str, uri: str, data: dict[str, Any]) -> list[HookContribution]:
        """Call every contributor for *hook* in registration order."""
        contributions: list[HookContribution] = []
        for registration in self._registrations.get(hook, []):
            payload = data if self.policy is MergePolicy.MUTATE else deepcopy(data)
            try:
                value = registration.callback(uri, payload)
            except Exception as exc:  # noqa: BLE001 - isolated hook failure
                error = ExtensionHookError(hook, registration.name, exc)
                self._log("warning", str(error), hook=hook, uri=uri, contributor=registration.name)
                contributions.append(HookContribution(contributor=registration.name, error=error))
                continue
            contributions.append(
                HookContribution(contributor=registration.name, value=value, payload=payload)
            )
        return contributions

    def reduce(
        self,
        data: dict[str, Any],
        contributions: Sequence[HookContribution],
    ) -> tuple[dict[str, Any], list[str]]:
        """Fold *contributions* into *data*; return the result and warnings."""
        warnings: list[str] = [
            str(contribution.error) for contribution in contributions if contribution.error
        ]
        result = data
        for contribution in contributions:
            if contribution.is_empty:
                continue
            value = contribution.value
            if value is data or value is result:
                # Legacy callbacks that edit the shared buffer and return it.
                continue
            if value is contribution.payload and self.policy is MergePolicy.DEEP_MERGE:
                result = _apply_edits(result, data, value, warnings)
                continue
            if not isinstance(value, Mapping):
                warnings.append(
                    f"Ignored {type(value).__name__} contribution from '{contribution.contributor}'."
                )
                continue
            if self.policy is MergePolicy.REPLACE:
                result = deepcopy(dict(value))
            else:
                result = deep_merge(result, value, warnings=warnings)
        return result, warnings

    def _log(self, level: str, message: str, **context: object) -> None:
        if self._logger is not None:
            self._logger.event(level, message, **context)


__all__ = [
    "ExtensionHookBus",
    "ExtensionHookError",
    "HookCallback",
    "HookContribution",
    "MergePolicy",
    "deep_merge",
]
