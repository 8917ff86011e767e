"""Configuration loader for provisionctl.

Configuration values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``/etc/provisionctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``PROVISIONCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PROVISIONCTL_VERIFY__MAX_CONCURRENCY=4
    export PROVISIONCTL_HOOKS__MERGE_POLICY=replace

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load provisionctl configuration. Install with "
        "`pip install provisionctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PROVISIONCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

MERGE_POLICIES = ("deep-merge", "replace", "mutate")


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class VerifyConfig:
    """Tunables for the verify fan-out and service post-actions."""

    max_concurrency: int = 1
    post_action_timeout: float = 60.0
    run_post_actions: bool = True

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "max_concurrency": self.max_concurrency,
            "post_action_timeout": self.post_action_timeout,
            "run_post_actions": self.run_post_actions,
        }


@dataclass(frozen=True)
class HooksConfig:
    """Extension hook discovery and merge behaviour."""

    merge_policy: str = "deep-merge"
    entry_point_group: str = "provisionctl.hooks"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "merge_policy": self.merge_policy,
            "entry_point_group": self.entry_point_group,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for provisionctl."""

    config_file: Path
    config_root: Path
    platforms_root: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    web_group: str
    verify: VerifyConfig
    hooks: HooksConfig

    @property
    def contexts_dir(self) -> Path:
        """Directory holding one ``<type>.<name>.yml`` file per context."""
        return self.config_root / "provision"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "config_root": str(self.config_root),
            "platforms_root": str(self.platforms_root),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "web_group": self.web_group,
            "verify": self.verify.to_dict(),
            "hooks": self.hooks.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/provisionctl/config.yml",
    "config_root": "/var/aegir/config",
    "platforms_root": "/var/aegir/platforms",
    "logs_dir": "/var/log/provisionctl",
    "runtime_dir": "/run/provisionctl",
    "templates_dir": "/etc/provisionctl/templates",
    "lock_timeout": 30.0,
    "web_group": "www-data",
    "verify": {
        "max_concurrency": 1,
        "post_action_timeout": 60.0,
        "run_post_actions": True,
    },
    "hooks": {
        "merge_policy": "deep-merge",
        "entry_point_group": "provisionctl.hooks",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    web_group = raw.get("web_group")
    if not isinstance(web_group, str) or not web_group.strip():
        raise ConfigError("web_group must be a non-empty string.")

    verify = raw.get("verify")
    if verify is not None:
        verify_map = _as_dict(verify, "verify")
        unknown = set(verify_map.keys()) - {
            "max_concurrency",
            "post_action_timeout",
            "run_post_actions",
        }
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown verify configuration keys: {joined}.")

    hooks = raw.get("hooks")
    if hooks is not None:
        hooks_map = _as_dict(hooks, "hooks")
        unknown = set(hooks_map.keys()) - {"merge_policy", "entry_point_group"}
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown hooks configuration keys: {joined}.")
        policy = hooks_map.get("merge_policy")
        if policy is not None and str(policy) not in MERGE_POLICIES:
            allowed = ", ".join(MERGE_POLICIES)
            raise ConfigError(f"Unsupported hook merge policy '{policy}'. Allowed: {allowed}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    verify_mapping = _as_dict(raw.get("verify"), "verify")
    max_concurrency = _expect_int(
        verify_mapping.get("max_concurrency"), "verify.max_concurrency", default=1
    )
    if max_concurrency < 1:
        raise ConfigError("verify.max_concurrency must be at least 1.")
    verify = VerifyConfig(
        max_concurrency=max_concurrency,
        post_action_timeout=_expect_positive_float(
            verify_mapping.get("post_action_timeout"),
            "verify.post_action_timeout",
            default=60.0,
        ),
        run_post_actions=_expect_bool(
            verify_mapping.get("run_post_actions"), "verify.run_post_actions", default=True
        ),
    )

    hooks_mapping = _as_dict(raw.get("hooks"), "hooks")
    hooks = HooksConfig(
        merge_policy=str(hooks_mapping.get("merge_policy", "deep-merge")),
        entry_point_group=str(hooks_mapping.get("entry_point_group", "provisionctl.hooks")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        config_root=_to_path(raw.get("config_root")),
        platforms_root=_to_path(raw.get("platforms_root")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=lock_timeout,
        web_group=str(raw.get("web_group", "www-data")).strip(),
        verify=verify,
        hooks=hooks,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_bool(value: object | None, label: str, *, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in {"true", "yes", "on", "1"}:
        return True
    if isinstance(value, str) and value.strip().lower() in {"false", "no", "off", "0"}:
        return False
    raise ConfigError(f"Expected {label} to be a boolean. Got {value!r}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "HooksConfig",
    "MERGE_POLICIES",
    "VerifyConfig",
    "load_config",
]
