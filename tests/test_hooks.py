"""Tests for the extension hook bus and contribution reduction."""
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from provisionctl import hooks as hooks_module
from provisionctl.hooks import (
    ExtensionHookBus,
    ExtensionHookError,
    HookContribution,
    MergePolicy,
    deep_merge,
)
from provisionctl.logging import StructuredLogger

BASE: dict[str, Any] = {
    "parameters": {
        "renderer.config": {
            "required_cache_contexts": ["theme"],
            "auto_placeholder_conditions": {"max-age": 0},
        },
    },
}


def test_deep_merge_adds_nested_keys_and_concatenates_lists() -> None:
    """Maps merge recursively and sequences are appended."""
    contribution = {
        "parameters": {
            "renderer.config": {"required_cache_contexts": ["url.path"]},
            "session.storage.options": {"gc_maxlifetime": 200000},
        },
    }

    merged = deep_merge(BASE, contribution)

    renderer = merged["parameters"]["renderer.config"]
    assert renderer["required_cache_contexts"] == ["theme", "url.path"]
    assert renderer["auto_placeholder_conditions"] == {"max-age": 0}
    assert merged["parameters"]["session.storage.options"] == {"gc_maxlifetime": 200000}
    assert BASE["parameters"]["renderer.config"]["required_cache_contexts"] == ["theme"]


def test_deep_merge_contributor_wins_on_scalars() -> None:
    """Scalar conflicts resolve in favour of the contribution."""
    merged = deep_merge({"port": 80, "host": "a"}, {"port": 8080})

    assert merged == {"port": 8080, "host": "a"}


def test_deep_merge_keeps_structure_on_shape_conflict() -> None:
    """A scalar never replaces an existing mapping."""
    warnings: list[str] = []

    merged = deep_merge(BASE, {"parameters": "flat"}, warnings=warnings)

    assert merged == BASE
    assert warnings and "parameters" in warnings[0]


def test_contributions_reduce_in_registration_order() -> None:
    """Later contributors win on the same scalar key."""
    bus = ExtensionHookBus()
    bus.register("demo", lambda uri, data: {"value": "first", "first": True}, name="one")
    bus.register("demo", lambda uri, data: {"value": "second"}, name="two")

    contributions = bus.invoke("demo", "alpha.example.com", {"value": "base"})
    result, warnings = bus.reduce({"value": "base"}, contributions)

    assert bus.contributors("demo") == ["one", "two"]
    assert result == {"value": "second", "first": True}
    assert warnings == []


def test_callbacks_receive_uri_and_a_copy() -> None:
    """Under deep-merge callbacks cannot corrupt the shared data."""
    seen: list[str] = []

    def tamper(uri: str, data: dict[str, Any]) -> None:
        seen.append(uri)
        data["parameters"] = {}

    bus = ExtensionHookBus()
    bus.register("demo", tamper)
    data = json.loads(json.dumps(BASE))

    result, _ = bus.reduce(data, bus.invoke("demo", "alpha.example.com", data))

    assert seen == ["alpha.example.com"]
    assert result == BASE


def test_no_contributors_leaves_data_unchanged() -> None:
    """Reducing zero contributions is the identity."""
    bus = ExtensionHookBus()

    result, warnings = bus.reduce(BASE, bus.invoke("unused", "x", BASE))

    assert result == BASE
    assert warnings == []


def test_non_mapping_contribution_is_ignored() -> None:
    """Lists and scalars returned by callbacks are skipped with a warning."""
    bus = ExtensionHookBus()
    bus.register("demo", lambda uri, data: ["not", "a", "map"], name="lister")

    result, warnings = bus.reduce({"a": 1}, bus.invoke("demo", "x", {"a": 1}))

    assert result == {"a": 1}
    assert "lister" in warnings[0]


def test_failing_callback_is_isolated(tmp_path: Path) -> None:
    """A raising contributor is logged and skipped; others still apply."""
    logger = StructuredLogger(tmp_path / "logs")
    bus = ExtensionHookBus(logger=logger)

    def broken(uri: str, data: dict[str, Any]) -> dict[str, Any]:
        raise ValueError("kaboom")

    bus.register("demo", broken, name="broken")
    bus.register("demo", lambda uri, data: {"ok": True}, name="fine")

    contributions = bus.invoke("demo", "alpha", {})
    result, warnings = bus.reduce({}, contributions)

    assert isinstance(contributions[0].error, ExtensionHookError)
    assert contributions[0].is_empty
    assert result == {"ok": True}
    assert "kaboom" in warnings[0]
    events = (tmp_path / "logs" / "events.log").read_text(encoding="utf-8").splitlines()
    record = json.loads(events[-1])
    assert record["level"] == "warning"
    assert record["context"]["contributor"] == "broken"


def test_replace_policy_takes_last_contribution() -> None:
    """``replace`` discards earlier data entirely."""
    bus = ExtensionHookBus(policy="replace")
    bus.register("demo", lambda uri, data: {"only": 1})
    bus.register("demo", lambda uri, data: {"only": 2})

    result, _ = bus.reduce({"base": True}, bus.invoke("demo", "x", {"base": True}))

    assert bus.policy is MergePolicy.REPLACE
    assert result == {"only": 2}


def test_mutate_policy_shares_the_buffer() -> None:
    """``mutate`` hands callbacks the live data, as legacy hooks expect."""
    bus = ExtensionHookBus(policy=MergePolicy.MUTATE)

    def legacy(uri: str, data: dict[str, Any]) -> dict[str, Any]:
        data.setdefault("items", []).append(uri)
        return data

    bus.register("demo", legacy)
    data: dict[str, Any] = {"items": ["base"]}

    result, _ = bus.reduce(data, bus.invoke("demo", "alpha", data))

    assert result == {"items": ["base", "alpha"]}


def test_returned_copy_contributes_only_its_edits() -> None:
    """A callback returning its edited copy does not duplicate existing lists."""

    def edit(uri: str, data: dict[str, Any]) -> dict[str, Any]:
        data["extra"] = 1
        data["items"].append(uri)
        data["nested"]["mode"] = "strict"
        return data

    def partial(uri: str, data: dict[str, Any]) -> dict[str, Any]:
        return {"items": ["partial"]}

    bus = ExtensionHookBus()
    bus.register("demo", edit)
    bus.register("demo", partial)
    data: dict[str, Any] = {"items": ["a", "b"], "nested": {"mode": "loose", "keep": True}}

    result, warnings = bus.reduce(data, bus.invoke("demo", "alpha", data))

    assert result == {
        "items": ["a", "b", "alpha", "partial"],
        "nested": {"mode": "strict", "keep": True},
        "extra": 1,
    }
    assert warnings == []
    assert data == {"items": ["a", "b"], "nested": {"mode": "loose", "keep": True}}


def test_returned_copy_with_reordered_list_replaces_it() -> None:
    """Edits that are not appends replace the value at that key."""

    def reorder(uri: str, data: dict[str, Any]) -> dict[str, Any]:
        data["items"].reverse()
        return data

    bus = ExtensionHookBus()
    bus.register("demo", reorder)
    data: dict[str, Any] = {"items": ["a", "b"]}

    result, _ = bus.reduce(data, bus.invoke("demo", "alpha", data))

    assert result == {"items": ["b", "a"]}


def test_load_entry_points_registers_and_survives_failures(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Extensions register through entry points; broken ones are skipped."""

    class FakeEntryPoint:
        def __init__(self, name: str, target: object) -> None:
            self.name = name
            self.value = f"fake:{name}"
            self._target = target

        def load(self) -> object:
            if isinstance(self._target, Exception):
                raise self._target
            return self._target

    def register(bus: ExtensionHookBus) -> None:
        bus.register("provision_drupal_services", lambda uri, data: None, name="redis")

    points = [
        FakeEntryPoint("redis", register),
        FakeEntryPoint("broken", ImportError("missing module")),
    ]
    monkeypatch.setattr(hooks_module, "entry_points", lambda group: points)

    bus = ExtensionHookBus()
    loaded = bus.load_entry_points("provisionctl.hooks")

    assert loaded == ["redis"]
    assert bus.contributors("provision_drupal_services") == ["redis"]


def test_empty_contribution_flags() -> None:
    """``None`` and errored contributions carry nothing to merge."""
    assert HookContribution(contributor="x").is_empty
    assert not HookContribution(contributor="x", value={}).is_empty
