"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from provisionctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.config_root == Path("/var/aegir/config")
    assert config.contexts_dir == Path("/var/aegir/config/provision")
    assert config.platforms_root == Path("/var/aegir/platforms")
    assert config.templates_dir == Path("/etc/provisionctl/templates")
    assert config.web_group == "www-data"
    assert config.verify.max_concurrency == 1
    assert config.verify.run_post_actions is True
    assert config.hooks.merge_policy == "deep-merge"
    assert config.hooks.entry_point_group == "provisionctl.hooks"


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "provisionctl.yml"
    cfg.write_text(
        f"config_root: {tmp_path / 'aegir'}\n"
        "web_group: nginx\n"
        "verify:\n"
        "  max_concurrency: 3\n"
        "  post_action_timeout: 5\n"
        "hooks:\n"
        "  merge_policy: replace\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.config_root == tmp_path / "aegir"
    assert config.web_group == "nginx"
    assert config.verify.max_concurrency == 3
    assert config.verify.post_action_timeout == 5.0
    assert config.hooks.merge_policy == "replace"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "provisionctl.yml"
    cfg.write_text("web_group: nginx\nverify:\n  max_concurrency: 2\n", encoding="utf-8")
    env = {
        "PROVISIONCTL_CONFIG_FILE": str(cfg),
        "PROVISIONCTL_WEB_GROUP": "apache",
        "PROVISIONCTL_VERIFY__MAX_CONCURRENCY": "6",
        "PROVISIONCTL_VERIFY__RUN_POST_ACTIONS": "false",
        "PROVISIONCTL_LOCK_TIMEOUT": "45",
        "PROVISIONCTL_CONFIG_ROOT": str(tmp_path / "config"),
    }

    config = load_config(env=env)

    assert config.config_file == cfg
    assert config.web_group == "apache"
    assert config.verify.max_concurrency == 6
    assert config.verify.run_post_actions is False
    assert config.lock_timeout == 45.0
    assert config.contexts_dir == tmp_path / "config" / "provision"


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        config_file=tmp_path / "absent.yml",
        env={"PROVISIONCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 2.5},
    )

    assert config.lock_timeout == 2.5


def test_unknown_keys_raise(tmp_path: Path) -> None:
    """Unknown top-level or nested keys are rejected."""
    cfg = tmp_path / "provisionctl.yml"
    cfg.write_text("bogus: 1\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="bogus"):
        load_config(config_file=cfg, env={})

    cfg.write_text("verify:\n  retries: 3\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="retries"):
        load_config(config_file=cfg, env={})


def test_invalid_merge_policy_raises(tmp_path: Path) -> None:
    """Only the documented merge policies are accepted."""
    with pytest.raises(ConfigError, match="merge policy"):
        load_config(
            config_file=tmp_path / "absent.yml",
            env={"PROVISIONCTL_HOOKS__MERGE_POLICY": "last-wins"},
        )


def test_invalid_concurrency_raises(tmp_path: Path) -> None:
    """A worker pool needs at least one worker."""
    with pytest.raises(ConfigError, match="max_concurrency"):
        load_config(
            config_file=tmp_path / "absent.yml",
            env={"PROVISIONCTL_VERIFY__MAX_CONCURRENCY": "0"},
        )


def test_non_mapping_config_file_raises(tmp_path: Path) -> None:
    """A YAML list at the top level is not a configuration."""
    cfg = tmp_path / "provisionctl.yml"
    cfg.write_text("- one\n- two\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="mapping"):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """``to_dict`` exposes nested sections as plain values."""
    config = load_config(config_file=tmp_path / "absent.yml", env={})

    data = config.to_dict()

    assert data["config_root"] == "/var/aegir/config"
    assert data["verify"] == {
        "max_concurrency": 1,
        "post_action_timeout": 60.0,
        "run_post_actions": True,
    }
    assert data["hooks"]["merge_policy"] == "deep-merge"
