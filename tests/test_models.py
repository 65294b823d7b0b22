from pathlib import Path

import pytest
from pydantic import ValidationError

from together.core.models import (
    CommandEntry,
    CommandSpec,
    RunOptions,
    TogetherConfig,
    TogetherSettings,
    parse_major_version,
)


@pytest.mark.parametrize(
    "version, major",
    [("0.4.0", 0), ("v1.2.3", 1), ("2", 2), ("0.1.0-beta+build", 0)],
)
def test_parse_major_version(version, major):
    assert parse_major_version(version) == major


def test_parse_major_version_rejects_garbage():
    with pytest.raises(ValueError):
        parse_major_version("one.two")


def test_command_entry_auto_start_from_active_or_default():
    assert CommandEntry(command="a").auto_start is False
    assert CommandEntry(command="a", active=True).auto_start is True
    assert CommandEntry(command="a", default=True).auto_start is True


def test_config_defaults():
    config = TogetherConfig()
    assert config.version == "0.4.0"
    assert config.startup == []
    assert config.commands == []
    assert config.working_directory is None


def test_command_spec_is_frozen():
    spec = CommandSpec(alias="web", command="npm start", startup_order_index=0)
    assert spec.startup_order_index == 0
    with pytest.raises(ValidationError):
        spec.alias = "api"


def test_run_options_ignore_unknown_keys():
    options = RunOptions.model_validate({"raw": True, "legacy_flag": 1})
    assert options.raw is True


def test_settings_defaults(monkeypatch):
    monkeypatch.delenv("TOGETHER_STATE_DIR", raising=False)
    settings = TogetherSettings()

    assert settings.grace_timeout_seconds == 3.0
    assert settings.force_timeout_seconds == 2.0
    assert settings.output_tail_lines == 50
    assert settings.verbose is False


def test_settings_read_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("TOGETHER_GRACE_TIMEOUT_SECONDS", "0.25")
    monkeypatch.setenv("TOGETHER_VERBOSE", "true")
    monkeypatch.setenv("TOGETHER_STATE_DIR", str(tmp_path))

    settings = TogetherSettings()

    assert settings.grace_timeout_seconds == 0.25
    assert settings.verbose is True
    assert settings.resolved_state_dir() == tmp_path


def test_settings_reject_non_positive_timeouts():
    with pytest.raises(ValidationError):
        TogetherSettings(grace_timeout_seconds=0)


def test_state_dir_defaults_to_xdg_config_home(monkeypatch, tmp_path):
    monkeypatch.delenv("TOGETHER_STATE_DIR", raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))

    assert TogetherSettings().resolved_state_dir() == tmp_path / "together"


def test_state_dir_falls_back_to_home_config(monkeypatch, tmp_path):
    monkeypatch.delenv("TOGETHER_STATE_DIR", raising=False)
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))

    assert TogetherSettings().resolved_state_dir() == Path(tmp_path) / ".config" / "together"
