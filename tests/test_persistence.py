import json

import pytest

from together.config.loader import config_from_commands
from together.config.persistence import (
    LastRun,
    clear_last_run,
    last_run_path,
    read_last_run,
    write_last_run,
)
from together.core.models import RunOptions, TogetherSettings
from together.utils.diagnostics import ConfigError, DuplicateAliasError


def test_last_run_path_uses_state_dir(tmp_path):
    settings = TogetherSettings(state_dir=tmp_path)
    assert last_run_path(settings) == tmp_path / "last_run.json"


def test_write_then_read_last_run(tmp_path):
    settings = TogetherSettings(state_dir=tmp_path / "nested")
    config = config_from_commands(["echo a", "sleep 1"])

    path = write_last_run(
        settings,
        LastRun(config=config, options=RunOptions(recipes=["web"], exit_on_error=True), selected=["echo a"]),
    )
    loaded = read_last_run(settings)

    assert path.exists()
    assert loaded.config == config
    assert loaded.options.recipes == ["web"]
    assert loaded.options.exit_on_error is True
    assert loaded.selected == ["echo a"]
    assert loaded.saved_at


def test_read_last_run_without_saved_state(tmp_path):
    with pytest.raises(ConfigError) as exc_info:
        read_last_run(TogetherSettings(state_dir=tmp_path))

    assert exc_info.value.diagnostics[0].error_code == "ERR_NO_SAVED_RUN"


def test_read_last_run_with_corrupt_file(tmp_path):
    settings = TogetherSettings(state_dir=tmp_path)
    last_run_path(settings).write_text("{not-json}")

    with pytest.raises(ConfigError) as exc_info:
        read_last_run(settings)

    assert exc_info.value.diagnostics[0].error_code == "ERR_SAVED_RUN"


def test_read_last_run_revalidates_config(tmp_path):
    settings = TogetherSettings(state_dir=tmp_path)
    payload = {
        "config": {
            "version": "0.4.0",
            "commands": [
                {"alias": "web", "command": "npm start"},
                {"alias": "web", "command": "yarn start"},
            ],
        }
    }
    last_run_path(settings).write_text(json.dumps(payload))

    with pytest.raises(DuplicateAliasError):
        read_last_run(settings)


def test_clear_last_run(tmp_path):
    settings = TogetherSettings(state_dir=tmp_path)
    write_last_run(settings, LastRun(config=config_from_commands(["echo a"])))

    assert clear_last_run(settings) is True
    assert clear_last_run(settings) is False
    assert not last_run_path(settings).exists()
