import json

import pytest
import yaml

from together.config.loader import (
    config_from_commands,
    detect_syntax,
    dump_config,
    find_command_entry,
    load_config,
    parse_config_text,
    save_config,
    validate_config_data,
)
from together.utils.diagnostics import (
    ConfigError,
    ConfigVersionError,
    DuplicateAliasError,
    UnknownReferenceError,
)


TOML_CONFIG = """
version = "0.4.0"
startup = ["echo A"]

[[commands]]
command = "echo A"

[[commands]]
alias = "server"
command = "sleep 100"
default = true
recipes = ["web"]
"""

YAML_CONFIG = """
version: "0.4.0"
startup:
  - echo A
commands:
  - command: echo A
  - alias: server
    command: sleep 100
    default: true
    recipes: [web]
"""


def test_detect_syntax_by_suffix(tmp_path):
    assert detect_syntax(tmp_path / "together.toml") == "toml"
    assert detect_syntax(tmp_path / "together.yml") == "yaml"
    assert detect_syntax(tmp_path / "together.YAML") == "yaml"
    assert detect_syntax(tmp_path / "together.json") == "json"
    assert detect_syntax(tmp_path / "together.conf") == "yaml"


def test_toml_and_yaml_decode_to_same_config(tmp_path):
    toml_path = tmp_path / "together.toml"
    yaml_path = tmp_path / "together.yaml"
    toml_path.write_text(TOML_CONFIG)
    yaml_path.write_text(YAML_CONFIG)

    from_toml = load_config(toml_path)
    from_yaml = load_config(yaml_path)

    assert from_toml == from_yaml
    assert [entry.alias for entry in from_toml.commands] == ["echo A", "server"]
    assert from_toml.commands[1].recipes == ["web"]


def test_alias_defaults_to_command_text():
    config = validate_config_data({"commands": [{"command": "npm run dev"}]})
    assert config.commands[0].alias == "npm run dev"


def test_yaml_float_version_is_accepted():
    config = validate_config_data(parse_config_text("version: 0.4\ncommands: []\n", "yaml"))
    assert config.version == "0.4"


def test_empty_document_is_an_empty_config():
    config = validate_config_data(parse_config_text("", "yaml"))
    assert config.commands == []
    assert config.startup == []


def test_unsupported_major_version_fails():
    with pytest.raises(ConfigVersionError) as exc_info:
        validate_config_data({"version": "1.0.0", "commands": [{"command": "echo hi"}]})

    assert exc_info.value.diagnostics[0].error_code == "ERR_VERSION"


def test_garbage_version_fails():
    with pytest.raises(ConfigVersionError):
        validate_config_data({"version": "latest"})


def test_duplicate_alias_fails():
    with pytest.raises(DuplicateAliasError) as exc_info:
        validate_config_data(
            {
                "commands": [
                    {"alias": "web", "command": "npm start"},
                    {"alias": "web", "command": "python -m http.server"},
                ]
            }
        )

    assert "web" in exc_info.value.message
    assert exc_info.value.diagnostics[0].error_code == "ERR_DUPLICATE_ALIAS"


def test_defaulted_alias_clashing_with_explicit_alias_fails():
    with pytest.raises(DuplicateAliasError):
        validate_config_data(
            {
                "commands": [
                    {"alias": "make", "command": "make build"},
                    {"command": "make"},
                ]
            }
        )


def test_unknown_startup_reference_fails():
    with pytest.raises(UnknownReferenceError) as exc_info:
        validate_config_data({"startup": ["migrate"], "commands": [{"command": "echo hi"}]})

    assert "migrate" in exc_info.value.diagnostics[0].message


def test_startup_may_reference_alias_or_command():
    config = validate_config_data(
        {
            "startup": ["build", "echo ready"],
            "commands": [
                {"alias": "build", "command": "make"},
                {"command": "echo ready"},
            ],
        }
    )

    assert find_command_entry(config, "build").command == "make"
    assert find_command_entry(config, "make").alias == "build"
    assert find_command_entry(config, "nope") is None


def test_startup_command_text_declares_implicit_command():
    config = validate_config_data(
        {
            "startup": ["echo A"],
            "commands": [{"alias": "server", "command": "sleep 100", "default": True}],
        }
    )

    implicit = find_command_entry(config, "echo A")
    assert implicit.alias == "echo A"
    assert implicit.command == "echo A"
    assert implicit.auto_start is False
    assert [entry.alias for entry in config.commands] == ["server", "echo A"]


def test_repeated_startup_command_text_is_declared_once():
    config = validate_config_data({"startup": ["echo A", "echo A"], "commands": []})

    assert [entry.alias for entry in config.commands] == ["echo A"]


def test_blank_recipe_name_fails():
    with pytest.raises(UnknownReferenceError):
        validate_config_data({"commands": [{"command": "echo hi", "recipes": ["  "]}]})


def test_unknown_keys_are_schema_errors():
    with pytest.raises(ConfigError) as exc_info:
        validate_config_data({"commands": [{"command": "echo hi", "colour": "red"}]})

    assert exc_info.value.diagnostics[0].error_code == "ERR_SCHEMA"
    assert "colour" in exc_info.value.diagnostics[0].source


def test_blank_command_is_rejected():
    with pytest.raises(ConfigError):
        validate_config_data({"commands": [{"command": "   "}]})


def test_invalid_toml_reports_parse_error():
    with pytest.raises(ConfigError) as exc_info:
        parse_config_text("commands = [", "toml", source="bad.toml")

    assert exc_info.value.diagnostics[0].error_code == "ERR_PARSE"
    assert exc_info.value.diagnostics[0].source == "bad.toml"


def test_top_level_list_is_rejected():
    with pytest.raises(ConfigError) as exc_info:
        parse_config_text("- echo hi\n", "yaml")

    assert exc_info.value.diagnostics[0].error_code == "ERR_SCHEMA"


def test_missing_file_fails(tmp_path):
    with pytest.raises(ConfigError) as exc_info:
        load_config(tmp_path / "missing.toml")

    assert exc_info.value.diagnostics[0].error_code == "ERR_NOT_FOUND"


def test_relative_working_directory_resolves_against_config_dir(tmp_path):
    (tmp_path / "app").mkdir()
    path = tmp_path / "together.yaml"
    path.write_text("working_directory: app\ncommands:\n  - command: ls\n")

    config = load_config(path)

    assert config.working_directory == str((tmp_path / "app").resolve())


def test_config_from_commands_builds_non_auto_start_entries():
    config = config_from_commands(["echo a", "sleep 1"])

    assert [entry.alias for entry in config.commands] == ["echo a", "sleep 1"]
    assert not any(entry.auto_start for entry in config.commands)


def test_config_from_commands_rejects_duplicates():
    with pytest.raises(DuplicateAliasError):
        config_from_commands(["echo a", "echo a"])


def test_dump_config_yaml_and_json_round_trip():
    config = validate_config_data(yaml.safe_load(YAML_CONFIG))

    assert validate_config_data(yaml.safe_load(dump_config(config))) == config
    assert validate_config_data(json.loads(dump_config(config, "json"))) == config


def test_save_config_writes_by_suffix(tmp_path):
    config = config_from_commands(["echo a"])

    target = save_config(tmp_path / "out" / "together.json", config)

    assert json.loads(target.read_text())["commands"][0]["command"] == "echo a"
    assert load_config(target) == config


def test_save_config_refuses_toml(tmp_path):
    with pytest.raises(ConfigError) as exc_info:
        save_config(tmp_path / "together.toml", config_from_commands(["echo a"]))

    assert exc_info.value.diagnostics[0].error_code == "ERR_UNSUPPORTED_SYNTAX"
