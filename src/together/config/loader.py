import json
import tomllib
import yaml
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence
from pydantic import ValidationError

from together.core.models import (
    SUPPORTED_CONFIG_MAJOR,
    CommandEntry,
    TogetherConfig,
    parse_major_version,
)
from together.utils.diagnostics import (
    ConfigError,
    ConfigVersionError,
    DuplicateAliasError,
    TogetherDiagnostic,
    UnknownReferenceError,
)

TOML_SUFFIXES = {".toml"}
YAML_SUFFIXES = {".yml", ".yaml"}
JSON_SUFFIXES = {".json"}


def detect_syntax(path: Path) -> str:
    """Pick the surface syntax for a config path from its suffix."""
    suffix = path.suffix.lower()
    if suffix in TOML_SUFFIXES:
        return "toml"
    if suffix in JSON_SUFFIXES:
        return "json"
    return "yaml"


def parse_config_text(content: str, syntax: str, source: str = "<string>") -> Dict[str, Any]:
    """
    Decode one surface syntax into a plain mapping.

    Raises ConfigError when the text is not valid for the syntax or the
    document is not a mapping.
    """
    try:
        if syntax == "toml":
            data = tomllib.loads(content)
        elif syntax == "json":
            data = json.loads(content)
        else:
            data = yaml.safe_load(content)
    except (tomllib.TOMLDecodeError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(
            f"Invalid {syntax.upper()} in {source}",
            [TogetherDiagnostic(source=source, error_code="ERR_PARSE", message=str(exc))],
        ) from exc

    if data is None:
        data = {}

    if not isinstance(data, dict):
        raise ConfigError(
            f"Config in {source} must be a mapping",
            [
                TogetherDiagnostic(
                    source=source,
                    error_code="ERR_SCHEMA",
                    message=f"Expected a mapping at the top level, got {type(data).__name__}.",
                )
            ],
        )
    return data


def _schema_diagnostics(exc: ValidationError, source: str) -> List[TogetherDiagnostic]:
    diagnostics = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        diagnostics.append(
            TogetherDiagnostic(
                source=f"{source}:{location}" if location else source,
                error_code="ERR_SCHEMA",
                message=error.get("msg", "invalid value"),
            )
        )
    return diagnostics


def check_version(version: str, source: str = "<string>") -> None:
    """Fail fast when the config major version is not supported."""
    try:
        major = parse_major_version(version)
    except ValueError as exc:
        raise ConfigVersionError(
            f"Unsupported config version '{version}'",
            [TogetherDiagnostic(source=source, error_code="ERR_VERSION", message=str(exc))],
        ) from exc

    if major != SUPPORTED_CONFIG_MAJOR:
        raise ConfigVersionError(
            f"Unsupported config version '{version}'",
            [
                TogetherDiagnostic(
                    source=source,
                    error_code="ERR_VERSION",
                    message=f"Major version {major} is not supported (expected {SUPPORTED_CONFIG_MAJOR}.x).",
                    suggestion="Upgrade together or rewrite the config for the supported version.",
                )
            ],
        )


def _with_default_aliases(config: TogetherConfig) -> TogetherConfig:
    commands = [
        entry if entry.alias else entry.model_copy(update={"alias": entry.command})
        for entry in config.commands
    ]
    return config.model_copy(update={"commands": commands})


def _check_duplicate_aliases(config: TogetherConfig, source: str) -> None:
    seen = set()
    duplicates = []
    for entry in config.commands:
        if entry.alias in seen and entry.alias not in duplicates:
            duplicates.append(entry.alias)
        seen.add(entry.alias)

    if duplicates:
        raise DuplicateAliasError(
            f"Duplicate command alias: {', '.join(duplicates)}",
            [
                TogetherDiagnostic(
                    source=source,
                    error_code="ERR_DUPLICATE_ALIAS",
                    message=f"Alias '{alias}' is declared more than once.",
                    suggestion="Give each command a unique `alias`.",
                )
                for alias in duplicates
            ],
        )


def find_command_entry(config: TogetherConfig, reference: str) -> Optional[CommandEntry]:
    """Resolve a reference by alias first, then by literal command text."""
    for entry in config.commands:
        if entry.alias == reference:
            return entry
    for entry in config.commands:
        if entry.command == reference:
            return entry
    return None


def _is_command_text(reference: str) -> bool:
    return len(reference.split()) > 1


def _with_implicit_startup_commands(config: TogetherConfig) -> TogetherConfig:
    """
    Declare startup entries written as bare command text.

    `startup = ["echo A"]` runs `echo A` even when no entry declares it;
    such commands never auto-start. Single words stay alias references.
    """
    commands = list(config.commands)
    declared = {entry.alias for entry in commands} | {entry.command for entry in commands}
    for reference in config.startup:
        if reference in declared or not _is_command_text(reference):
            continue
        commands.append(CommandEntry(alias=reference, command=reference))
        declared.add(reference)

    if len(commands) == len(config.commands):
        return config
    return config.model_copy(update={"commands": commands})


def _check_references(config: TogetherConfig, source: str) -> None:
    diagnostics = [
        TogetherDiagnostic(
            source=f"{source}:startup",
            error_code="ERR_UNKNOWN_REFERENCE",
            message=f"Startup entry '{reference}' does not match any declared command.",
        )
        for reference in config.startup
        if find_command_entry(config, reference) is None
    ]

    for entry in config.commands:
        for recipe in entry.recipes:
            if not recipe.strip():
                diagnostics.append(
                    TogetherDiagnostic(
                        source=f"{source}:commands.{entry.alias}",
                        error_code="ERR_UNKNOWN_REFERENCE",
                        message="Recipe names cannot be blank.",
                    )
                )

    if diagnostics:
        raise UnknownReferenceError("Config references undeclared commands", diagnostics)


def validate_config_data(
    data: Dict[str, Any],
    source: str = "<string>",
    base_dir: Optional[Path] = None,
) -> TogetherConfig:
    """
    Validate a decoded mapping into a canonical TogetherConfig.

    Steps run in a fixed order and the first failure aborts the load:
    schema, version, default aliases, duplicate aliases, references.
    """
    try:
        config = TogetherConfig.model_validate(data)
    except ValidationError as exc:
        raise ConfigError(f"Invalid config schema in {source}", _schema_diagnostics(exc, source)) from exc

    check_version(config.version, source)
    config = _with_default_aliases(config)
    _check_duplicate_aliases(config, source)
    config = _with_implicit_startup_commands(config)
    _check_references(config, source)

    if config.working_directory and base_dir is not None:
        working_directory = Path(config.working_directory).expanduser()
        if not working_directory.is_absolute():
            working_directory = (base_dir / working_directory).resolve()
        config = config.model_copy(update={"working_directory": str(working_directory)})

    return config


def load_config(path: Path) -> TogetherConfig:
    """
    Load and validate a together config file (TOML, YAML or JSON).
    """
    source = str(path)
    if not path.exists():
        raise ConfigError(
            f"Config file '{path}' not found",
            [TogetherDiagnostic(source=source, error_code="ERR_NOT_FOUND", message="File does not exist.")],
        )

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(
            f"Unable to read config file '{path}'",
            [TogetherDiagnostic(source=source, error_code="ERR_READ", message=str(exc))],
        ) from exc

    data = parse_config_text(content, detect_syntax(path), source)
    return validate_config_data(data, source=source, base_dir=path.parent.resolve())


def config_from_commands(
    commands: Sequence[str],
    startup: Iterable[str] = (),
    working_directory: Optional[str] = None,
) -> TogetherConfig:
    """Build a validated config for ad-hoc commands given on the command line."""
    data: Dict[str, Any] = {
        "startup": list(startup),
        "commands": [{"command": command} for command in commands],
    }
    if working_directory:
        data["working_directory"] = working_directory
    return validate_config_data(data, source="<command line>", base_dir=Path.cwd())


def dump_config(config: TogetherConfig, syntax: str = "yaml") -> str:
    """Serialize a config with explicit aliases into YAML or JSON text."""
    payload = config.model_dump(mode="json", exclude_none=True)
    if syntax == "json":
        return json.dumps(payload, indent=2) + "\n"
    return yaml.safe_dump(payload, sort_keys=False)


def save_config(destination: Path, config: TogetherConfig) -> Path:
    """Write a config to disk as YAML or JSON, chosen by suffix."""
    syntax = detect_syntax(destination)
    if syntax == "toml":
        raise ConfigError(
            f"Cannot save '{destination}'",
            [
                TogetherDiagnostic(
                    source=str(destination),
                    error_code="ERR_UNSUPPORTED_SYNTAX",
                    message="Saving TOML is not supported.",
                    suggestion="Use a .yaml, .yml or .json destination.",
                )
            ],
        )

    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(dump_config(config, syntax), encoding="utf-8")
    return destination
