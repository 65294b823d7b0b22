import os
import re
from pathlib import Path
from typing import Any, List, Optional, Tuple
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_VERSION_PATTERN = re.compile(r"^v?(\d+)(?:\.(\d+))?(?:\.(\d+))?(?:[-+].*)?$")

SUPPORTED_CONFIG_MAJOR = 0


def parse_major_version(version: str) -> int:
    """Return the major component of a semver-like version string."""
    match = _VERSION_PATTERN.fullmatch(version.strip())
    if match is None:
        raise ValueError(f"Unparsable version '{version}'.")
    return int(match.group(1))


class TogetherSettings(BaseSettings):
    """
    Process-level settings, read from TOGETHER_* environment variables.
    """
    model_config = SettingsConfigDict(env_prefix='TOGETHER_', extra='ignore')

    grace_timeout_seconds: float = Field(default=3.0, gt=0)
    force_timeout_seconds: float = Field(default=2.0, gt=0)
    output_tail_lines: int = Field(default=50, ge=1)
    state_dir: Optional[Path] = None
    verbose: bool = False

    def resolved_state_dir(self) -> Path:
        """Directory holding persisted run state for the current user."""
        if self.state_dir is not None:
            return self.state_dir.expanduser()
        config_home = os.environ.get("XDG_CONFIG_HOME")
        base = Path(config_home) if config_home else Path.home() / ".config"
        return base / "together"


class CommandEntry(BaseModel):
    """
    One entry of the `commands` list as written in a config file.
    """
    model_config = ConfigDict(extra='forbid')

    alias: Optional[str] = None
    command: str = Field(..., min_length=1)
    recipes: List[str] = Field(default_factory=list)
    active: bool = False
    default: bool = False

    @field_validator("command")
    @classmethod
    def _command_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("command cannot be blank")
        return value

    @property
    def auto_start(self) -> bool:
        return self.active or self.default


class TogetherConfig(BaseModel):
    """
    Canonical configuration model. Every surface syntax decodes into this.
    """
    model_config = ConfigDict(extra='forbid')

    version: str = "0.4.0"
    startup: List[str] = Field(default_factory=list)
    commands: List[CommandEntry] = Field(default_factory=list)
    working_directory: Optional[str] = None

    @field_validator("version", mode="before")
    @classmethod
    def _coerce_version(cls, value: Any) -> Any:
        # YAML reads `version: 1.0` as a float
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class RunOptions(BaseModel):
    """
    Session flags selected on the command line.
    """
    model_config = ConfigDict(extra='ignore')

    raw: bool = False
    all: bool = False
    recipes: List[str] = Field(default_factory=list)
    exit_on_error: bool = False
    quit_on_completion: bool = False
    init_only: bool = False


class CommandSpec(BaseModel):
    """
    Immutable, validated description of one command for a session.
    """
    model_config = ConfigDict(frozen=True)

    alias: str
    command: str
    recipes: Tuple[str, ...] = ()
    startup_order_index: Optional[int] = None
    auto_start: bool = False
