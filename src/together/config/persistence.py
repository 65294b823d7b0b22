from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import List

from pydantic import BaseModel, Field, ValidationError

from together.config.loader import validate_config_data
from together.core.models import RunOptions, TogetherConfig, TogetherSettings
from together.utils.diagnostics import ConfigError, TogetherDiagnostic


class LastRun(BaseModel):
    """Persisted description of the last resolved run."""

    config: TogetherConfig
    options: RunOptions = Field(default_factory=RunOptions)
    selected: List[str] = Field(default_factory=list)
    saved_at: str = ""


def utc_now_iso() -> str:
    """Return the current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def last_run_path(settings: TogetherSettings) -> Path:
    """Return the user-scoped file holding the last resolved run."""
    return settings.resolved_state_dir() / "last_run.json"


def write_last_run(settings: TogetherSettings, last_run: LastRun) -> Path:
    """Persist the last resolved run for `together rerun`."""
    state_file = last_run_path(settings)
    state_file.parent.mkdir(parents=True, exist_ok=True)
    if not last_run.saved_at:
        last_run = last_run.model_copy(update={"saved_at": utc_now_iso()})
    state_file.write_text(last_run.model_dump_json(indent=2, exclude_none=True), encoding="utf-8")
    return state_file


def read_last_run(settings: TogetherSettings) -> LastRun:
    """
    Load the last resolved run, revalidating its config.

    Raises ConfigError when nothing was saved or the file is unreadable.
    """
    state_file = last_run_path(settings)
    source = str(state_file)
    if not state_file.exists():
        raise ConfigError(
            "No saved run to rerun",
            [
                TogetherDiagnostic(
                    source=source,
                    error_code="ERR_NO_SAVED_RUN",
                    message="No previous run has been saved yet.",
                    suggestion="Start a session with `together run` or `together load` first.",
                )
            ],
        )

    try:
        payload = json.loads(state_file.read_text(encoding="utf-8"))
        last_run = LastRun.model_validate(payload)
    except (OSError, json.JSONDecodeError, ValidationError) as exc:
        raise ConfigError(
            "Saved run state is invalid",
            [TogetherDiagnostic(source=source, error_code="ERR_SAVED_RUN", message=str(exc))],
        ) from exc

    config = validate_config_data(last_run.config.model_dump(mode="json"), source=source)
    return last_run.model_copy(update={"config": config})


def clear_last_run(settings: TogetherSettings) -> bool:
    """Delete saved run state; returns whether anything was removed."""
    state_file = last_run_path(settings)
    if state_file.exists():
        state_file.unlink()
        return True
    return False
