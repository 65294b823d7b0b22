from typing import List, Optional
from pydantic import BaseModel

class TogetherDiagnostic(BaseModel):
    """
    Standardized error reporting object for configuration and selection issues.
    """
    source: str
    error_code: str
    message: str
    severity: str = "error" # 'error', 'warning', 'critical'
    suggestion: Optional[str] = None

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message} (at {self.source})"

class TogetherError(Exception):
    """Base class for every error raised by together."""

class ConfigError(TogetherError):
    """
    Raised when a configuration cannot be parsed or validated.
    Loading is all-or-nothing, so no partial config survives one of these.
    """
    def __init__(self, message: str, diagnostics: Optional[List[TogetherDiagnostic]] = None):
        self.message = message
        self.diagnostics = list(diagnostics or [])
        super().__init__(message)

class ConfigVersionError(ConfigError):
    """Raised when the config `version` major component is not supported."""

class DuplicateAliasError(ConfigError):
    """Raised when two commands in one config share an alias."""

class UnknownReferenceError(ConfigError):
    """Raised when a startup entry, recipe or selector names nothing declared."""

class SpawnError(TogetherError):
    """Raised when the OS cannot create a child process."""
    def __init__(self, alias: str, reason: str):
        self.alias = alias
        self.reason = reason
        super().__init__(f"Failed to spawn '{alias}': {reason}")

class SignalDeliveryError(TogetherError):
    """Raised when a termination signal cannot be delivered to a child."""
    def __init__(self, alias: str, signal_name: str, reason: str):
        self.alias = alias
        self.signal_name = signal_name
        self.reason = reason
        super().__init__(f"Could not deliver {signal_name} to '{alias}': {reason}")

class OrchestratorStoppedError(TogetherError):
    """Raised for requests submitted after the orchestrator loop has stopped."""
