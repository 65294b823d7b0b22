"""Process supervision, orchestration and session lifecycle."""

from together.runtime.contracts import (
	ActionResult,
	AllFinished,
	ListenerFailed,
	OrchestratorSnapshot,
	OutputLine,
	PhaseChange,
	ProcessSnapshot,
	ProcessState,
	SessionExitCode,
	SessionPhase,
	ShutdownReport,
	StateChange,
)
from together.runtime.interrupt import InterruptGuard
from together.runtime.orchestrator import Orchestrator
from together.runtime.session import RunSession, SessionLaunch

__all__ = [
	"ActionResult",
	"AllFinished",
	"InterruptGuard",
	"ListenerFailed",
	"Orchestrator",
	"OrchestratorSnapshot",
	"OutputLine",
	"PhaseChange",
	"ProcessSnapshot",
	"ProcessState",
	"RunSession",
	"SessionExitCode",
	"SessionLaunch",
	"SessionPhase",
	"ShutdownReport",
	"StateChange",
]
