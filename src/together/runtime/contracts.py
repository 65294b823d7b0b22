from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ProcessState(str, Enum):
    """Lifecycle states of one run of a command."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"
    EXITED = "exited"
    CRASHED = "crashed"
    KILLED = "killed"
    UNRESPONSIVE = "unresponsive"


class ProcessEvent(str, Enum):
    """Events that drive process state transitions."""

    START = "start"
    RESTART = "restart"
    SPAWN_FAILED = "spawn_failed"
    SPAWN_CONFIRMED = "spawn_confirmed"
    EXIT_OK = "exit_ok"
    EXIT_FAILED = "exit_failed"
    KILL_COMPLETE = "kill_complete"
    KILL_FAILED = "kill_failed"


LIVE_STATES = frozenset({ProcessState.STARTING, ProcessState.RUNNING})
TERMINAL_STATES = frozenset({ProcessState.EXITED, ProcessState.CRASHED, ProcessState.KILLED})
STARTABLE_STATES = frozenset({ProcessState.IDLE}) | TERMINAL_STATES
# unresponsive children may still exit, so they are watched like live ones
OUTSTANDING_STATES = LIVE_STATES | {ProcessState.UNRESPONSIVE}

_EXIT_EVENTS = {
    ProcessEvent.EXIT_OK: ProcessState.EXITED,
    ProcessEvent.EXIT_FAILED: ProcessState.CRASHED,
    ProcessEvent.KILL_COMPLETE: ProcessState.KILLED,
}


def transition_process_state(current: ProcessState, event: ProcessEvent) -> ProcessState:
    """Compute the next process state for a given event.

    Terminal states accept no events: a later start or restart creates a
    new run instead of reviving the old one. Invalid transitions raise
    ValueError.
    """

    if current == ProcessState.IDLE:
        if event == ProcessEvent.START:
            return ProcessState.STARTING
        if event == ProcessEvent.RESTART:
            return ProcessState.RESTARTING
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current == ProcessState.RESTARTING:
        if event == ProcessEvent.START:
            return ProcessState.STARTING
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current == ProcessState.STARTING:
        if event == ProcessEvent.SPAWN_FAILED:
            return ProcessState.CRASHED
        if event == ProcessEvent.SPAWN_CONFIRMED:
            return ProcessState.RUNNING
        if event == ProcessEvent.KILL_FAILED:
            return ProcessState.UNRESPONSIVE
        if event in _EXIT_EVENTS:
            return _EXIT_EVENTS[event]
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current == ProcessState.RUNNING:
        if event == ProcessEvent.KILL_FAILED:
            return ProcessState.UNRESPONSIVE
        if event in _EXIT_EVENTS:
            return _EXIT_EVENTS[event]
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current == ProcessState.UNRESPONSIVE:
        if event in _EXIT_EVENTS:
            return _EXIT_EVENTS[event]
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    if current in TERMINAL_STATES:
        raise ValueError(f"Invalid process transition: {current} -> {event}")

    raise ValueError(f"Unknown process state: {current}")


class OutputMode(str, Enum):
    """How child stdout/stderr reach the operator."""

    RAW = "raw"
    CAPTURED = "captured"


class SessionPhase(str, Enum):
    """Coarse phases of one orchestrated session."""

    IDLE = "idle"
    STARTUP = "startup"
    STARTUP_FAILED = "startup_failed"
    READY = "ready"
    SELECTING = "selecting"
    CONCURRENT = "concurrent"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class SessionExitCode(IntEnum):
    """Process exit codes of a together session."""

    OK = 0
    CONFIG_ERROR = 1
    STARTUP_FAILED = 2
    FORCED_SHUTDOWN = 3
    COMMAND_FAILED = 4


class RequestKind(str, Enum):
    """Requests accepted by the orchestrator loop."""

    RUN_STARTUP = "run_startup"
    RUN_CONCURRENT = "run_concurrent"
    TRIGGER = "trigger"
    KILL = "kill"
    RESTART = "restart"
    TOGGLE_SELECT = "toggle_select"
    CONFIRM_START = "confirm_start"
    TRIGGER_RECIPES = "trigger_recipes"
    SWITCH_RECIPE = "switch_recipe"
    RETRIGGER_LAST = "retrigger_last"
    SNAPSHOT = "snapshot"
    SHUTDOWN = "shutdown"
    FORCE_SHUTDOWN = "force_shutdown"


class ActionResult(BaseModel):
    """Outcome of one orchestrator request."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    message: str = ""
    alias: Optional[str] = None
    state: Optional[ProcessState] = None
    aliases: Tuple[str, ...] = ()


class ShutdownReport(BaseModel):
    """Outcome of a completed shutdown."""

    model_config = ConfigDict(frozen=True)

    killed: Tuple[str, ...] = ()
    forced: Tuple[str, ...] = ()
    unresponsive: Tuple[str, ...] = ()
    # set when the loop died and stopped children without waiting for them
    aborted: Optional[str] = None

    @property
    def clean(self) -> bool:
        return not self.forced and not self.unresponsive and self.aborted is None


class ProcessSnapshot(BaseModel):
    """Read-only view of one command for the controller."""

    model_config = ConfigDict(frozen=True)

    alias: str
    command: str
    state: ProcessState
    restart_count: int = 0
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    cause: Optional[str] = None
    recipes: Tuple[str, ...] = ()
    output_tail: Tuple[str, ...] = ()


class OrchestratorSnapshot(BaseModel):
    """Read-only view of the whole session for the controller."""

    model_config = ConfigDict(frozen=True)

    phase: SessionPhase
    processes: Tuple[ProcessSnapshot, ...] = ()
    selectable: Tuple[str, ...] = ()
    selection: Tuple[str, ...] = ()
    last_triggered: Optional[str] = None

    def get(self, alias: str) -> ProcessSnapshot:
        for process in self.processes:
            if process.alias == alias:
                return process
        raise KeyError(f"'{alias}' not found in snapshot.")

    def live(self) -> List[ProcessSnapshot]:
        return [process for process in self.processes if process.state in LIVE_STATES]


@dataclass(frozen=True)
class StateChange:
    """Notification that one run moved between states."""

    alias: str
    run_id: int
    previous: ProcessState
    current: ProcessState
    restart_count: int = 0
    pid: Optional[int] = None
    exit_code: Optional[int] = None
    cause: Optional[str] = None


@dataclass(frozen=True)
class OutputLine:
    """One captured line of child output, tagged with its command."""

    alias: str
    run_id: int
    stream: str
    line: str


@dataclass(frozen=True)
class PhaseChange:
    """Notification that the session moved to a new phase."""

    previous: SessionPhase
    current: SessionPhase
    detail: str = ""


@dataclass(frozen=True)
class AllFinished:
    """Notification that every launched command has reached a terminal state."""

    aliases: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class ListenerFailed:
    """A listener raised while handling a notification; the others still got it."""

    listener: str
    notification: str
    error: str


class ControllerAction(str, Enum):
    """Discrete operator actions produced by the interactive controller."""

    TOGGLE_SELECT = "toggle-select"
    CONFIRM_START = "confirm-start"
    TRIGGER = "trigger"
    KILL = "kill"
    RESTART = "restart"
    SHOW_HELP = "show-help"
    QUIT = "quit"
    RETRIGGER_LAST = "retrigger-last"
    TRIGGER_RECIPES = "trigger-recipes"
    SWITCH_RECIPE = "switch-recipe"
    LIST = "list"
    DUMP = "dump"


KEY_BINDINGS: List[Tuple[str, ControllerAction, str]] = [
    ("s", ControllerAction.TOGGLE_SELECT, "Toggle a command in the pre-launch selection."),
    ("c", ControllerAction.CONFIRM_START, "Confirm the selection and start it."),
    ("t", ControllerAction.TRIGGER, "Trigger a one-time run of a command."),
    (".", ControllerAction.RETRIGGER_LAST, "Re-trigger the last triggered command."),
    ("b", ControllerAction.TRIGGER_RECIPES, "Batch trigger every command of one or more recipes."),
    ("z", ControllerAction.SWITCH_RECIPE, "Switch to a single recipe, stopping everything else."),
    ("k", ControllerAction.KILL, "Kill a running command."),
    ("r", ControllerAction.RESTART, "Restart a command."),
    ("l", ControllerAction.LIST, "List every command and its state."),
    ("d", ControllerAction.DUMP, "Dump the current configuration."),
    ("h", ControllerAction.SHOW_HELP, "Show this help message (also '?')."),
    ("q", ControllerAction.QUIT, "Stop every command and quit."),
]

ALIAS_ACTIONS = frozenset(
    {
        ControllerAction.TOGGLE_SELECT,
        ControllerAction.TRIGGER,
        ControllerAction.KILL,
        ControllerAction.RESTART,
        ControllerAction.SWITCH_RECIPE,
    }
)


class ControllerCommand(BaseModel):
    """Exactly one operator action, with its target names when it needs them."""

    model_config = ConfigDict(frozen=True)

    action: ControllerAction
    names: Tuple[str, ...] = Field(default_factory=tuple)

    @property
    def target(self) -> Optional[str]:
        return self.names[0] if self.names else None
