from __future__ import annotations

import itertools
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional

import psutil

from together.core.models import CommandSpec
from together.runtime.contracts import (
    LIVE_STATES,
    OUTSTANDING_STATES,
    STARTABLE_STATES,
    OutputLine,
    OutputMode,
    ProcessEvent,
    ProcessSnapshot,
    ProcessState,
    StateChange,
    transition_process_state,
)
from together.utils.diagnostics import SignalDeliveryError, SpawnError

# bounded wait for reader threads to drain before the exit event is posted
_READER_DRAIN_SECONDS = 1.0


@dataclass(frozen=True)
class ChildExited:
    """Posted by the exit watcher thread once a child has terminated."""

    alias: str
    run_id: int
    returncode: int


@dataclass
class RuntimeProcess:
    """One run of a command. A restart always creates a new instance."""

    run_id: int
    spec: CommandSpec
    output_tail: Deque[str]
    state: ProcessState = ProcessState.IDLE
    restart_count: int = 0
    pid: Optional[int] = None
    started_at: Optional[float] = None
    exit_code: Optional[int] = None
    cause: Optional[str] = None
    kill_requested: bool = False
    forced: bool = False
    popen: Optional[subprocess.Popen] = field(default=None, repr=False)
    descendants: List[psutil.Process] = field(default_factory=list, repr=False)


def is_process_alive(pid: Optional[int]) -> bool:
    """Return True when a process id is alive on this host and not a zombie."""
    if pid is None or pid <= 0:
        return False

    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        return True


def describe_returncode(returncode: int) -> str:
    """Render a non-zero Popen return code as an exit code or signal name."""
    if returncode >= 0:
        return f"exit code {returncode}"
    try:
        return f"signal {signal.Signals(-returncode).name}"
    except ValueError:
        return f"signal {-returncode}"


def collect_descendants(pid: int) -> List[psutil.Process]:
    """Return every descendant of a pid, or an empty list when it is gone."""
    try:
        return psutil.Process(pid).children(recursive=True)
    except psutil.NoSuchProcess:
        return []


class ProcessSupervisor:
    """
    Owns at most one child process at a time for one command and drives
    its lifecycle state machine.

    Every method is called from the orchestrator loop thread. The
    supervisor's own threads (exit watcher and output readers) never touch
    run state: they only post ChildExited and OutputLine events through
    `post`.
    """

    def __init__(
        self,
        spec: CommandSpec,
        post: Callable[[object], None],
        output_mode: OutputMode = OutputMode.CAPTURED,
        working_directory: Optional[str] = None,
        tail_lines: int = 50,
    ) -> None:
        self.spec = spec
        self.output_mode = output_mode
        self.working_directory = working_directory
        self.tail_lines = tail_lines
        self.current: Optional[RuntimeProcess] = None
        self._post = post
        self._run_ids = itertools.count(1)

    @property
    def alias(self) -> str:
        return self.spec.alias

    @property
    def state(self) -> ProcessState:
        if self.current is None:
            return ProcessState.IDLE
        return self.current.state

    @property
    def is_live(self) -> bool:
        return self.state in LIVE_STATES

    @property
    def is_outstanding(self) -> bool:
        return self.state in OUTSTANDING_STATES

    def start(self, restart: bool = False) -> List[StateChange]:
        """
        Create a new run and spawn its child.

        Returns the state changes in the order they happened. A spawn
        failure ends the run in `crashed` without reaching `running`.
        """
        if self.state not in STARTABLE_STATES:
            raise ValueError(f"'{self.alias}' cannot start while {self.state.value}.")

        previous = self.current
        restart_count = previous.restart_count if previous is not None else 0
        if restart:
            restart_count += 1

        run = RuntimeProcess(
            run_id=next(self._run_ids),
            spec=self.spec,
            output_tail=deque(maxlen=self.tail_lines),
            restart_count=restart_count,
        )
        self.current = run

        changes: List[StateChange] = []
        if restart:
            changes.append(self._apply(run, ProcessEvent.RESTART))
        changes.append(self._apply(run, ProcessEvent.START))

        try:
            popen = self._spawn()
        except SpawnError as exc:
            run.cause = f"SpawnError: {exc.reason}"
            changes.append(self._apply(run, ProcessEvent.SPAWN_FAILED))
            return changes

        run.popen = popen
        run.pid = popen.pid
        run.started_at = time.time()
        self._watch(run)

        # a child that already exited stays `starting` until its exit event lands
        if is_process_alive(popen.pid):
            changes.append(self._apply(run, ProcessEvent.SPAWN_CONFIRMED))
        return changes

    def begin_kill(self) -> None:
        """Send the graceful termination signal to the child's process group."""
        run = self._require_live()
        run.kill_requested = True
        run.descendants = collect_descendants(run.pid)
        self._signal_group(run, signal.SIGTERM)

    def escalate(self) -> None:
        """Forcefully terminate the child's process group and known descendants."""
        run = self._require_live()
        run.kill_requested = True
        run.forced = True
        if not run.descendants:
            run.descendants = collect_descendants(run.pid)

        failure: Optional[SignalDeliveryError] = None
        try:
            self._signal_group(run, signal.SIGKILL)
        except SignalDeliveryError as exc:
            failure = exc

        for proc in run.descendants:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                continue
            except psutil.AccessDenied as exc:
                failure = SignalDeliveryError(self.alias, "SIGKILL", f"pid {proc.pid}: {exc}")

        if failure is not None and is_process_alive(run.pid):
            raise failure

    def on_exit(self, run_id: int, returncode: int) -> Optional[StateChange]:
        """Fold an exit notification into the run; stale runs are ignored."""
        run = self.current
        if run is None or run.run_id != run_id or run.state not in OUTSTANDING_STATES:
            return None

        run.exit_code = returncode
        if run.kill_requested:
            run.cause = "SIGKILL" if run.forced else "SIGTERM"
            return self._apply(run, ProcessEvent.KILL_COMPLETE)

        if returncode == 0:
            return self._apply(run, ProcessEvent.EXIT_OK)

        run.cause = describe_returncode(returncode)
        return self._apply(run, ProcessEvent.EXIT_FAILED)

    def mark_unresponsive(self, reason: str) -> StateChange:
        """Record that forced termination could not be confirmed."""
        run = self._require_live()
        run.cause = reason
        return self._apply(run, ProcessEvent.KILL_FAILED)

    def append_output(self, run_id: int, line: str) -> None:
        run = self.current
        if run is not None and run.run_id == run_id:
            run.output_tail.append(line)

    def snapshot(self) -> ProcessSnapshot:
        run = self.current
        if run is None:
            return ProcessSnapshot(
                alias=self.alias,
                command=self.spec.command,
                state=ProcessState.IDLE,
                recipes=self.spec.recipes,
            )
        return ProcessSnapshot(
            alias=self.alias,
            command=self.spec.command,
            state=run.state,
            restart_count=run.restart_count,
            pid=run.pid,
            exit_code=run.exit_code,
            cause=run.cause,
            recipes=self.spec.recipes,
            output_tail=tuple(run.output_tail),
        )

    def _require_live(self) -> RuntimeProcess:
        run = self.current
        if run is None or run.state not in LIVE_STATES:
            raise ValueError(f"'{self.alias}' is not running.")
        return run

    def _apply(self, run: RuntimeProcess, event: ProcessEvent) -> StateChange:
        previous = run.state
        run.state = transition_process_state(previous, event)
        return StateChange(
            alias=self.alias,
            run_id=run.run_id,
            previous=previous,
            current=run.state,
            restart_count=run.restart_count,
            pid=run.pid,
            exit_code=run.exit_code,
            cause=run.cause,
        )

    def _spawn(self) -> subprocess.Popen:
        stdio = None if self.output_mode == OutputMode.RAW else subprocess.PIPE
        try:
            return subprocess.Popen(
                self.spec.command,
                shell=True,
                cwd=self.working_directory,
                stdin=subprocess.DEVNULL,
                stdout=stdio,
                stderr=stdio,
                start_new_session=True,
            )
        except OSError as exc:
            raise SpawnError(self.alias, str(exc)) from exc

    def _signal_group(self, run: RuntimeProcess, sig: signal.Signals) -> None:
        try:
            os.killpg(run.pid, sig)
        except ProcessLookupError:
            # group already gone, the exit event is on its way
            return
        except OSError as exc:
            raise SignalDeliveryError(self.alias, sig.name, str(exc)) from exc

    def _watch(self, run: RuntimeProcess) -> None:
        readers: List[threading.Thread] = []
        if self.output_mode == OutputMode.CAPTURED:
            for stream_name, pipe in (("stdout", run.popen.stdout), ("stderr", run.popen.stderr)):
                if pipe is None:
                    continue
                reader = threading.Thread(
                    target=self._read_stream,
                    args=(run.run_id, pipe, stream_name),
                    name=f"together-{stream_name}-{self.alias}",
                    daemon=True,
                )
                reader.start()
                readers.append(reader)

        watcher = threading.Thread(
            target=self._wait_for_exit,
            args=(run.run_id, run.popen, readers),
            name=f"together-exit-{self.alias}",
            daemon=True,
        )
        watcher.start()

    def _read_stream(self, run_id: int, pipe, stream_name: str) -> None:
        try:
            for raw_line in iter(pipe.readline, b""):
                line = raw_line.decode("utf-8", errors="replace").rstrip("\r\n")
                self._post(OutputLine(alias=self.alias, run_id=run_id, stream=stream_name, line=line))
        finally:
            pipe.close()

    def _wait_for_exit(self, run_id: int, popen: subprocess.Popen, readers: List[threading.Thread]) -> None:
        returncode = popen.wait()
        for reader in readers:
            reader.join(timeout=_READER_DRAIN_SECONDS)
        self._post(ChildExited(alias=self.alias, run_id=run_id, returncode=returncode))
