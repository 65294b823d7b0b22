from __future__ import annotations

import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set, Tuple

from together.core.models import TogetherSettings
from together.core.registry import CommandRegistry, Selector
from together.runtime.contracts import (
    LIVE_STATES,
    STARTABLE_STATES,
    ActionResult,
    AllFinished,
    ListenerFailed,
    OrchestratorSnapshot,
    OutputLine,
    OutputMode,
    PhaseChange,
    ProcessState,
    RequestKind,
    SessionPhase,
    ShutdownReport,
    StateChange,
)
from together.runtime.supervisor import ChildExited, ProcessSupervisor
from together.utils.diagnostics import OrchestratorStoppedError, SignalDeliveryError, TogetherError

Listener = Callable[[object], None]

# phases in which operator-driven launches are accepted
_LAUNCH_PHASES = frozenset({SessionPhase.READY, SessionPhase.SELECTING, SessionPhase.CONCURRENT})
_PRE_LAUNCH_PHASES = frozenset({SessionPhase.READY, SessionPhase.SELECTING})


@dataclass(frozen=True)
class _Request:
    kind: RequestKind
    future: Future
    alias: Optional[str] = None
    names: Tuple[str, ...] = ()
    selector: Optional[Selector] = None


@dataclass(frozen=True)
class _KillDeadline:
    alias: str
    run_id: int
    forced: bool


class Orchestrator:
    """
    Single writer of session run state.

    Requests from callers and events from supervisor threads share one
    queue that a dedicated loop thread drains one item at a time, so the
    supervisor table, the startup cursor and the selection never need a
    lock. Every public operation returns a Future.
    """

    def __init__(
        self,
        registry: CommandRegistry,
        settings: Optional[TogetherSettings] = None,
        output_mode: OutputMode = OutputMode.CAPTURED,
        working_directory: Optional[str] = None,
        exit_on_error: bool = False,
    ) -> None:
        self.registry = registry
        self.settings = settings or TogetherSettings()
        self.output_mode = output_mode
        self.exit_on_error = exit_on_error

        self._inbox: "queue.Queue[object]" = queue.Queue()
        self._supervisors: Dict[str, ProcessSupervisor] = {
            spec.alias: ProcessSupervisor(
                spec,
                post=self._inbox.put,
                output_mode=output_mode,
                working_directory=working_directory,
                tail_lines=self.settings.output_tail_lines,
            )
            for spec in registry
        }
        self._listeners: List[Listener] = []
        self.listener_failures: List[ListenerFailed] = []

        self._phase = SessionPhase.IDLE
        self._startup_queue = [spec.alias for spec in registry.startup_queue()]
        self._startup_cursor = 0
        self._startup_run: Optional[Tuple[str, int]] = None
        self._startup_future: Optional[Future] = None
        self._selection: List[str] = []
        self._last_triggered: Optional[str] = None
        self._launched: Set[str] = set()
        self._launched_selection: List[str] = []
        self._all_finished_reported = False

        self._kill_waiters: Dict[Tuple[str, int], List[Future]] = {}
        self._restart_waiters: Dict[str, List[Future]] = {}
        self._timers: List[threading.Timer] = []

        self._shutting_down = False
        self._shutdown_future: Optional[Future] = None
        self._shutdown_lock = threading.Lock()
        self._killed_in_shutdown: Set[str] = set()
        self._forced: Set[str] = set()
        self._unresponsive: Set[str] = set()
        self.failure: Optional[str] = None

        self._submit_lock = threading.Lock()
        self._stopped = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # -- public API ---------------------------------------------------------

    @property
    def launched_selection(self) -> List[str]:
        """Aliases launched by the concurrent phase, in launch order."""
        return list(self._launched_selection)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and not self._stopped.is_set()

    def add_listener(self, listener: Listener) -> None:
        """
        Register a callback for StateChange, OutputLine, PhaseChange,
        AllFinished and ListenerFailed. A listener that raises never stops
        the loop; the failure is reported to the other listeners.
        """
        self._listeners.append(listener)

    def start(self) -> None:
        """Start the orchestrator loop thread."""
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run_loop, name="together-orchestrator", daemon=True)
        self._thread.start()

    def wait_stopped(self, timeout: Optional[float] = None) -> bool:
        """Block until the loop has stopped after a shutdown."""
        return self._stopped.wait(timeout)

    def run_startup(self) -> Future:
        return self._submit(RequestKind.RUN_STARTUP)

    def run_concurrent(self, selector: Optional[Selector] = None) -> Future:
        return self._submit(RequestKind.RUN_CONCURRENT, selector=selector)

    def trigger(self, alias: str) -> Future:
        return self._submit(RequestKind.TRIGGER, alias=alias)

    def kill(self, alias: str) -> Future:
        return self._submit(RequestKind.KILL, alias=alias)

    def restart(self, alias: str) -> Future:
        return self._submit(RequestKind.RESTART, alias=alias)

    def toggle_select(self, alias: str) -> Future:
        return self._submit(RequestKind.TOGGLE_SELECT, alias=alias)

    def confirm_start(self) -> Future:
        return self._submit(RequestKind.CONFIRM_START)

    def trigger_recipes(self, names: Tuple[str, ...]) -> Future:
        return self._submit(RequestKind.TRIGGER_RECIPES, names=tuple(names))

    def switch_recipe(self, name: str) -> Future:
        return self._submit(RequestKind.SWITCH_RECIPE, names=(name,))

    def retrigger_last(self) -> Future:
        return self._submit(RequestKind.RETRIGGER_LAST)

    def snapshot(self) -> Future:
        return self._submit(RequestKind.SNAPSHOT)

    def shutdown(self) -> Future:
        """
        Stop every live command and then the loop.

        Idempotent: every call returns the same Future, which resolves to
        a ShutdownReport once no child is left running.
        """
        with self._shutdown_lock:
            if self._shutdown_future is not None:
                return self._shutdown_future
            self._shutdown_future = Future()
            future = self._shutdown_future

        if self._thread is None or self._stopped.is_set():
            self._stopped.set()
            future.set_result(ShutdownReport())
            return future

        self._put(_Request(kind=RequestKind.SHUTDOWN, future=future))
        return future

    def force_shutdown(self) -> Future:
        """Shut down, escalating every pending termination to SIGKILL now."""
        future = self.shutdown()
        if not future.done():
            self._submit(RequestKind.FORCE_SHUTDOWN)
        return future

    # -- queue plumbing -----------------------------------------------------

    def _submit(
        self,
        kind: RequestKind,
        alias: Optional[str] = None,
        names: Tuple[str, ...] = (),
        selector: Optional[Selector] = None,
    ) -> Future:
        future: Future = Future()
        self._put(_Request(kind=kind, future=future, alias=alias, names=names, selector=selector))
        return future

    def _put(self, request: _Request) -> None:
        with self._submit_lock:
            if self._thread is None or self._stopped.is_set():
                request.future.set_exception(OrchestratorStoppedError(f"Cannot {request.kind.value}: orchestrator is not running."))
                return
            self._inbox.put(request)

    def _run_loop(self) -> None:
        handlers = {
            _Request: self._handle_request,
            ChildExited: self._handle_exit,
            OutputLine: self._handle_output,
            _KillDeadline: self._handle_deadline,
        }
        try:
            while self._phase != SessionPhase.STOPPED:
                item = self._inbox.get()
                handlers[type(item)](item)
        except Exception as exc:
            self._abort(exc)
            raise
        finally:
            self._close()

    def _abort(self, exc: Exception) -> None:
        """
        Stop every child without waiting once the loop itself has failed.

        Children get SIGKILL right away since no exit event will be handled
        any more; the shutdown future resolves to a report that is never clean.
        """
        reason = f"{type(exc).__name__}: {exc}"
        forced: List[str] = []
        for supervisor in self._supervisors.values():
            if not supervisor.is_live:
                continue
            try:
                supervisor.escalate()
            except SignalDeliveryError:
                self._unresponsive.add(supervisor.alias)
                continue
            forced.append(supervisor.alias)

        report = ShutdownReport(
            killed=tuple(sorted(set(forced) | self._unresponsive)),
            forced=tuple(sorted(forced)),
            unresponsive=tuple(sorted(self._unresponsive)),
            aborted=reason,
        )

        with self._shutdown_lock:
            if self._shutdown_future is None:
                self._shutdown_future = Future()
        self._resolve(self._shutdown_future, report)

        stopped = OrchestratorStoppedError(f"Orchestrator loop failed: {reason}")
        pending = [self._startup_future]
        pending.extend(future for futures in self._kill_waiters.values() for future in futures)
        pending.extend(future for futures in self._restart_waiters.values() for future in futures)
        for future in pending:
            if future is not None and not future.done():
                future.set_exception(stopped)
        self._kill_waiters.clear()
        self._restart_waiters.clear()

        self._shutting_down = True
        self._set_phase(SessionPhase.STOPPED, detail=reason)

    def _close(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers.clear()

        with self._submit_lock:
            self._stopped.set()
            while True:
                try:
                    item = self._inbox.get_nowait()
                except queue.Empty:
                    break
                if isinstance(item, _Request) and not item.future.done():
                    item.future.set_exception(OrchestratorStoppedError("Orchestrator stopped before handling the request."))

    def _emit(self, notification: object) -> None:
        failures = []
        for listener in list(self._listeners):
            try:
                listener(notification)
            except Exception as exc:
                failures.append(
                    ListenerFailed(
                        listener=getattr(listener, "__qualname__", repr(listener)),
                        notification=type(notification).__name__,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                )

        # failures while reporting a failure are not reported again
        if isinstance(notification, ListenerFailed):
            return
        for failure in failures:
            self.listener_failures.append(failure)
            self._emit(failure)

    def _set_phase(self, phase: SessionPhase, detail: str = "") -> None:
        if phase == self._phase:
            return
        previous = self._phase
        self._phase = phase
        self._emit(PhaseChange(previous=previous, current=phase, detail=detail))

    @staticmethod
    def _resolve(future: Optional[Future], result: object) -> None:
        if future is not None and not future.done():
            future.set_result(result)

    # -- requests -----------------------------------------------------------

    def _handle_request(self, request: _Request) -> None:
        handlers = {
            RequestKind.RUN_STARTUP: self._req_run_startup,
            RequestKind.RUN_CONCURRENT: self._req_run_concurrent,
            RequestKind.TRIGGER: self._req_trigger,
            RequestKind.KILL: self._req_kill,
            RequestKind.RESTART: self._req_restart,
            RequestKind.TOGGLE_SELECT: self._req_toggle_select,
            RequestKind.CONFIRM_START: self._req_confirm_start,
            RequestKind.TRIGGER_RECIPES: self._req_trigger_recipes,
            RequestKind.SWITCH_RECIPE: self._req_switch_recipe,
            RequestKind.RETRIGGER_LAST: self._req_retrigger_last,
            RequestKind.SNAPSHOT: self._req_snapshot,
            RequestKind.SHUTDOWN: self._req_shutdown,
            RequestKind.FORCE_SHUTDOWN: self._req_force_shutdown,
        }
        try:
            result = handlers[request.kind](request)
        except TogetherError as exc:
            result = ActionResult(ok=False, message=str(exc), alias=request.alias)
        except Exception as exc:
            request.future.set_exception(exc)
            return

        # None means the handler resolves the future once the action completes
        if result is not None:
            self._resolve(request.future, result)

    def _lookup(self, reference: Optional[str]) -> Optional[ProcessSupervisor]:
        if reference is None:
            return None
        spec = self.registry.find(reference)
        if spec is None:
            return None
        return self._supervisors[spec.alias]

    def _launch_gate(self) -> Optional[ActionResult]:
        if self._shutting_down:
            return ActionResult(ok=False, message="Shutdown in progress.")
        if self._phase == SessionPhase.STARTUP:
            return ActionResult(ok=False, message="Startup phase in progress.")
        if self._phase == SessionPhase.STARTUP_FAILED:
            return ActionResult(ok=False, message="Startup phase failed.")
        if self._phase not in _LAUNCH_PHASES:
            return ActionResult(ok=False, message="Startup phase has not run yet.")
        return None

    def _req_run_startup(self, request: _Request) -> Optional[ActionResult]:
        if self._shutting_down:
            return ActionResult(ok=False, message="Shutdown in progress.")
        if self._phase != SessionPhase.IDLE:
            return ActionResult(ok=False, message="Startup phase already ran.")

        if not self._startup_queue:
            self._set_phase(SessionPhase.READY)
            return ActionResult(ok=True, message="No startup commands.")

        self._startup_future = request.future
        self._set_phase(SessionPhase.STARTUP)
        self._advance_startup()
        return None

    def _req_run_concurrent(self, request: _Request) -> ActionResult:
        gate = self._launch_gate()
        if gate is not None:
            return gate
        if self._phase == SessionPhase.CONCURRENT:
            return ActionResult(ok=False, message="Concurrent phase already launched.")

        specs = self.registry.resolve(request.selector)
        return self._launch_concurrent([spec.alias for spec in specs])

    def _launch_concurrent(self, aliases: List[str]) -> ActionResult:
        self._set_phase(SessionPhase.CONCURRENT)
        self._launched_selection = list(aliases)
        for alias in aliases:
            self._launch(self._supervisors[alias])
        self._check_all_finished()
        return ActionResult(ok=True, message=f"Launched {len(aliases)} commands.", aliases=tuple(aliases))

    def _req_trigger(self, request: _Request) -> ActionResult:
        gate = self._launch_gate()
        if gate is not None:
            return gate
        supervisor = self._lookup(request.alias)
        if supervisor is None:
            return ActionResult(ok=False, message=f"Unknown command '{request.alias}'.", alias=request.alias)

        self._last_triggered = supervisor.alias
        return self._launch(supervisor)

    def _req_retrigger_last(self, request: _Request) -> ActionResult:
        if self._last_triggered is None:
            return ActionResult(ok=False, message="No command has been triggered yet.")
        gate = self._launch_gate()
        if gate is not None:
            return gate
        return self._launch(self._supervisors[self._last_triggered])

    def _req_trigger_recipes(self, request: _Request) -> ActionResult:
        gate = self._launch_gate()
        if gate is not None:
            return gate
        specs = self.registry.resolve(Selector.recipes(request.names))
        started = [
            spec.alias for spec in specs
            if self._launch(self._supervisors[spec.alias]).ok
        ]
        return ActionResult(ok=True, message=f"Triggered {len(started)} commands.", aliases=tuple(started))

    def _req_switch_recipe(self, request: _Request) -> ActionResult:
        gate = self._launch_gate()
        if gate is not None:
            return gate
        members = set(self.registry.recipe_members(request.names[0]))
        for supervisor in self._supervisors.values():
            if supervisor.alias not in members and supervisor.is_live:
                self._begin_kill(supervisor)
        started = [
            alias for alias in self.registry.recipe_members(request.names[0])
            if self._launch(self._supervisors[alias]).ok
        ]
        return ActionResult(ok=True, message=f"Switched to recipe '{request.names[0]}'.", aliases=tuple(started))

    def _launch(self, supervisor: ProcessSupervisor, restart: bool = False) -> ActionResult:
        if supervisor.state not in STARTABLE_STATES:
            return ActionResult(
                ok=False,
                message=f"'{supervisor.alias}' is already {supervisor.state.value}.",
                alias=supervisor.alias,
                state=supervisor.state,
            )

        self._launched.add(supervisor.alias)
        self._all_finished_reported = False
        for change in supervisor.start(restart=restart):
            self._emit(change)

        # a spawn failure is a terminal transition like any other
        if supervisor.state == ProcessState.CRASHED:
            self._after_terminal(supervisor)
            return ActionResult(ok=False, message=supervisor.current.cause or "spawn failed", alias=supervisor.alias, state=supervisor.state)
        return ActionResult(ok=True, message=f"Started '{supervisor.alias}'.", alias=supervisor.alias, state=supervisor.state)

    def _req_kill(self, request: _Request) -> Optional[ActionResult]:
        supervisor = self._lookup(request.alias)
        if supervisor is None:
            return ActionResult(ok=False, message=f"Unknown command '{request.alias}'.", alias=request.alias)
        if not supervisor.is_live:
            return ActionResult(ok=False, message=f"'{supervisor.alias}' is not running.", alias=supervisor.alias, state=supervisor.state)

        key = (supervisor.alias, supervisor.current.run_id)
        self._kill_waiters.setdefault(key, []).append(request.future)
        self._begin_kill(supervisor)
        return None

    def _req_restart(self, request: _Request) -> Optional[ActionResult]:
        gate = self._launch_gate()
        if gate is not None:
            return gate
        supervisor = self._lookup(request.alias)
        if supervisor is None:
            return ActionResult(ok=False, message=f"Unknown command '{request.alias}'.", alias=request.alias)
        if supervisor.state == ProcessState.UNRESPONSIVE:
            return ActionResult(ok=False, message=f"'{supervisor.alias}' is unresponsive.", alias=supervisor.alias, state=supervisor.state)

        if supervisor.is_live:
            self._restart_waiters.setdefault(supervisor.alias, []).append(request.future)
            self._begin_kill(supervisor)
            return None

        return self._launch(supervisor, restart=True)

    def _req_toggle_select(self, request: _Request) -> ActionResult:
        if self._phase not in _PRE_LAUNCH_PHASES or self._shutting_down:
            return ActionResult(ok=False, message="Selection is only open before launch.")
        supervisor = self._lookup(request.alias)
        if supervisor is None:
            return ActionResult(ok=False, message=f"Unknown command '{request.alias}'.", alias=request.alias)

        self._set_phase(SessionPhase.SELECTING)
        if supervisor.alias in self._selection:
            self._selection.remove(supervisor.alias)
            message = f"Deselected '{supervisor.alias}'."
        else:
            self._selection.append(supervisor.alias)
            message = f"Selected '{supervisor.alias}'."
        return ActionResult(ok=True, message=message, alias=supervisor.alias, aliases=tuple(self._selection))

    def _req_confirm_start(self, request: _Request) -> ActionResult:
        if self._phase not in _PRE_LAUNCH_PHASES or self._shutting_down:
            return ActionResult(ok=False, message="Selection is only open before launch.")
        specs = self.registry.resolve(Selector.aliases(self._selection))
        return self._launch_concurrent([spec.alias for spec in specs])

    def _req_snapshot(self, request: _Request) -> OrchestratorSnapshot:
        return OrchestratorSnapshot(
            phase=self._phase,
            processes=tuple(supervisor.snapshot() for supervisor in self._supervisors.values()),
            selectable=tuple(
                supervisor.alias for supervisor in self._supervisors.values()
                if supervisor.state in STARTABLE_STATES
            ),
            selection=tuple(self._selection),
            last_triggered=self._last_triggered,
        )

    def _req_shutdown(self, request: _Request) -> None:
        self._begin_shutdown()
        return None

    def _req_force_shutdown(self, request: _Request) -> ActionResult:
        self._begin_shutdown()
        escalated = []
        for supervisor in self._supervisors.values():
            if supervisor.is_live and not supervisor.current.forced:
                self._escalate(supervisor)
                escalated.append(supervisor.alias)
        return ActionResult(ok=True, message="Forced termination.", aliases=tuple(escalated))

    # -- startup phase ------------------------------------------------------

    def _advance_startup(self) -> None:
        if self._startup_cursor >= len(self._startup_queue):
            self._startup_run = None
            self._set_phase(SessionPhase.READY)
            self._resolve(
                self._startup_future,
                ActionResult(ok=True, message="Startup complete.", aliases=tuple(self._startup_queue)),
            )
            return

        supervisor = self._supervisors[self._startup_queue[self._startup_cursor]]
        if supervisor.state not in STARTABLE_STATES:
            self._fail_startup(supervisor, f"'{supervisor.alias}' is already {supervisor.state.value}.")
            return

        changes = supervisor.start()
        self._startup_run = (supervisor.alias, supervisor.current.run_id)
        for change in changes:
            self._emit(change)

        if supervisor.state == ProcessState.CRASHED:
            self._fail_startup(supervisor, supervisor.current.cause or "spawn failed")

    def _fail_startup(self, supervisor: ProcessSupervisor, cause: str) -> None:
        self._startup_run = None
        message = f"Startup command '{supervisor.alias}' failed: {cause}"
        self._set_phase(SessionPhase.STARTUP_FAILED, detail=message)
        self._resolve(self._startup_future, ActionResult(ok=False, message=message, alias=supervisor.alias, state=supervisor.state))

    def _on_startup_terminal(self, supervisor: ProcessSupervisor) -> None:
        run = supervisor.current
        if self._startup_run != (supervisor.alias, run.run_id):
            return

        if run.state == ProcessState.EXITED:
            self._startup_cursor += 1
            self._advance_startup()
        else:
            self._fail_startup(supervisor, run.cause or run.state.value)

    # -- termination --------------------------------------------------------

    def _begin_kill(self, supervisor: ProcessSupervisor) -> None:
        run = supervisor.current
        if run.kill_requested:
            return
        try:
            supervisor.begin_kill()
        except SignalDeliveryError:
            self._escalate(supervisor)
            return
        self._arm_deadline(supervisor.alias, run.run_id, forced=False, delay=self.settings.grace_timeout_seconds)

    def _escalate(self, supervisor: ProcessSupervisor) -> None:
        run = supervisor.current
        try:
            supervisor.escalate()
        except SignalDeliveryError as exc:
            self._mark_unresponsive(supervisor, str(exc))
            return
        self._arm_deadline(supervisor.alias, run.run_id, forced=True, delay=self.settings.force_timeout_seconds)

    def _arm_deadline(self, alias: str, run_id: int, forced: bool, delay: float) -> None:
        timer = threading.Timer(delay, self._inbox.put, args=(_KillDeadline(alias=alias, run_id=run_id, forced=forced),))
        timer.daemon = True
        self._timers.append(timer)
        timer.start()

    def _handle_deadline(self, deadline: _KillDeadline) -> None:
        self._timers = [timer for timer in self._timers if timer.is_alive()]
        supervisor = self._supervisors[deadline.alias]
        run = supervisor.current
        if run is None or run.run_id != deadline.run_id or run.state not in LIVE_STATES:
            return

        if deadline.forced:
            self._mark_unresponsive(supervisor, "did not exit after SIGKILL")
        elif not run.forced:
            self._escalate(supervisor)

    def _mark_unresponsive(self, supervisor: ProcessSupervisor, reason: str) -> None:
        self._emit(supervisor.mark_unresponsive(reason))
        self._unresponsive.add(supervisor.alias)
        self._after_terminal(supervisor)

    # -- events -------------------------------------------------------------

    def _handle_output(self, line: OutputLine) -> None:
        self._supervisors[line.alias].append_output(line.run_id, line.line)
        self._emit(line)

    def _handle_exit(self, event: ChildExited) -> None:
        supervisor = self._supervisors[event.alias]
        change = supervisor.on_exit(event.run_id, event.returncode)
        if change is None:
            return
        self._emit(change)
        if supervisor.current.forced and self._shutting_down:
            self._forced.add(supervisor.alias)
        self._unresponsive.discard(supervisor.alias)
        self._after_terminal(supervisor)

    def _after_terminal(self, supervisor: ProcessSupervisor) -> None:
        run = supervisor.current
        alias = supervisor.alias

        if self._phase == SessionPhase.STARTUP:
            self._on_startup_terminal(supervisor)

        for future in self._kill_waiters.pop((alias, run.run_id), []):
            self._resolve(
                future,
                ActionResult(
                    ok=run.state == ProcessState.KILLED,
                    message=f"'{alias}' is {run.state.value}.",
                    alias=alias,
                    state=run.state,
                ),
            )

        restart_futures = self._restart_waiters.pop(alias, [])
        if restart_futures:
            if self._shutting_down or run.state == ProcessState.UNRESPONSIVE:
                result = ActionResult(ok=False, message=f"Restart of '{alias}' abandoned.", alias=alias, state=run.state)
            else:
                result = self._launch(supervisor, restart=True)
            for future in restart_futures:
                self._resolve(future, result)

        if (
            self.exit_on_error
            and run.state == ProcessState.CRASHED
            and self._phase == SessionPhase.CONCURRENT
            and not self._shutting_down
        ):
            self.failure = f"'{alias}' crashed ({run.cause})"
            self._begin_shutdown()

        self._check_all_finished()
        self._check_shutdown_complete()

    def _check_all_finished(self) -> None:
        if self._phase != SessionPhase.CONCURRENT or self._all_finished_reported or not self._launched:
            return
        if any(supervisor.is_outstanding for supervisor in self._supervisors.values()):
            return
        if self._restart_waiters:
            return
        self._all_finished_reported = True
        self._emit(AllFinished(aliases=tuple(sorted(self._launched))))

    # -- shutdown -----------------------------------------------------------

    def _begin_shutdown(self) -> None:
        if self._shutting_down:
            return

        with self._shutdown_lock:
            if self._shutdown_future is None:
                self._shutdown_future = Future()

        if self._phase == SessionPhase.STARTUP:
            self._resolve(self._startup_future, ActionResult(ok=False, message="Startup aborted by shutdown."))
            self._startup_run = None

        self._shutting_down = True
        self._set_phase(SessionPhase.SHUTTING_DOWN)
        for supervisor in self._supervisors.values():
            if supervisor.is_live:
                self._killed_in_shutdown.add(supervisor.alias)
                self._begin_kill(supervisor)
        self._check_shutdown_complete()

    def _check_shutdown_complete(self) -> None:
        if not self._shutting_down or self._phase == SessionPhase.STOPPED:
            return
        if any(supervisor.is_live for supervisor in self._supervisors.values()):
            return

        for futures in self._kill_waiters.values():
            for future in futures:
                self._resolve(future, ActionResult(ok=False, message="Shutdown completed first."))
        self._kill_waiters.clear()

        report = ShutdownReport(
            killed=tuple(sorted(self._killed_in_shutdown)),
            forced=tuple(sorted(self._forced)),
            unresponsive=tuple(sorted(self._unresponsive)),
        )
        self._set_phase(SessionPhase.STOPPED)
        self._resolve(self._shutdown_future, report)
