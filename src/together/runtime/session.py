from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, List, Optional

from together.config.persistence import LastRun, write_last_run
from together.core.models import RunOptions, TogetherConfig, TogetherSettings
from together.core.registry import CommandRegistry, Selector
from together.runtime.contracts import (
    ActionResult,
    AllFinished,
    OutputMode,
    SessionExitCode,
    ShutdownReport,
)
from together.runtime.orchestrator import Orchestrator


@dataclass(frozen=True)
class SessionLaunch:
    """Outcome of launching a session up to its concurrent phase."""

    startup: ActionResult
    concurrent: Optional[ActionResult] = None
    awaiting_selection: bool = False

    @property
    def ok(self) -> bool:
        return self.startup.ok and (self.concurrent is None or self.concurrent.ok)


class RunSession:
    """
    Host-agnostic lifecycle of one together session.

    Wires a config and run options into a registry and orchestrator, runs
    the startup and concurrent phases, and maps the outcome to an exit code.
    The CLI owns the operator surfaces; this class never prints.
    """

    def __init__(
        self,
        config: TogetherConfig,
        options: Optional[RunOptions] = None,
        settings: Optional[TogetherSettings] = None,
        selected: Optional[List[str]] = None,
        pick_interactively: bool = False,
        interactive: bool = True,
    ) -> None:
        self.config = config
        self.options = options or RunOptions()
        self.settings = settings or TogetherSettings()
        self.selected = list(selected or [])
        self.pick_interactively = pick_interactively
        self.interactive = interactive

        self.registry = CommandRegistry.from_config(config)
        self.orchestrator = Orchestrator(
            self.registry,
            settings=self.settings,
            output_mode=OutputMode.RAW if self.options.raw else OutputMode.CAPTURED,
            working_directory=config.working_directory,
            exit_on_error=self.options.exit_on_error,
        )
        self.startup_failed = False
        self.orchestrator.add_listener(self._on_notification)

    def add_listener(self, listener: Callable[[object], None]) -> None:
        self.orchestrator.add_listener(listener)

    @property
    def launch_timeout(self) -> float:
        """Upper bound for waiting on one kill or restart to settle."""
        return self.settings.grace_timeout_seconds + self.settings.force_timeout_seconds + 1.0

    def selector(self) -> Optional[Selector]:
        """Selector for the concurrent phase; None means the auto-start set."""
        if self.options.all:
            return Selector.all()
        if self.options.recipes:
            return Selector.recipes(self.options.recipes)
        if self.selected:
            return Selector.aliases(self.selected)
        if self.pick_interactively:
            # nobody can pick without a controller attached
            return Selector.all()
        return None

    @property
    def awaits_selection(self) -> bool:
        return (
            self.pick_interactively
            and self.interactive
            and not self.options.all
            and not self.options.recipes
            and not self.selected
        )

    def launch(self) -> SessionLaunch:
        """
        Run the startup phase, then the concurrent phase.

        Blocks until startup settles. Init-only sessions stop after
        startup; picker sessions leave the launch to confirm_start().
        """
        self.orchestrator.start()
        startup = self.orchestrator.run_startup().result()
        if not startup.ok:
            self.startup_failed = True
            return SessionLaunch(startup=startup)

        if self.options.init_only:
            self.request_shutdown()
            return SessionLaunch(startup=startup)

        if self.awaits_selection:
            return SessionLaunch(startup=startup, awaiting_selection=True)

        concurrent = self.orchestrator.run_concurrent(self.selector()).result()
        if self.options.quit_on_completion and not concurrent.aliases:
            self.request_shutdown()
        return SessionLaunch(startup=startup, concurrent=concurrent)

    def request_shutdown(self) -> Future:
        return self.orchestrator.shutdown()

    def force_shutdown(self) -> Future:
        return self.orchestrator.force_shutdown()

    def wait_until_stopped(self, timeout: Optional[float] = None) -> bool:
        return self.orchestrator.wait_stopped(timeout)

    def finish(self) -> SessionExitCode:
        """Shut down (if not already) and return the session exit code."""
        report: ShutdownReport = self.request_shutdown().result()
        self.orchestrator.wait_stopped()

        if self.startup_failed:
            return SessionExitCode.STARTUP_FAILED
        if self.orchestrator.failure is not None:
            return SessionExitCode.COMMAND_FAILED
        if not report.clean:
            return SessionExitCode.FORCED_SHUTDOWN
        return SessionExitCode.OK

    def last_run(self) -> LastRun:
        """Describe this session for `together rerun`."""
        selected = self.selected or self.orchestrator.launched_selection
        return LastRun(config=self.config, options=self.options, selected=list(selected))

    def save_last_run(self) -> None:
        write_last_run(self.settings, self.last_run())

    def _on_notification(self, notification: object) -> None:
        if isinstance(notification, AllFinished) and self.options.quit_on_completion:
            self.request_shutdown()
