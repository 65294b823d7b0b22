import concurrent.futures
import contextlib
import queue
import sys
import threading
from typing import List, Optional

import typer
from prompt_toolkit import PromptSession
from prompt_toolkit.patch_stdout import patch_stdout

from together.cli.formatter import OutputFormatter
from together.config.loader import dump_config
from together.runtime.contracts import (
    ALIAS_ACTIONS,
    KEY_BINDINGS,
    LIVE_STATES,
    ActionResult,
    ControllerAction,
    ControllerCommand,
    PhaseChange,
    SessionPhase,
)
from together.runtime.interrupt import InterruptGuard
from together.runtime.session import RunSession
from together.utils.diagnostics import TogetherError

_ACTIONS_BY_KEY = {key: action for key, action, _ in KEY_BINDINGS}
_ACTIONS_BY_KEY["?"] = ControllerAction.SHOW_HELP
_ACTIONS_BY_NAME = {action.value: action for action in ControllerAction}

_STDIN_POLL_SECONDS = 0.2


def parse_controller_input(line: str) -> ControllerCommand:
    """
    Parse one input line into exactly one controller command.

    Accepts a key binding (`t server`) or an action name (`trigger server`).
    Raises ValueError for anything else.
    """
    parts = line.strip().split()
    if not parts:
        raise ValueError("Empty input.")

    key = parts[0]
    action = _ACTIONS_BY_KEY.get(key) or _ACTIONS_BY_NAME.get(key.lower())
    if action is None:
        raise ValueError(f"Unknown key '{key}'. Type 'h' for help.")

    names = tuple(parts[1:])
    if action == ControllerAction.TRIGGER_RECIPES:
        # `b web,db` and `b web db` both name two recipes
        names = tuple(name for part in names for name in part.split(",") if name)
    elif action not in ALIAS_ACTIONS and names:
        raise ValueError(f"'{key}' takes no arguments.")
    elif len(names) > 1:
        names = (" ".join(names),)

    return ControllerCommand(action=action, names=names)


class TogetherREPL:
    """
    Line-oriented controller for a running session.
    Each input line maps to exactly one orchestrator request.
    """

    def __init__(self, session: RunSession, guard: InterruptGuard, prompt_session: Optional[PromptSession] = None):
        self.session = session
        self.guard = guard
        self.orchestrator = session.orchestrator
        if prompt_session is None and sys.stdin.isatty():
            prompt_session = PromptSession()
        self.prompt_session = prompt_session
        self._stdin_lines: "queue.Queue[Optional[str]]" = queue.Queue()
        self._stdin_reader: Optional[threading.Thread] = None

    def start(self) -> None:
        OutputFormatter.log("Type 'h' for key bindings or 'q' to quit.", severity="info")
        self.session.add_listener(self._on_notification)

        patcher = patch_stdout() if self.prompt_session is not None else contextlib.nullcontext()
        with patcher:
            while self.orchestrator.is_running:
                try:
                    line = self._read_line("together > ")
                except (KeyboardInterrupt, EOFError):
                    if self.orchestrator.is_running:
                        self._quit()
                    break

                if not line or not line.strip():
                    continue

                try:
                    command = parse_controller_input(line)
                except ValueError as exc:
                    OutputFormatter.log(str(exc), severity="error")
                    continue

                try:
                    if not self.handle_command(command):
                        break
                except TogetherError as exc:
                    OutputFormatter.log(str(exc), severity="error")

    def handle_command(self, command: ControllerCommand) -> bool:
        """
        Execute one controller command.
        Returns False to signal the controller should exit.
        """
        if command.action in ALIAS_ACTIONS and command.target is None:
            target = self._ask_target(command.action)
            if target is None:
                return True
            command = ControllerCommand(action=command.action, names=(target,))

        if command.action == ControllerAction.TRIGGER_RECIPES and not command.names:
            names = self._ask_recipes()
            if not names:
                return True
            command = ControllerCommand(action=command.action, names=names)

        handlers = {
            ControllerAction.TOGGLE_SELECT: lambda: self.orchestrator.toggle_select(command.target),
            ControllerAction.CONFIRM_START: self.orchestrator.confirm_start,
            ControllerAction.TRIGGER: lambda: self.orchestrator.trigger(command.target),
            ControllerAction.KILL: lambda: self.orchestrator.kill(command.target),
            ControllerAction.RESTART: lambda: self.orchestrator.restart(command.target),
            ControllerAction.RETRIGGER_LAST: self.orchestrator.retrigger_last,
            ControllerAction.TRIGGER_RECIPES: lambda: self.orchestrator.trigger_recipes(command.names),
            ControllerAction.SWITCH_RECIPE: lambda: self.orchestrator.switch_recipe(command.target),
        }

        if command.action == ControllerAction.QUIT:
            self._quit()
            return False
        if command.action == ControllerAction.SHOW_HELP:
            self._show_help()
            return True
        if command.action == ControllerAction.LIST:
            snapshot = self.orchestrator.snapshot().result(timeout=self.session.launch_timeout)
            OutputFormatter.print_snapshot(snapshot)
            return True
        if command.action == ControllerAction.DUMP:
            OutputFormatter.print_text(dump_config(self.session.config))
            return True

        self._report(handlers[command.action]())
        return True

    def _report(self, future: concurrent.futures.Future) -> None:
        try:
            result: ActionResult = future.result(timeout=self.session.launch_timeout)
        except concurrent.futures.TimeoutError:
            OutputFormatter.log("Request still pending.", severity="warning")
            return

        severity = "success" if result.ok else "error"
        if result.message:
            OutputFormatter.log(result.message, severity=severity)

    def _ask_target(self, action: ControllerAction) -> Optional[str]:
        candidates = self._candidates(action)
        if not candidates:
            OutputFormatter.log("Nothing to choose from.", severity="warning")
            return None

        OutputFormatter.log(f"Choose one of: {', '.join(candidates)}", severity="info")
        try:
            answer = self._read_line(f"{action.value} > ")
        except (KeyboardInterrupt, EOFError):
            return None
        answer = (answer or "").strip()
        return answer or None

    def _ask_recipes(self) -> tuple:
        recipes = self.session.registry.recipe_names()
        if not recipes:
            OutputFormatter.log("No recipes declared.", severity="warning")
            return ()

        OutputFormatter.log(f"Recipes: {', '.join(recipes)}", severity="info")
        try:
            answer = self._read_line("recipes > ")
        except (KeyboardInterrupt, EOFError):
            return ()
        return tuple(name for name in (answer or "").replace(",", " ").split() if name)

    def _candidates(self, action: ControllerAction) -> List[str]:
        if action == ControllerAction.SWITCH_RECIPE:
            return self.session.registry.recipe_names()

        snapshot = self.orchestrator.snapshot().result(timeout=self.session.launch_timeout)
        if action == ControllerAction.KILL:
            return [process.alias for process in snapshot.processes if process.state in LIVE_STATES]
        if action in (ControllerAction.TRIGGER, ControllerAction.TOGGLE_SELECT):
            return list(snapshot.selectable)
        return [process.alias for process in snapshot.processes]

    def _show_help(self) -> None:
        OutputFormatter.log("Key bindings:", severity="info")
        for key, action, description in KEY_BINDINGS:
            typer.echo(f"  {key:<3} {action.value:<16} {description}")
        typer.echo("")

    def _quit(self) -> None:
        OutputFormatter.log("Stopping every command...", severity="info")
        self.guard.fire()

    def _read_line(self, prompt: str) -> str:
        if self.prompt_session is not None:
            return self.prompt_session.prompt(prompt)
        return self._read_piped_line(prompt)

    def _read_piped_line(self, prompt: str) -> str:
        """
        Read one line of non-interactive stdin.

        Lines arrive through a reader thread so the wait can end as soon as
        the session stops on its own; that, like end of input, raises EOFError.
        """
        if self._stdin_reader is None:
            self._stdin_reader = threading.Thread(target=self._pump_stdin, name="together-stdin", daemon=True)
            self._stdin_reader.start()

        typer.echo(prompt, nl=False)
        while True:
            try:
                line = self._stdin_lines.get(timeout=_STDIN_POLL_SECONDS)
            except queue.Empty:
                if not self.orchestrator.is_running:
                    typer.echo("")
                    raise EOFError
                continue
            if line is None:
                # end of input stays visible to every later read
                self._stdin_lines.put(None)
                raise EOFError
            return line

    def _pump_stdin(self) -> None:
        for line in iter(sys.stdin.readline, ""):
            self._stdin_lines.put(line.rstrip("\r\n"))
        self._stdin_lines.put(None)

    def _on_notification(self, notification: object) -> None:
        if not isinstance(notification, PhaseChange) or notification.current != SessionPhase.STOPPED:
            return
        if self.prompt_session is None:
            return

        # unblock a pending prompt once the session is over
        app = self.prompt_session.app
        if app.is_running and app.loop is not None:
            app.loop.call_soon_threadsafe(lambda: app.exit(exception=EOFError()))
