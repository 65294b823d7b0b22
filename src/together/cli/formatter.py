import typer
from typing import List, Optional
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from together.runtime.contracts import (
    AllFinished,
    ListenerFailed,
    OrchestratorSnapshot,
    OutputLine,
    PhaseChange,
    ProcessState,
    StateChange,
)
from together.utils.diagnostics import TogetherDiagnostic

# Create a stderr console for logging
error_console = Console(stderr=True)
output_console = Console(highlight=False)

_STATE_STYLES = {
    ProcessState.IDLE: "dim",
    ProcessState.STARTING: "cyan",
    ProcessState.RUNNING: "green",
    ProcessState.RESTARTING: "cyan",
    ProcessState.EXITED: "white",
    ProcessState.CRASHED: "red",
    ProcessState.KILLED: "yellow",
    ProcessState.UNRESPONSIVE: "bold red",
}


class OutputFormatter:
    """
    Handles output formatting for the CLI and the controller.
    System logs go to stderr; forwarded child output goes to stdout.
    """

    verbose = False

    @classmethod
    def log(cls, message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        style = "white"
        prefix = "[together]"

        if severity == "debug":
            if not cls.verbose:
                return
            style = "dim"
        elif severity == "warning":
            style = "yellow"
        elif severity == "error":
            style = "red"
        elif severity == "critical":
            style = "bold red"
        elif severity == "success":
            style = "green"

        error_console.print(f"[{style}]{escape(prefix)} {escape(message)}[/{style}]")

    @staticmethod
    def print_diagnostics(diagnostics: List[TogetherDiagnostic]) -> None:
        """
        Prints a table of configuration diagnostics.
        """
        if not diagnostics:
            return

        table = Table(title="together diagnostics", border_style="red", header_style="bold red")
        table.add_column("Severity", style="bold")
        table.add_column("Code")
        table.add_column("Message")
        table.add_column("Source")

        for diag in diagnostics:
            color = "red"
            if diag.severity == "warning":
                color = "yellow"
            elif diag.severity == "critical":
                color = "bold red"

            message = diag.message
            if diag.suggestion:
                message = f"{message}\n{diag.suggestion}"

            table.add_row(
                f"[{color}]{diag.severity.upper()}[/{color}]",
                diag.error_code,
                escape(message),
                escape(diag.source),
            )

        error_console.print(table)
        error_console.print()

    @staticmethod
    def print_output(line: OutputLine) -> None:
        """Print one forwarded child line as `alias | line`."""
        style = "red" if line.stream == "stderr" else "cyan"
        output_console.print(f"[{style}]{escape(line.alias)} |[/{style}] {escape(line.line)}")

    @staticmethod
    def print_snapshot(snapshot: OrchestratorSnapshot) -> None:
        """Render every command and its current state."""
        table = Table(title=f"together ({snapshot.phase.value})", header_style="bold")
        table.add_column("Alias")
        table.add_column("State")
        table.add_column("Restarts", justify="right")
        table.add_column("PID", justify="right")
        table.add_column("Exit", justify="right")
        table.add_column("Recipes")
        table.add_column("Command")

        for process in snapshot.processes:
            style = _STATE_STYLES.get(process.state, "white")
            alias = process.alias
            if process.alias in snapshot.selection:
                alias = f"* {alias}"
            table.add_row(
                escape(alias),
                f"[{style}]{process.state.value}[/{style}]",
                str(process.restart_count),
                "" if process.pid is None else str(process.pid),
                "" if process.exit_code is None else str(process.exit_code),
                escape(", ".join(process.recipes)),
                escape(process.command),
            )

        error_console.print(table)

    @staticmethod
    def render_notification(notification: object) -> Optional[str]:
        """
        Turn an orchestrator notification into a log line, or None when
        the notification is not logged.
        """
        if isinstance(notification, StateChange):
            text = f"{notification.alias}: {notification.previous.value} -> {notification.current.value}"
            if notification.current == ProcessState.RUNNING and notification.pid is not None:
                text += f" (pid {notification.pid})"
            elif notification.cause:
                text += f" ({notification.cause})"
            return text
        if isinstance(notification, PhaseChange):
            text = f"phase: {notification.current.value}"
            if notification.detail:
                text += f" ({notification.detail})"
            return text
        if isinstance(notification, AllFinished):
            return "All commands finished."
        if isinstance(notification, ListenerFailed):
            return f"Listener {notification.listener} failed on {notification.notification}: {notification.error}"
        return None

    @staticmethod
    def severity_for(notification: object) -> str:
        if isinstance(notification, StateChange):
            if notification.current in (ProcessState.CRASHED, ProcessState.UNRESPONSIVE):
                return "error"
            if notification.current == ProcessState.KILLED:
                return "warning"
            if notification.current == ProcessState.RUNNING:
                return "success"
            return "debug"
        if isinstance(notification, ListenerFailed):
            return "warning"
        return "info"

    @staticmethod
    def print_text(text: str) -> None:
        typer.echo(text)
