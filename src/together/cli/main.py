import typer
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from together.cli.formatter import OutputFormatter
from together.cli.repl import TogetherREPL
from together.config.loader import config_from_commands, dump_config, load_config, save_config
from together.config.persistence import clear_last_run, read_last_run
from together.core.models import RunOptions, TogetherConfig, TogetherSettings
from together.runtime.contracts import OutputLine, SessionExitCode
from together.runtime.interrupt import InterruptGuard
from together.runtime.session import RunSession
from together.utils.diagnostics import ConfigError

app = typer.Typer(name="together", help="Run several shell commands together", rich_markup_mode=None)

_WAIT_POLL_SECONDS = 0.2


@dataclass
class _SessionArgs:
    options: RunOptions = field(default_factory=RunOptions)
    no_input: bool = False
    forget: bool = False
    verbose: bool = False
    cwd: Optional[str] = None
    output_format: str = "yaml"
    output: Optional[Path] = None
    positionals: List[str] = field(default_factory=list)


def _read_option_value(tokens: list[str], index: int, option_name: str) -> tuple[str, int]:
    if index + 1 >= len(tokens):
        raise typer.BadParameter(f"Option {option_name} requires a value.")
    return tokens[index + 1], index + 2


def _split_names(value: str) -> List[str]:
    return [name.strip() for name in value.split(",") if name.strip()]


def _parse_tokens(tokens: list[str], allowed: set[str]) -> _SessionArgs:
    """
    Parse session flags out of raw extra args.

    Anything after a literal `--` is positional, as is any token that
    does not start with a dash.
    """
    args = _SessionArgs()
    index = 0
    while index < len(tokens):
        token = tokens[index]
        name = token.split("=", 1)[0]
        if token == "--":
            args.positionals.extend(tokens[index + 1:])
            break
        if token.startswith("-") and name not in allowed:
            raise typer.BadParameter(f"Unknown option: {token}")

        if token == "--all":
            args.options.all = True
        elif token == "--raw":
            args.options.raw = True
        elif token == "--exit-on-error":
            args.options.exit_on_error = True
        elif token == "--quit-on-completion":
            args.options.quit_on_completion = True
        elif token == "--init-only":
            args.options.init_only = True
        elif token == "--no-input":
            args.no_input = True
        elif token == "--forget":
            args.forget = True
        elif token in ("--verbose", "-v"):
            args.verbose = True
        elif token in ("--recipes", "-r"):
            value, index = _read_option_value(tokens, index, token)
            args.options.recipes.extend(_split_names(value))
            continue
        elif token.startswith("--recipes="):
            args.options.recipes.extend(_split_names(token.split("=", 1)[1]))
        elif token == "--cwd":
            args.cwd, index = _read_option_value(tokens, index, token)
            continue
        elif token.startswith("--cwd="):
            args.cwd = token.split("=", 1)[1]
        elif token == "--format":
            args.output_format, index = _read_option_value(tokens, index, token)
            continue
        elif token.startswith("--format="):
            args.output_format = token.split("=", 1)[1]
        elif token in ("--output", "-o"):
            output_value, index = _read_option_value(tokens, index, token)
            args.output = Path(output_value)
            continue
        elif token.startswith("--output="):
            args.output = Path(token.split("=", 1)[1])
        else:
            args.positionals.append(token)
        index += 1

    args.options.recipes = list(dict.fromkeys(args.options.recipes))
    return args


_SESSION_FLAGS = {
    "--all",
    "--raw",
    "--recipes",
    "-r",
    "--exit-on-error",
    "--quit-on-completion",
    "--init-only",
    "--no-input",
    "--cwd",
    "--verbose",
    "-v",
}


def _fail_config(exc: ConfigError) -> None:
    OutputFormatter.log(exc.message, severity="error")
    OutputFormatter.print_diagnostics(exc.diagnostics)
    raise typer.Exit(code=int(SessionExitCode.CONFIG_ERROR))


def _print_notification(notification: object) -> None:
    if isinstance(notification, OutputLine):
        OutputFormatter.print_output(notification)
        return
    message = OutputFormatter.render_notification(notification)
    if message is not None:
        OutputFormatter.log(message, severity=OutputFormatter.severity_for(notification))


def _make_settings(verbose: bool) -> TogetherSettings:
    settings = TogetherSettings()
    if verbose:
        settings = settings.model_copy(update={"verbose": True})
    OutputFormatter.verbose = settings.verbose
    return settings


def _run_session(session: RunSession, interactive: bool) -> None:
    """
    Drive one session from launch to exit.
    Always raises typer.Exit carrying the session exit code.
    """
    try:
        # fail on unknown recipes or aliases before anything is spawned
        session.registry.resolve(session.selector())
    except ConfigError as exc:
        _fail_config(exc)

    session.add_listener(_print_notification)
    guard = InterruptGuard(on_interrupt=session.request_shutdown, on_repeat=session.force_shutdown)
    guard.install()
    try:
        launch = session.launch()
        if not launch.startup.ok:
            OutputFormatter.log(launch.startup.message, severity="critical")
        elif launch.concurrent is not None and not launch.concurrent.ok:
            OutputFormatter.log(launch.concurrent.message, severity="error")
        elif launch.awaiting_selection:
            OutputFormatter.log("Select commands with 's <alias>', then start them with 'c'.", severity="info")

        if launch.startup.ok and not session.options.init_only:
            if interactive:
                TogetherREPL(session, guard).start()
            else:
                while not session.wait_until_stopped(timeout=_WAIT_POLL_SECONDS):
                    pass

        exit_code = session.finish()
    finally:
        guard.restore()

    if launch.startup.ok:
        try:
            session.save_last_run()
        except OSError as exc:
            OutputFormatter.log(f"Unable to save run state: {exc}", severity="warning")

    if exit_code == SessionExitCode.OK:
        OutputFormatter.log("All commands stopped.", severity="success")
    else:
        OutputFormatter.log(f"Session ended with exit code {int(exit_code)} ({exit_code.name.lower()}).", severity="warning")
    raise typer.Exit(code=int(exit_code))


def _start(config: TogetherConfig, args: _SessionArgs, settings: TogetherSettings, selected=None, pick=False) -> None:
    interactive = not args.no_input
    session = RunSession(
        config,
        options=args.options,
        settings=settings,
        selected=selected,
        pick_interactively=pick,
        interactive=interactive,
    )
    OutputFormatter.log(f"Loaded {len(session.registry)} commands.", severity="debug")
    _run_session(session, interactive=interactive)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def run(
    ctx: typer.Context,
):
    """
    Run ad-hoc commands given after `--`.
    """
    args = _parse_tokens(list(ctx.args), _SESSION_FLAGS)
    settings = _make_settings(args.verbose)
    if not args.positionals:
        raise typer.BadParameter("No commands given. Usage: together run [OPTIONS] -- <command>...")

    try:
        config = config_from_commands(args.positionals, working_directory=args.cwd)
    except ConfigError as exc:
        _fail_config(exc)

    _start(config, args, settings, pick=True)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def load(
    ctx: typer.Context,
):
    """
    Run the commands of a config file.
    """
    args = _parse_tokens(list(ctx.args), _SESSION_FLAGS)
    settings = _make_settings(args.verbose)
    if len(args.positionals) != 1:
        raise typer.BadParameter("Usage: together load [OPTIONS] <path>")

    try:
        config = load_config(Path(args.positionals[0]))
    except ConfigError as exc:
        _fail_config(exc)

    if args.cwd:
        config = config.model_copy(update={"working_directory": str(Path(args.cwd).expanduser().resolve())})

    _start(config, args, settings)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def rerun(
    ctx: typer.Context,
):
    """
    Run the last saved configuration and selection again.
    With --forget, delete the saved run instead.
    """
    args = _parse_tokens(list(ctx.args), {"--no-input", "--forget", "--verbose", "-v"})
    settings = _make_settings(args.verbose)
    if args.positionals:
        raise typer.BadParameter(f"Unexpected arguments: {' '.join(args.positionals)}")

    if args.forget:
        try:
            removed = clear_last_run(settings)
        except OSError as exc:
            OutputFormatter.log(f"Unable to delete saved run: {exc}", severity="error")
            raise typer.Exit(code=int(SessionExitCode.CONFIG_ERROR))
        if removed:
            OutputFormatter.log("Saved run deleted.", severity="success")
        else:
            OutputFormatter.log("No saved run to delete.", severity="info")
        return

    try:
        last_run = read_last_run(settings)
    except ConfigError as exc:
        _fail_config(exc)

    OutputFormatter.log(f"Rerunning the session saved at {last_run.saved_at}.", severity="info")
    args.options = last_run.options
    _start(last_run.config, args, settings, selected=last_run.selected)


@app.command(context_settings={"allow_extra_args": True, "ignore_unknown_options": True})
def dump(
    ctx: typer.Context,
):
    """
    Print the canonical form of a config, or of the last saved run.
    """
    args = _parse_tokens(list(ctx.args), {"--format", "--output", "-o", "--verbose", "-v"})
    settings = _make_settings(args.verbose)
    if len(args.positionals) > 1:
        raise typer.BadParameter(f"Unexpected arguments: {' '.join(args.positionals[1:])}")

    output_format = args.output_format.lower()
    if output_format not in {"yaml", "json"}:
        raise typer.BadParameter("Option --format must be one of: yaml, json")

    try:
        if args.positionals:
            config = load_config(Path(args.positionals[0]))
        else:
            config = read_last_run(settings).config

        if args.output is not None:
            try:
                save_config(args.output, config)
            except OSError as exc:
                OutputFormatter.log(f"Unable to write {args.output}: {exc}", severity="error")
                raise typer.Exit(code=int(SessionExitCode.CONFIG_ERROR))
            OutputFormatter.log(f"Wrote {args.output}.", severity="success")
            return
    except ConfigError as exc:
        _fail_config(exc)

    typer.echo(dump_config(config, output_format), nl=False)


if __name__ == "__main__":
    app()
