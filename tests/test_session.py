import time

import pytest

from together.config.loader import config_from_commands, validate_config_data
from together.config.persistence import read_last_run
from together.core.models import RunOptions
from together.core.registry import SelectorKind
from together.runtime.contracts import ProcessState, SessionExitCode, SessionPhase
from together.runtime.session import RunSession

WAIT = 10


@pytest.fixture
def sessions():
    created = []
    yield created
    for session in created:
        session.request_shutdown().result(timeout=WAIT)


def _session(sessions, config, **kwargs):
    session = RunSession(config, **kwargs)
    sessions.append(session)
    return session


def test_selector_precedence(fast_settings):
    config = config_from_commands(["echo a"])

    assert RunSession(config, RunOptions(all=True, recipes=["x"])).selector().kind == SelectorKind.ALL
    assert RunSession(config, RunOptions(recipes=["x"])).selector().kind == SelectorKind.RECIPES
    assert RunSession(config, selected=["echo a"]).selector().kind == SelectorKind.ALIASES
    assert RunSession(config).selector() is None
    assert RunSession(config, pick_interactively=True, interactive=False).selector().kind == SelectorKind.ALL


def test_clean_session_exits_ok_and_saves_last_run(sessions, fast_settings):
    config = validate_config_data({"commands": [{"alias": "server", "command": "sleep 30", "default": True}]})
    session = _session(sessions, config, settings=fast_settings)

    launch = session.launch()
    assert launch.ok
    assert launch.concurrent.aliases == ("server",)

    session.request_shutdown()
    assert session.finish() == SessionExitCode.OK

    session.save_last_run()
    saved = read_last_run(fast_settings)
    assert saved.selected == ["server"]


def test_startup_failure_exit_code(sessions, fast_settings):
    config = validate_config_data(
        {
            "startup": ["prep"],
            "commands": [{"alias": "prep", "command": "false"}, {"alias": "server", "command": "sleep 30", "default": True}],
        }
    )
    session = _session(sessions, config, settings=fast_settings)

    launch = session.launch()

    assert not launch.ok
    assert launch.concurrent is None
    assert session.finish() == SessionExitCode.STARTUP_FAILED


def test_forced_shutdown_exit_code(sessions, fast_settings):
    config = validate_config_data(
        {"commands": [{"alias": "stubborn", "command": "trap '' TERM; sleep 30", "default": True}]}
    )
    session = _session(sessions, config, settings=fast_settings)
    session.launch()
    time.sleep(0.3)
    assert session.finish() == SessionExitCode.FORCED_SHUTDOWN


def test_exit_on_error_exit_code(sessions, fast_settings):
    config = validate_config_data({"commands": [{"alias": "flaky", "command": "exit 1", "default": True}]})
    session = _session(sessions, config, options=RunOptions(exit_on_error=True), settings=fast_settings)

    session.launch()

    assert session.wait_until_stopped(timeout=WAIT)
    assert session.finish() == SessionExitCode.COMMAND_FAILED


def test_quit_on_completion_stops_session(sessions, fast_settings):
    config = validate_config_data({"commands": [{"alias": "job", "command": "echo done", "default": True}]})
    session = _session(sessions, config, options=RunOptions(quit_on_completion=True), settings=fast_settings)

    session.launch()

    assert session.wait_until_stopped(timeout=WAIT)
    assert session.finish() == SessionExitCode.OK


def test_quit_on_completion_with_empty_selection(sessions, fast_settings):
    config = config_from_commands(["echo a"])
    session = _session(sessions, config, options=RunOptions(quit_on_completion=True), settings=fast_settings)

    launch = session.launch()

    assert launch.concurrent.aliases == ()
    assert session.wait_until_stopped(timeout=WAIT)


def test_init_only_runs_startup_and_stops(sessions, fast_settings):
    config = validate_config_data(
        {
            "startup": ["prep"],
            "commands": [{"alias": "prep", "command": "true"}, {"alias": "server", "command": "sleep 30", "default": True}],
        }
    )
    session = _session(sessions, config, options=RunOptions(init_only=True), settings=fast_settings)

    launch = session.launch()

    assert launch.ok
    assert session.wait_until_stopped(timeout=WAIT)
    assert session.finish() == SessionExitCode.OK
    assert session.orchestrator.launched_selection == []


def test_picker_session_waits_for_selection(sessions, fast_settings):
    config = config_from_commands(["sleep 30", "echo b"])
    session = _session(sessions, config, settings=fast_settings, pick_interactively=True)

    launch = session.launch()
    assert launch.awaiting_selection

    session.orchestrator.toggle_select("sleep 30").result(timeout=WAIT)
    session.orchestrator.confirm_start().result(timeout=WAIT)
    snapshot = session.orchestrator.snapshot().result(timeout=WAIT)

    assert snapshot.phase == SessionPhase.CONCURRENT
    assert snapshot.get("sleep 30").state in (ProcessState.STARTING, ProcessState.RUNNING)
    assert snapshot.get("echo b").state == ProcessState.IDLE
    assert session.last_run().selected == ["sleep 30"]


def test_unresponsive_child_gives_forced_shutdown_exit_code(sessions, fast_settings, undeliverable_signals):
    config = validate_config_data({"commands": [{"alias": "server", "command": "sleep 30", "default": True}]})
    session = _session(sessions, config, settings=fast_settings)

    assert session.launch().ok
    snapshot = session.orchestrator.snapshot().result(timeout=WAIT)
    undeliverable_signals.append(snapshot.get("server").pid)

    report = session.request_shutdown().result(timeout=WAIT)

    assert report.unresponsive == ("server",)
    assert session.finish() == SessionExitCode.FORCED_SHUTDOWN
