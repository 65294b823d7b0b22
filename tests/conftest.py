import os
import psutil
import pytest
import signal
import sys
import threading
import time
from pathlib import Path

# Ensure src/ is in the python path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from together.core.models import TogetherSettings


@pytest.fixture(autouse=True)
def isolated_state_dir(tmp_path, monkeypatch):
    """
    Keeps persisted run state out of the real user config directory.
    """
    state_dir = tmp_path / "state"
    monkeypatch.setenv("TOGETHER_STATE_DIR", str(state_dir))
    return state_dir


@pytest.fixture
def fast_settings(isolated_state_dir):
    """Settings with short kill timeouts so process tests stay quick."""
    return TogetherSettings(
        grace_timeout_seconds=0.5,
        force_timeout_seconds=0.5,
        state_dir=isolated_state_dir,
    )


class EventRecorder:
    """Thread-safe listener that records orchestrator notifications."""

    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def __call__(self, notification):
        with self._lock:
            self.events.append(notification)

    def of_type(self, kind):
        with self._lock:
            return [event for event in self.events if isinstance(event, kind)]

    def wait_for(self, predicate, timeout=5.0):
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            with self._lock:
                if any(predicate(event) for event in self.events):
                    return True
            time.sleep(0.02)
        return False


@pytest.fixture
def recorder():
    return EventRecorder()


def _reap(pids, killpg):
    for pid in pids:
        try:
            killpg(pid, signal.SIGKILL)
        except ProcessLookupError:
            continue


@pytest.fixture
def undeliverable_signals(monkeypatch):
    """
    Every SIGTERM/SIGKILL delivery fails as if permission was denied.
    Append child pids to the yielded list so they are reaped afterwards.
    """
    real_killpg = os.killpg
    pids = []

    def refuse_killpg(pid, sig):
        raise PermissionError(1, "Operation not permitted")

    def refuse_kill(self):
        raise psutil.AccessDenied(self.pid)

    monkeypatch.setattr(os, "killpg", refuse_killpg)
    monkeypatch.setattr(psutil.Process, "kill", refuse_kill)
    yield pids
    monkeypatch.undo()
    _reap(pids, real_killpg)


@pytest.fixture
def ignored_signals(monkeypatch):
    """
    Signals are delivered without error but never reach the child.
    Append child pids to the yielded list so they are reaped afterwards.
    """
    real_killpg = os.killpg
    pids = []

    monkeypatch.setattr(os, "killpg", lambda pid, sig: None)
    monkeypatch.setattr(psutil.Process, "kill", lambda self: None)
    yield pids
    monkeypatch.undo()
    _reap(pids, real_killpg)
