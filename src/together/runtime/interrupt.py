from __future__ import annotations

import signal
import threading
from typing import Callable, Dict, Optional, Sequence


class InterruptGuard:
    """
    Converts process-wide interrupts into session shutdown requests.

    The first interrupt runs `on_interrupt`; every later one runs
    `on_repeat` (forced termination). Signal handlers hand off to a
    short-lived thread so callbacks never run in signal context.
    """

    def __init__(
        self,
        on_interrupt: Callable[[], object],
        on_repeat: Optional[Callable[[], object]] = None,
        signals: Sequence[signal.Signals] = (signal.SIGINT, signal.SIGTERM),
    ) -> None:
        self.on_interrupt = on_interrupt
        self.on_repeat = on_repeat
        self.signals = tuple(signals)
        self._count = 0
        self._lock = threading.Lock()
        self._previous: Dict[signal.Signals, object] = {}

    @property
    def count(self) -> int:
        return self._count

    def install(self) -> None:
        """Install handlers; must be called from the main thread."""
        for sig in self.signals:
            self._previous[sig] = signal.signal(sig, self._handle_signal)

    def restore(self) -> None:
        """Put back the handlers that were active before install()."""
        for sig, handler in self._previous.items():
            signal.signal(sig, handler)
        self._previous.clear()

    def fire(self) -> int:
        """Record one interrupt and run the matching callback; returns the count."""
        with self._lock:
            self._count += 1
            count = self._count

        if count == 1:
            self.on_interrupt()
        elif self.on_repeat is not None:
            self.on_repeat()
        return count

    def _handle_signal(self, signum, frame) -> None:
        threading.Thread(target=self.fire, name="together-interrupt", daemon=True).start()

    def __enter__(self) -> "InterruptGuard":
        self.install()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.restore()
