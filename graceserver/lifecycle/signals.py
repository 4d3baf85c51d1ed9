"""Process-wide termination signal handling with explicit install and restore."""

import logging
import queue
import signal
import threading
from types import FrameType
from typing import Any, Optional

from graceserver.domain.correlation_id import CorrelationLoggerAdapter
from graceserver.domain.errors import ServerError

SIGNAL_LOGGER = CorrelationLoggerAdapter(logging.getLogger("graceserver.signals"), {})

TERMINATION_SIGNAL_NAMES = ("SIGINT", "SIGABRT", "SIGQUIT", "SIGTERM", "SIGHUP")
TERMINATION_SIGNALS = tuple(
    getattr(signal, name) for name in TERMINATION_SIGNAL_NAMES if hasattr(signal, name)
)
POLL_INTERVAL = 0.1


class SignalWaiter:
    """Capture termination signals so the main thread can wait for one.

    Handlers only enqueue the signal number; ``queue.SimpleQueue.put`` is safe
    to call from a signal handler. Previous handlers are restored by
    ``restore`` or on leaving the ``with`` block.
    """

    def __init__(self, signals: tuple[int, ...] = TERMINATION_SIGNALS) -> None:
        self._signals = signals
        self._received: queue.SimpleQueue[int] = queue.SimpleQueue()
        self._previous: dict[int, Any] = {}

    @property
    def installed(self) -> bool:
        return bool(self._previous)

    def install(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            raise ServerError("signal handlers can only be installed from the main thread")
        try:
            for signum in self._signals:
                self._previous[signum] = signal.signal(signum, self._handle)
        except (OSError, ValueError):
            self.restore()
            raise

    def restore(self) -> None:
        while self._previous:
            signum, handler = self._previous.popitem()
            signal.signal(signum, handler if handler is not None else signal.SIG_DFL)

    def _handle(self, signum: int, _frame: Optional[FrameType]) -> None:
        self._received.put(signum)

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until a signal arrives; return its number, or None on timeout.

        Polls in short slices so pending Python-level handlers get to run on
        the main thread.
        """
        remaining = timeout
        while remaining is None or remaining > 0:
            slice_timeout = POLL_INTERVAL if remaining is None else min(POLL_INTERVAL, remaining)
            try:
                signum = self._received.get(timeout=slice_timeout)
            except queue.Empty:
                if remaining is not None:
                    remaining -= slice_timeout
                continue
            SIGNAL_LOGGER.info(
                "Received shutdown signal",
                extra={"event": "signal_received", "signal": signal.Signals(signum).name},
            )
            return signum
        return None

    def __enter__(self) -> "SignalWaiter":
        self.install()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.restore()
