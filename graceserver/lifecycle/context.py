"""Cancellation contexts shared between the server, its requests and shutdown.

A ``Context`` is a thread-safe, one-shot cancellation token. It may carry a
deadline and a parent; cancelling a parent cancels every child, and a child's
deadline never extends past its parent's. Deadlines are checked lazily, so no
timer threads are involved.
"""

import threading
import time
from typing import Callable, Optional

from graceserver.domain.errors import ContextCancelled, ContextError, DeadlineExceeded

CancelFunc = Callable[[], None]


class Context:
    """Cancellable context with an optional monotonic deadline."""

    def __init__(
        self, parent: Optional["Context"] = None, deadline: Optional[float] = None
    ) -> None:
        self._lock = threading.Lock()
        self._done = threading.Event()
        self._error: Optional[ContextError] = None
        self._children: set["Context"] = set()
        self._parent = parent
        if parent is not None and parent.deadline is not None:
            deadline = (
                parent.deadline if deadline is None else min(deadline, parent.deadline)
            )
        self._deadline = deadline
        if parent is not None:
            parent._attach(self)

    @property
    def deadline(self) -> Optional[float]:
        """Monotonic timestamp after which the context expires, if any."""
        return self._deadline

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without a deadline."""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - time.monotonic())

    def done(self) -> bool:
        """Return True once the context is cancelled or past its deadline."""
        if self._done.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self._finish(DeadlineExceeded("context deadline exceeded"))
            return True
        return False

    def error(self) -> Optional[ContextError]:
        """Reason the context finished, or None while it is still live."""
        if not self.done():
            return None
        return self._error

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the context is done or ``timeout`` elapses.

        Returns True when the context is done.
        """
        remaining = self.remaining()
        if remaining is not None:
            timeout = remaining if timeout is None else min(timeout, remaining)
        self._done.wait(timeout)
        return self.done()

    def cancel(self) -> None:
        """Cancel the context and its children. Repeated calls are no-ops."""
        self._finish(ContextCancelled("context canceled"))

    def _finish(self, error: ContextError) -> None:
        with self._lock:
            if self._done.is_set():
                return
            self._error = error
            children = list(self._children)
            self._children.clear()
            self._done.set()
        for child in children:
            child._finish(error)
        if self._parent is not None:
            self._parent._detach(self)

    def _attach(self, child: "Context") -> None:
        with self._lock:
            if not self._done.is_set():
                self._children.add(child)
                return
            error = self._error
        child._finish(error if error is not None else ContextCancelled("context canceled"))

    def _detach(self, child: "Context") -> None:
        with self._lock:
            self._children.discard(child)


def background() -> Context:
    """Return a fresh root context that is never cancelled by anything else."""
    return Context()


def with_cancel(parent: Context) -> tuple[Context, CancelFunc]:
    """Derive a child context and the function that cancels it."""
    child = Context(parent)
    return child, child.cancel


def with_timeout(parent: Context, timeout: float) -> tuple[Context, CancelFunc]:
    """Derive a child context that expires ``timeout`` seconds from now."""
    child = Context(parent, deadline=time.monotonic() + max(0.0, timeout))
    return child, child.cancel
