"""Server construction from functional options and its graceful-stop lifecycle.

Typical use::

    server = new_server(handler, with_host("127.0.0.1"), with_port(8080))
    server.start_with_await_stop(stop_timeout=10)

``start_with_await_stop`` blocks the main thread until SIGINT, SIGABRT,
SIGQUIT, SIGTERM or SIGHUP arrives, then drains in-flight requests for at
most ``stop_timeout`` seconds.
"""

import logging
import socket
import threading
import time
from typing import Callable, Optional

from graceserver.bootstrap.options import Option, ServerSettings, resolve_settings
from graceserver.bootstrap.socket_factory import create_listener
from graceserver.domain.correlation_id import CorrelationLoggerAdapter
from graceserver.domain.errors import (
    ConfigError,
    DeadlineExceeded,
    ServeError,
    ShutdownDeadlineExceeded,
    ShutdownError,
)
from graceserver.domain.http_types import Handler
from graceserver.lifecycle.context import Context, background, with_cancel, with_timeout
from graceserver.lifecycle.signals import SignalWaiter
from graceserver.lifecycle.state import LifecycleState, ServerLifecycle
from graceserver.transport.accept_loop import run_accept_loop
from graceserver.transport.context import WorkerContext

SERVER_LOGGER = CorrelationLoggerAdapter(logging.getLogger("graceserver.server"), {})

SHUTDOWN_POLL_MIN = 0.001
SHUTDOWN_POLL_MAX = 0.5

ShutdownHook = Callable[[], None]


class Server:
    """An HTTP server bound to a cancellable base context.

    Build instances with ``new_server``. The base context is handed to every
    request (as the parent of ``request.context``) and is cancelled by a
    shutdown hook as soon as shutdown begins.
    """

    def __init__(self, handler: Handler, settings: ServerSettings, context: Context) -> None:
        self.handler = handler
        self.settings = settings
        self.lifecycle = ServerLifecycle()
        self._root_context = context
        self._base_context, cancel_base = with_cancel(context)
        self._lock = threading.Lock()
        self._on_shutdown: list[ShutdownHook] = []
        self._listener: Optional[socket.socket] = None
        self._listener_error: Optional[OSError] = None
        self._server_address: Optional[tuple[str, int]] = None
        self._serve_error: Optional[ServeError] = None
        self._listening = threading.Event()
        self._serve_done = threading.Event()
        self.register_on_shutdown(cancel_base)

    @property
    def address(self) -> str:
        """Configured ``host:port``."""
        return self.settings.address

    @property
    def server_address(self) -> Optional[tuple[str, int]]:
        """Bound (host, port) once listening; the port is real even for port 0."""
        return self._server_address

    @property
    def serve_error(self) -> Optional[ServeError]:
        """Error that ended a background serve loop, if any."""
        return self._serve_error

    @property
    def state(self) -> LifecycleState:
        return self.lifecycle.state

    def base_context(self) -> Context:
        return self._base_context

    def register_on_shutdown(self, hook: ShutdownHook) -> None:
        """Register a function to call when shutdown begins."""
        with self._lock:
            self._on_shutdown.append(hook)

    def set_keep_alives_enabled(self, enabled: bool) -> None:
        """Toggle keep-alive reuse; disabling also closes idle connections."""
        self.lifecycle.set_keep_alives_enabled(enabled)
        if not enabled:
            self.lifecycle.close_idle_connections()

    def listen_and_serve(self) -> None:
        """Bind the listener and serve until shutdown.

        Raises ServeError when the listener cannot be created. Returns
        normally once the server has been shut down or closed.
        """
        if self.lifecycle.should_stop():
            SERVER_LOGGER.info("Server already closed", extra={"event": "serve_skipped"})
            return
        try:
            listener = create_listener(self.settings.host, int(self.settings.port))
        except OSError as error:
            raise ServeError(f"listen tcp {self.address}: {error}") from error

        with self._lock:
            self._listener = listener
        if not self.lifecycle.begin_serving():
            with self._lock:
                self._listener = None
            listener.close()
            return
        self._server_address = listener.getsockname()[:2]
        self._listening.set()
        SERVER_LOGGER.info(
            "Server listening for connections",
            extra={
                "event": "server_listening",
                "host": self._server_address[0],
                "port": self._server_address[1],
            },
        )

        try:
            run_accept_loop(listener, self._worker_context())
        finally:
            with self._lock:
                self._listener = None
            try:
                listener.close()
            except OSError as error:
                self._listener_error = error
                SERVER_LOGGER.error(
                    "Closing listener failed",
                    extra={"event": "listener_close_failed", "error_type": type(error).__name__},
                )
            self.lifecycle.mark_listener_closed()

    def serve_in_background(self) -> threading.Thread:
        """Run ``listen_and_serve`` on a daemon thread.

        A ServeError is not raised to the caller; it is logged and kept on
        ``serve_error``.
        """

        def serve() -> None:
            try:
                self.listen_and_serve()
            except ServeError as error:
                self._serve_error = error
                SERVER_LOGGER.error(
                    "Server failed to serve",
                    extra={
                        "event": "serve_failed",
                        "address": self.address,
                        "error": str(error),
                    },
                )
            finally:
                self._serve_done.set()

        thread = threading.Thread(target=serve, name="graceserver-serve", daemon=True)
        thread.start()
        return thread

    def wait_until_listening(self, timeout: Optional[float] = None) -> bool:
        """Block until the listener is bound; False on timeout or serve failure."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self._listening.wait(0.01):
            if self._serve_done.is_set():
                return self._listening.is_set()
            if deadline is not None and time.monotonic() >= deadline:
                return False
        return True

    def shutdown(self, context: Context) -> None:
        """Stop accepting, run shutdown hooks and wait for in-flight requests.

        Idle connections are closed as they are found. When ``context`` ends
        first, every remaining connection is force-closed and
        ShutdownDeadlineExceeded (deadline) or ShutdownError (cancellation)
        is raised.
        """
        SERVER_LOGGER.info(
            "Graceful shutdown started",
            extra={
                "event": "shutdown_started",
                "active_connections": self.lifecycle.active_connection_count(),
                "stop_timeout": context.remaining(),
            },
        )
        self.lifecycle.begin_draining()
        self._wake_listener()
        self._run_shutdown_hooks()

        poll_interval = SHUTDOWN_POLL_MIN
        while True:
            if self.lifecycle.listener_closed() and self.lifecycle.close_idle_connections():
                self.lifecycle.mark_stopped()
                if self._listener_error is not None:
                    raise ShutdownError(
                        f"closing listener failed: {self._listener_error}"
                    ) from self._listener_error
                SERVER_LOGGER.info(
                    "Graceful shutdown complete", extra={"event": "shutdown_complete"}
                )
                return
            if context.wait(poll_interval):
                break
            poll_interval = min(poll_interval * 2, SHUTDOWN_POLL_MAX)

        closed = self.lifecycle.close_all_connections()
        self.lifecycle.mark_stopped()
        error = context.error()
        SERVER_LOGGER.warning(
            "Shutdown deadline reached, closing remaining connections",
            extra={"event": "shutdown_forced", "closed_connections": closed},
        )
        if isinstance(error, DeadlineExceeded):
            raise ShutdownDeadlineExceeded(
                "graceful shutdown timed out with requests in flight"
            ) from error
        raise ShutdownError("graceful shutdown was cancelled") from error

    def close(self) -> None:
        """Stop immediately: no new connections and every open one is closed.

        Shutdown hooks are not run.
        """
        self.lifecycle.begin_draining()
        self._wake_listener()
        closed = self.lifecycle.close_all_connections()
        self.lifecycle.mark_stopped()
        SERVER_LOGGER.info(
            "Server closed", extra={"event": "server_closed", "closed_connections": closed}
        )

    def start_with_await_stop(self, stop_timeout: float) -> None:
        """Serve in the background, wait for a termination signal, then drain.

        Must be called from the main thread. Returns once shutdown completes;
        raises ShutdownDeadlineExceeded when requests are still running after
        ``stop_timeout`` seconds.
        """
        with SignalWaiter() as waiter:
            self.serve_in_background()
            waiter.wait()

            graceful_context, cancel_shutdown = with_timeout(self._root_context, stop_timeout)
            try:
                self.set_keep_alives_enabled(False)
                self.shutdown(graceful_context)
            finally:
                cancel_shutdown()

    def _worker_context(self) -> WorkerContext:
        return WorkerContext(
            handler=self.handler,
            settings=self.settings,
            lifecycle=self.lifecycle,
            base_context=self._base_context,
        )

    def _wake_listener(self) -> None:
        # Unblocks a pending accept() on platforms that support it; the
        # accept loop otherwise notices on its next poll timeout.
        with self._lock:
            listener = self._listener
        if listener is None:
            return
        try:
            listener.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass

    def _run_shutdown_hooks(self) -> None:
        with self._lock:
            hooks = list(self._on_shutdown)
        for hook in hooks:
            try:
                hook()
            except Exception as error:  # pylint: disable=broad-except
                SERVER_LOGGER.error(
                    "Shutdown hook failed",
                    extra={"event": "shutdown_hook_failed", "error_type": type(error).__name__},
                    exc_info=True,
                )


def new_server(
    handler: Optional[Handler], *options: Option, context: Optional[Context] = None
) -> Server:
    """Build a server from a request handler and functional options.

    Options apply in order and the last one touching a field wins. Raises
    ConfigError for a missing handler, an option rejecting its value, or an
    address that does not resolve.
    """
    if handler is None:
        raise ConfigError("undefined handler")
    if not callable(handler):
        raise ConfigError("handler must be callable")
    settings = resolve_settings(options)
    server = Server(handler, settings, context if context is not None else background())
    SERVER_LOGGER.info(
        "Server configured",
        extra={
            "event": "server_configured",
            "address": settings.address,
            "read_timeout": settings.read_timeout,
            "write_timeout": settings.write_timeout,
            "idle_timeout": settings.idle_timeout,
            "max_header_bytes": settings.max_header_bytes,
        },
    )
    return server
