"""Server lifecycle state, keep-alive switch and connection tracking."""

import enum
import logging
import socket
import threading
import time

from graceserver.domain.correlation_id import CorrelationLoggerAdapter

LIFECYCLE_LOGGER = CorrelationLoggerAdapter(logging.getLogger("graceserver.lifecycle"), {})


class LifecycleState(enum.Enum):
    IDLE = "idle"
    SERVING = "serving"
    DRAINING = "draining"
    STOPPED = "stopped"


class ConnectionState(enum.Enum):
    """Where a connection is in its request cycle.

    NEW and IDLE connections are waiting for bytes. Shutdown closes IDLE ones
    at once and NEW ones after a grace period; ACTIVE connections are reading,
    handling or writing a request.
    """

    NEW = "new"
    ACTIVE = "active"
    IDLE = "idle"
    CLOSED = "closed"


# A NEW connection younger than this may already have request bytes in flight,
# so shutdown treats it as busy until the grace period passes.
NEW_CONNECTION_GRACE = 5.0


def _close_quietly(client_socket: socket.socket) -> None:
    # shutdown() wakes a worker blocked in recv(); the worker closes the fd.
    try:
        client_socket.shutdown(socket.SHUT_RDWR)
    except OSError:
        pass


class ServerLifecycle:
    """Tracks the serve state machine and every open client connection."""

    def __init__(self, new_connection_grace: float = NEW_CONNECTION_GRACE) -> None:
        self._lock = threading.Lock()
        self._new_connection_grace = new_connection_grace
        self._stop_event = threading.Event()
        self._draining_event = threading.Event()
        self._listener_closed = threading.Event()
        self._listener_closed.set()
        self._keep_alives = True
        self._state = LifecycleState.IDLE
        self._connections: dict[socket.socket, ConnectionState] = {}
        self._accepted_at: dict[socket.socket, float] = {}

    @property
    def state(self) -> LifecycleState:
        with self._lock:
            return self._state

    def _transition(self, new_state: LifecycleState) -> None:
        with self._lock:
            previous = self._state
            if previous == new_state:
                return
            self._state = new_state
        LIFECYCLE_LOGGER.info(
            "Server state changed",
            extra={
                "event": "state_changed",
                "state": new_state.value,
                "previous_state": previous.value,
            },
        )

    def should_stop(self) -> bool:
        """Check if the server should stop accepting new connections."""
        return self._stop_event.is_set()

    def is_draining(self) -> bool:
        return self._draining_event.is_set()

    def keep_alives_enabled(self) -> bool:
        with self._lock:
            return self._keep_alives

    def set_keep_alives_enabled(self, enabled: bool) -> None:
        with self._lock:
            self._keep_alives = enabled
        LIFECYCLE_LOGGER.debug(
            "Keep-alive setting changed",
            extra={"event": "keep_alives_changed", "keep_alives": enabled},
        )

    def begin_serving(self) -> bool:
        """Enter SERVING unless shutdown already started.

        Returns False when the server is already stopping.
        """
        with self._lock:
            if self._stop_event.is_set():
                return False
            self._listener_closed.clear()
        self._transition(LifecycleState.SERVING)
        return True

    def begin_draining(self) -> None:
        """Signal the server to begin graceful shutdown."""
        self._draining_event.set()
        self._stop_event.set()
        if self.state != LifecycleState.STOPPED:
            self._transition(LifecycleState.DRAINING)

    def mark_stopped(self) -> None:
        self._transition(LifecycleState.STOPPED)

    def mark_listener_closed(self) -> None:
        self._listener_closed.set()

    def listener_closed(self) -> bool:
        return self._listener_closed.is_set()

    def track_connection(self, client_socket: socket.socket) -> None:
        with self._lock:
            self._connections[client_socket] = ConnectionState.NEW
            self._accepted_at[client_socket] = time.monotonic()

    def activate_connection(self, client_socket: socket.socket) -> bool:
        """Mark a connection as busy with a request.

        Returns False when shutdown already closed the connection.
        """
        with self._lock:
            if self._connections.get(client_socket) in (None, ConnectionState.CLOSED):
                return False
            self._connections[client_socket] = ConnectionState.ACTIVE
            return True

    def idle_connection(self, client_socket: socket.socket) -> bool:
        """Mark a connection as waiting for its next request.

        Returns False when the connection was closed or keep-alives are off,
        in which case the worker should hang up.
        """
        with self._lock:
            if self._connections.get(client_socket) in (None, ConnectionState.CLOSED):
                return False
            if not self._keep_alives or self._draining_event.is_set():
                return False
            self._connections[client_socket] = ConnectionState.IDLE
            return True

    def forget_connection(self, client_socket: socket.socket) -> None:
        with self._lock:
            self._connections.pop(client_socket, None)
            self._accepted_at.pop(client_socket, None)

    def connection_state(self, client_socket: socket.socket) -> ConnectionState:
        with self._lock:
            return self._connections.get(client_socket, ConnectionState.CLOSED)

    def active_connection_count(self) -> int:
        with self._lock:
            return sum(
                1 for state in self._connections.values() if state == ConnectionState.ACTIVE
            )

    def close_idle_connections(self) -> bool:
        """Close every IDLE connection and every NEW one past its grace period.

        Returns True when no connection is still busy with a request.
        """
        quiescent = True
        to_close = []
        new_cutoff = time.monotonic() - self._new_connection_grace
        with self._lock:
            for client_socket, state in self._connections.items():
                if state == ConnectionState.ACTIVE:
                    quiescent = False
                elif state == ConnectionState.NEW and (
                    self._accepted_at.get(client_socket, 0.0) > new_cutoff
                ):
                    quiescent = False
                elif state != ConnectionState.CLOSED:
                    self._connections[client_socket] = ConnectionState.CLOSED
                    to_close.append(client_socket)
        for client_socket in to_close:
            _close_quietly(client_socket)
        return quiescent

    def close_all_connections(self) -> int:
        """Force-close every tracked connection and return how many were open."""
        with self._lock:
            to_close = [
                client_socket
                for client_socket, state in self._connections.items()
                if state != ConnectionState.CLOSED
            ]
            for client_socket in to_close:
                self._connections[client_socket] = ConnectionState.CLOSED
        for client_socket in to_close:
            _close_quietly(client_socket)
        return len(to_close)
