"""Listening socket creation."""

import logging
import socket

from graceserver.domain.correlation_id import CorrelationLoggerAdapter

SOCKET_LOGGER = CorrelationLoggerAdapter(logging.getLogger("graceserver.socket"), {})

ACCEPT_POLL_INTERVAL = 0.25
LISTEN_BACKLOG = 128


def create_listener(host: str, port: int) -> socket.socket:
    """Bind and listen on host:port.

    An empty host listens on every interface. The socket gets a short timeout
    so the accept loop can notice shutdown between connections. OSError from
    the bind propagates to the caller.
    """
    family = socket.AF_INET6 if ":" in host else socket.AF_INET
    listener = socket.create_server(
        (host, port), family=family, backlog=LISTEN_BACKLOG
    )
    listener.settimeout(ACCEPT_POLL_INTERVAL)
    bound_host, bound_port = listener.getsockname()[:2]
    SOCKET_LOGGER.debug(
        "Listener bound",
        extra={"event": "listener_bound", "host": bound_host, "port": bound_port},
    )
    return listener
