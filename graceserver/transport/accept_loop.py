"""Main connection acceptance loop."""

import logging
import socket
import threading
import time

from graceserver.domain.correlation_id import CorrelationLoggerAdapter
from graceserver.domain.response_builders import draining_response
from graceserver.pipeline.io import send_response
from graceserver.transport.context import WorkerContext
from graceserver.transport.worker import handle_client

ACCEPT_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("graceserver.transport.accept"), {}
)

ACCEPT_RETRY_DELAY = 0.05


def _reject_while_draining(client_socket: socket.socket, client_addr_str: str) -> None:
    ACCEPT_LOGGER.debug(
        "Rejecting connection during shutdown",
        extra={"event": "connection_rejected_draining", "client": client_addr_str},
    )
    try:
        send_response(client_socket, draining_response(), timeout=1.0)
    except OSError:
        pass
    finally:
        client_socket.close()


def _spawn_worker(
    client_socket: socket.socket,
    client_address: tuple[str, int],
    context: WorkerContext,
) -> None:
    thread = threading.Thread(
        target=handle_client,
        args=(client_socket, client_address, context),
        name=f"graceserver-conn-{client_address[0]}:{client_address[1]}",
        daemon=True,
    )
    thread.start()


def run_accept_loop(listener: socket.socket, context: WorkerContext) -> None:
    """Accept connections until shutdown begins, one worker thread each.

    The listener must have a timeout so the loop can observe shutdown. The
    caller owns the listener and closes it afterwards.
    """
    lifecycle = context.lifecycle
    while not lifecycle.should_stop():
        try:
            client_socket, client_address = listener.accept()
        except socket.timeout:
            continue
        except OSError as error:
            if lifecycle.should_stop():
                break
            ACCEPT_LOGGER.error(
                "Socket accept failed",
                extra={"event": "accept_error", "error_type": type(error).__name__},
            )
            time.sleep(ACCEPT_RETRY_DELAY)
            continue

        client_addr_str = f"{client_address[0]}:{client_address[1]}"
        if lifecycle.should_stop():
            _reject_while_draining(client_socket, client_addr_str)
            break

        if ACCEPT_LOGGER.logger.isEnabledFor(logging.DEBUG):
            ACCEPT_LOGGER.debug(
                "Client connection accepted",
                extra={"event": "client_accepted", "client": client_addr_str},
            )
        _spawn_worker(client_socket, client_address, context)

    ACCEPT_LOGGER.info("Accept loop stopped", extra={"event": "accept_loop_stopped"})
