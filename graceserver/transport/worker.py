"""Worker thread logic for serving one client connection."""

import dataclasses
import logging
import socket
import time
from typing import Optional

from graceserver.domain.correlation_id import (
    CorrelationLoggerAdapter,
    adopt_correlation_id,
    clear_correlation_id,
)
from graceserver.domain.http_types import HttpRequest, HttpResponse, should_close
from graceserver.domain.response_builders import (
    bad_request_response,
    header_too_large_response,
    internal_error_response,
)
from graceserver.lifecycle.context import with_cancel
from graceserver.pipeline.io import (
    RequestHeaderTooLarge,
    deadline_after,
    receive_request,
    recv_with_deadline,
    send_response,
)
from graceserver.transport.context import WorkerContext

WORKER_LOGGER = CorrelationLoggerAdapter(
    logging.getLogger("graceserver.transport.worker"), {}
)


def _await_request_bytes(client_socket: socket.socket, deadline_ns: Optional[int]) -> bytes:
    """Wait for the first bytes of the next request; b"" on close or timeout."""
    try:
        return recv_with_deadline(client_socket, deadline_ns)
    except TimeoutError:
        return b""


def _invoke_handler(context: WorkerContext, request: HttpRequest) -> HttpResponse:
    try:
        response = context.handler(request)
    except Exception as error:  # pylint: disable=broad-except
        WORKER_LOGGER.error(
            "Handler raised an exception",
            extra={
                "event": "handler_error",
                "client": request.client,
                "route": request.path,
                "error_type": type(error).__name__,
            },
            exc_info=True,
        )
        return internal_error_response()
    if not isinstance(response, HttpResponse):
        WORKER_LOGGER.error(
            "Handler returned an invalid response",
            extra={
                "event": "handler_invalid_response",
                "route": request.path,
                "error_type": type(response).__name__,
            },
        )
        return internal_error_response()
    return response


def _read_request(
    client_socket: socket.socket,
    buffer: bytes,
    context: WorkerContext,
    client_addr_str: str,
    read_deadline_ns: Optional[int],
) -> tuple[Optional[HttpRequest], bytes]:
    """Read one request, answering framing errors directly.

    Returns ``(None, b"")`` when the connection must end.
    """
    settings = context.settings
    try:
        return receive_request(
            client_socket,
            buffer,
            settings.max_header_bytes,
            read_deadline_ns,
        )
    except RequestHeaderTooLarge:
        WORKER_LOGGER.warning(
            "Request header exceeded limit",
            extra={
                "event": "header_too_large",
                "client": client_addr_str,
                "max_header_bytes": settings.max_header_bytes,
            },
        )
        send_response(client_socket, header_too_large_response(), settings.write_timeout)
    except ValueError:
        WORKER_LOGGER.warning(
            "Malformed request received",
            extra={"event": "malformed_request", "client": client_addr_str},
        )
        send_response(client_socket, bad_request_response(), settings.write_timeout)
    except TimeoutError:
        WORKER_LOGGER.warning(
            "Request read timed out",
            extra={
                "event": "read_timeout",
                "client": client_addr_str,
                "read_timeout": settings.read_timeout,
            },
        )
    return None, b""


def _serve_request(
    client_socket: socket.socket,
    buffer: bytes,
    context: WorkerContext,
    client_addr_str: str,
    read_deadline_ns: Optional[int],
) -> tuple[bool, bytes]:
    """Serve one request. Returns whether to hang up and the unread bytes."""
    request, buffer = _read_request(
        client_socket, buffer, context, client_addr_str, read_deadline_ns
    )
    if request is None:
        return True, b""

    adopt_correlation_id(request.headers)
    request.client = client_addr_str
    request.context, cancel_request = with_cancel(context.base_context)
    started = time.monotonic()
    try:
        response = _invoke_handler(context, request)
        lifecycle = context.lifecycle
        close = (
            response.close_connection
            or should_close(request)
            or not lifecycle.keep_alives_enabled()
            or lifecycle.is_draining()
        )
        send_response(
            client_socket,
            dataclasses.replace(response, close_connection=close),
            context.settings.write_timeout,
        )
    finally:
        cancel_request()

    WORKER_LOGGER.info(
        "Request handled",
        extra={
            "event": "request_complete",
            "client": client_addr_str,
            "method": request.method,
            "route": request.path,
            "status": response.status_code,
            "duration_ms": round((time.monotonic() - started) * 1000, 3),
        },
    )
    clear_correlation_id()
    return close, buffer


def handle_client(
    client_socket: socket.socket,
    client_address: tuple[str, int],
    context: WorkerContext,
) -> None:
    """Process requests on a client socket until the connection is closed."""
    lifecycle = context.lifecycle
    settings = context.settings
    client_addr_str = f"{client_address[0]}:{client_address[1]}"
    lifecycle.track_connection(client_socket)
    buffer = b""
    # The first request must arrive in full within read_timeout of the accept;
    # later ones get read_timeout from their first byte after the idle wait.
    wait_deadline = deadline_after(settings.read_timeout)
    first_request = True

    try:
        while True:
            if not buffer:
                buffer = _await_request_bytes(client_socket, wait_deadline)
                if not buffer:
                    WORKER_LOGGER.debug(
                        "Client connection went quiet",
                        extra={"event": "client_disconnected", "client": client_addr_str},
                    )
                    break
            if not lifecycle.activate_connection(client_socket):
                break

            read_deadline = (
                wait_deadline if first_request else deadline_after(settings.read_timeout)
            )
            first_request = False
            should_hang_up, buffer = _serve_request(
                client_socket, buffer, context, client_addr_str, read_deadline
            )
            if should_hang_up or not lifecycle.idle_connection(client_socket):
                break
            wait_deadline = deadline_after(settings.idle_timeout or settings.read_timeout)
    except (ConnectionError, TimeoutError, OSError) as error:
        if lifecycle.should_stop():
            WORKER_LOGGER.debug(
                "Connection ended during shutdown",
                extra={
                    "event": "connection_closed_on_shutdown",
                    "client": client_addr_str,
                    "error_type": type(error).__name__,
                },
            )
        else:
            WORKER_LOGGER.error(
                "Error handling client connection",
                extra={
                    "event": "connection_error",
                    "client": client_addr_str,
                    "error_type": type(error).__name__,
                },
            )
    except Exception as error:  # pylint: disable=broad-except
        WORKER_LOGGER.error(
            "Unexpected error in worker",
            extra={
                "event": "worker_error",
                "client": client_addr_str,
                "error_type": type(error).__name__,
                "error": str(error),
            },
            exc_info=True,
        )
    finally:
        lifecycle.forget_connection(client_socket)
        try:
            client_socket.shutdown(socket.SHUT_WR)
        except OSError:
            pass
        client_socket.close()
        clear_correlation_id()
        WORKER_LOGGER.debug(
            "Socket closed",
            extra={"event": "socket_closed", "client": client_addr_str},
        )
