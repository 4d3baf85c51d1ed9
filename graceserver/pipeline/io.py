"""HTTP/1.x request parsing and response serialization over raw sockets."""

import logging
import socket
import time
import urllib.parse
from typing import Optional, Tuple

from graceserver.domain.correlation_id import CorrelationLoggerAdapter, get_correlation_id
from graceserver.domain.http_types import HttpRequest, HttpResponse

IO_LOGGER = CorrelationLoggerAdapter(logging.getLogger("graceserver.io"), {})

HEADER_DELIMITER = b"\r\n\r\n"
RECV_SIZE = 4096
SUPPORTED_VERSIONS = {"HTTP/1.0", "HTTP/1.1"}


class RequestHeaderTooLarge(Exception):
    """Raised when the header block exceeds the configured limit."""


def recv_with_deadline(client_socket: socket.socket, deadline_ns: Optional[int]) -> bytes:
    """Receive data from the socket, raising TimeoutError once the deadline passes.

    A deadline of None waits indefinitely.
    """
    if deadline_ns is None:
        client_socket.settimeout(None)
        return client_socket.recv(RECV_SIZE)
    remaining_ns = deadline_ns - time.monotonic_ns()
    if remaining_ns <= 0:
        raise TimeoutError("Request deadline exceeded")
    client_socket.settimeout(remaining_ns / 1_000_000_000)
    return client_socket.recv(RECV_SIZE)


def deadline_after(seconds: float) -> Optional[int]:
    """Convert a timeout in seconds into a monotonic deadline; 0 means none."""
    if seconds <= 0:
        return None
    return time.monotonic_ns() + int(seconds * 1_000_000_000)


def parse_headers(lines: list[str]) -> dict[str, str]:
    """Convert raw header lines into a lowercase-keyed dictionary.

    Repeated headers are joined with a comma.
    """
    parsed: dict[str, str] = {}
    for line in lines:
        if not line:
            continue
        name, separator, value = line.partition(":")
        if not separator or not name or any(char.isspace() for char in name):
            raise ValueError(f"Malformed header line: {line!r}")
        key = name.lower()
        value = value.strip()
        parsed[key] = f"{parsed[key]}, {value}" if key in parsed else value
    return parsed


def parse_request_line(request_line: str) -> Tuple[str, str, str, str]:
    """Split the request line into method, path, query and version."""
    try:
        method, target, version = request_line.split(" ", 2)
    except ValueError as exc:
        raise ValueError("Invalid request line") from exc
    if not method or not method.isupper() or version not in SUPPORTED_VERSIONS:
        raise ValueError("Invalid request line")
    parsed_target = urllib.parse.urlsplit(target)
    path = urllib.parse.unquote(parsed_target.path) or "/"
    return method, path, parsed_target.query, version


def determine_content_length(headers: dict[str, str]) -> int:
    """Validate and return the declared Content-Length, defaulting to zero."""
    if "transfer-encoding" in headers:
        raise ValueError("Chunked request bodies are not supported")
    header_value = headers.get("content-length")
    if header_value is None:
        return 0
    try:
        content_length = int(header_value)
    except ValueError as exc:
        raise ValueError("Invalid Content-Length") from exc
    if content_length < 0:
        raise ValueError("Negative Content-Length")
    return content_length


def receive_request(
    client_socket: socket.socket,
    buffer: bytes,
    max_header_bytes: int,
    deadline_ns: Optional[int],
) -> Tuple[Optional[HttpRequest], bytes]:
    """Read from the socket until a complete request is buffered.

    Returns ``(None, b"")`` when the peer closes the connection first. Raises
    RequestHeaderTooLarge, ValueError for malformed framing and TimeoutError
    when the deadline passes.
    """
    while HEADER_DELIMITER not in buffer:
        if len(buffer) > max_header_bytes:
            raise RequestHeaderTooLarge
        chunk = recv_with_deadline(client_socket, deadline_ns)
        if not chunk:
            return None, b""
        buffer += chunk

    header_block, remainder = buffer.split(HEADER_DELIMITER, 1)
    if len(header_block) > max_header_bytes:
        raise RequestHeaderTooLarge
    header_lines = header_block.decode("iso-8859-1").split("\r\n")
    method, path, query, version = parse_request_line(header_lines[0])
    headers = parse_headers(header_lines[1:])
    content_length = determine_content_length(headers)

    while len(remainder) < content_length:
        chunk = recv_with_deadline(client_socket, deadline_ns)
        if not chunk:
            return None, b""
        remainder += chunk

    body = remainder[:content_length]
    leftover = remainder[content_length:]
    IO_LOGGER.debug(
        "Parsed request",
        extra={"event": "request_parsed", "method": method, "route": path},
    )
    request = HttpRequest(method, path, headers, body, version=version, query=query)
    return request, leftover


def send_response(
    client_socket: socket.socket, response: HttpResponse, timeout: float = 0
) -> None:
    """Serialize and send the response, bounded by ``timeout`` seconds (0 for none)."""
    headers = dict(response.headers)

    correlation_id = get_correlation_id()
    if correlation_id:
        headers["X-Request-ID"] = correlation_id

    if response.use_chunked:
        headers["Transfer-Encoding"] = "chunked"
    else:
        headers["Content-Length"] = str(len(response.body))
    if response.close_connection:
        headers["Connection"] = "close"
    header_lines = [response.status_line]
    header_lines.extend(f"{name}: {value}" for name, value in headers.items())
    header_block = "\r\n".join(header_lines).encode("iso-8859-1") + HEADER_DELIMITER

    client_socket.settimeout(timeout if timeout > 0 else None)
    if response.use_chunked and response.body_iter is not None:
        client_socket.sendall(header_block)
        for chunk in response.body_iter:
            if not chunk:
                continue
            client_socket.sendall(f"{len(chunk):X}\r\n".encode() + chunk + b"\r\n")
        client_socket.sendall(b"0\r\n\r\n")
    else:
        client_socket.sendall(header_block + response.body)
    IO_LOGGER.debug(
        "Sent response",
        extra={"event": "response_sent", "status": response.status_line},
    )
