"""Unit tests covering HTTP request parsing and response serialization."""

import socket
import time
from unittest.mock import Mock

import pytest

from graceserver.domain.correlation_id import clear_correlation_id, set_correlation_id
from graceserver.domain.http_types import HttpRequest, HttpResponse, should_close
from graceserver.pipeline.io import (
    RequestHeaderTooLarge,
    deadline_after,
    determine_content_length,
    parse_headers,
    parse_request_line,
    receive_request,
    recv_with_deadline,
    send_response,
)


class FakeSocket:
    """Minimal socket stub that returns predefined chunks sequentially."""

    def __init__(self, chunks):
        self._chunks = [
            chunk if isinstance(chunk, bytes) else chunk.encode() for chunk in chunks
        ]
        self.sent = b""
        self.timeouts = []

    def recv(self, _):
        if self._chunks:
            return self._chunks.pop(0)
        return b""

    def settimeout(self, value):
        self.timeouts.append(value)

    def sendall(self, data):
        self.sent += data


def test_parse_headers_normalizes_keys_and_joins_repeats():
    """Header names are lowercased and repeated values joined."""
    headers = parse_headers(
        ["Content-Length: 10", "User-Agent: ExampleClient", "Accept: a", "accept: b"]
    )
    assert headers == {
        "content-length": "10",
        "user-agent": "ExampleClient",
        "accept": "a, b",
    }


@pytest.mark.parametrize("line", ["invalid-line", "Bad Name: x", "Host : x", ": empty"])
def test_parse_headers_rejects_malformed_lines(line):
    """Lines without a clean name and colon are malformed."""
    with pytest.raises(ValueError):
        parse_headers([line])


def test_parse_request_line_splits_query_and_version():
    """Path is unquoted and the query kept separately."""
    assert parse_request_line("GET /a%20b?x=1 HTTP/1.0") == ("GET", "/a b", "x=1", "HTTP/1.0")


@pytest.mark.parametrize(
    "line", ["GET /", "get / HTTP/1.1", "GET / HTTP/2.0", "GET / SPDY/3"]
)
def test_parse_request_line_rejects_invalid(line):
    """Unknown versions and malformed lines are rejected."""
    with pytest.raises(ValueError):
        parse_request_line(line)


def test_determine_content_length():
    """Content-Length must be a non-negative integer when present."""
    assert determine_content_length({}) == 0
    assert determine_content_length({"content-length": "12"}) == 12
    with pytest.raises(ValueError):
        determine_content_length({"content-length": "-1"})
    with pytest.raises(ValueError):
        determine_content_length({"content-length": "abc"})
    with pytest.raises(ValueError):
        determine_content_length({"transfer-encoding": "chunked"})


def test_receive_request_handles_partial_reads_and_leftover_bytes():
    """Receiving a request must tolerate partial socket reads."""
    request_bytes = (
        b"POST /upload?id=7 HTTP/1.1\r\n"
        b"Host: localhost\r\n"
        b"Content-Length: 5\r\n\r\n"
        b"helloEXTRA"
    )
    client = FakeSocket([request_bytes[:25], request_bytes[25:50], request_bytes[50:]])
    request, leftover = receive_request(client, b"", 1024, None)
    assert isinstance(request, HttpRequest)
    assert request.method == "POST"
    assert request.path == "/upload"
    assert request.query == "id=7"
    assert request.body == b"hello"
    assert leftover == b"EXTRA"


def test_receive_request_returns_none_when_peer_closes():
    """An early close yields no request."""
    request, leftover = receive_request(FakeSocket([b"GET / HT"]), b"", 1024, None)
    assert request is None
    assert leftover == b""


def test_receive_request_enforces_header_limit():
    """Header blocks over the limit raise RequestHeaderTooLarge."""
    big_header = b"GET / HTTP/1.1\r\nX-Big: " + b"a" * 200 + b"\r\n\r\n"
    with pytest.raises(RequestHeaderTooLarge):
        receive_request(FakeSocket([big_header]), b"", 64, None)


def test_receive_request_enforces_header_limit_without_delimiter():
    """An unterminated header stream is cut off once it passes the limit."""
    chunks = [b"GET / HTTP/1.1\r\nX-Big: " + b"a" * 100] * 5
    with pytest.raises(RequestHeaderTooLarge):
        receive_request(FakeSocket(chunks), b"", 128, None)


class TestRecvWithDeadline:
    """Tests for recv_with_deadline helper function."""

    def test_recv_before_deadline(self):
        """Successful recv before deadline expires."""
        mock_socket = Mock(spec=socket.socket)
        mock_socket.recv.return_value = b"test data"
        deadline_ns = time.monotonic_ns() + 1_000_000_000
        assert recv_with_deadline(mock_socket, deadline_ns) == b"test data"
        timeout_arg = mock_socket.settimeout.call_args[0][0]
        assert 0 < timeout_arg <= 1.0

    def test_recv_after_deadline_expired(self):
        """TimeoutError raised when deadline already passed."""
        mock_socket = Mock(spec=socket.socket)
        deadline_ns = time.monotonic_ns() - 1_000_000_000
        with pytest.raises(TimeoutError, match="Request deadline exceeded"):
            recv_with_deadline(mock_socket, deadline_ns)
        mock_socket.recv.assert_not_called()

    def test_recv_without_deadline_blocks(self):
        """A None deadline clears the socket timeout."""
        mock_socket = Mock(spec=socket.socket)
        mock_socket.recv.return_value = b"x"
        recv_with_deadline(mock_socket, None)
        mock_socket.settimeout.assert_called_once_with(None)


def test_deadline_after_zero_means_none():
    """A zero timeout disables the deadline."""
    assert deadline_after(0) is None
    assert deadline_after(1.0) > time.monotonic_ns()


def test_send_response_frames_body_and_close():
    """Responses carry Content-Length, Connection and the correlation id."""
    client = FakeSocket([])
    set_correlation_id("abc-123")
    try:
        send_response(client, HttpResponse("HTTP/1.1 200 OK", {}, b"hi", True), timeout=2.0)
    finally:
        clear_correlation_id()
    head, body = client.sent.split(b"\r\n\r\n", 1)
    assert head.startswith(b"HTTP/1.1 200 OK\r\n")
    assert b"Content-Length: 2" in head
    assert b"Connection: close" in head
    assert b"X-Request-ID: abc-123" in head
    assert body == b"hi"
    assert client.timeouts == [2.0]


def test_send_response_chunked():
    """Chunked responses stream each non-empty piece."""
    client = FakeSocket([])
    response = HttpResponse(
        "HTTP/1.1 200 OK", {}, body_iter=iter([b"ab", b"", b"cde"]), use_chunked=True
    )
    send_response(client, response)
    assert client.sent.endswith(b"2\r\nab\r\n3\r\ncde\r\n0\r\n\r\n")
    assert b"Transfer-Encoding: chunked" in client.sent
    assert client.timeouts == [None]


@pytest.mark.parametrize(
    "version,connection,expected",
    [
        ("HTTP/1.1", "", False),
        ("HTTP/1.1", "close", True),
        ("HTTP/1.1", "Keep-Alive, Close", True),
        ("HTTP/1.0", "", True),
        ("HTTP/1.0", "keep-alive", False),
    ],
)
def test_should_close(version, connection, expected):
    """Connection reuse follows the HTTP version defaults."""
    headers = {"connection": connection} if connection else {}
    request = HttpRequest("GET", "/", headers, b"", version=version)
    assert should_close(request) is expected
