"""Pure HTTP response builders used by handlers and by the engine itself."""

from typing import Optional

from graceserver.domain.http_types import HttpRequest, HttpResponse, should_close


def _keep_alive_preference(request: Optional[HttpRequest]) -> bool:
    return should_close(request) if request is not None else False


def text_response(
    message: str,
    request: Optional[HttpRequest] = None,
    status: str = "200 OK",
) -> HttpResponse:
    """Return a text/plain response honouring the request's connection preference."""
    return HttpResponse(
        f"HTTP/1.1 {status}",
        {"Content-Type": "text/plain; charset=utf-8"},
        message.encode(),
        _keep_alive_preference(request),
    )


def bad_request_response() -> HttpResponse:
    """Return a 400 response; the request could not be framed so the connection ends."""
    return HttpResponse(
        "HTTP/1.1 400 Bad Request",
        {"Content-Type": "text/plain; charset=utf-8"},
        b"400 Bad Request",
        True,
    )


def header_too_large_response() -> HttpResponse:
    """Return a 431 response for header blocks above the configured limit."""
    return HttpResponse(
        "HTTP/1.1 431 Request Header Fields Too Large",
        {"Content-Type": "text/plain; charset=utf-8"},
        b"431 Request Header Fields Too Large",
        True,
    )


def internal_error_response() -> HttpResponse:
    """Return a 500 response used when the handler fails."""
    return HttpResponse(
        "HTTP/1.1 500 Internal Server Error",
        {"Content-Type": "text/plain; charset=utf-8"},
        b"500 Internal Server Error",
        True,
    )


def draining_response() -> HttpResponse:
    """Return a 503 response for connections that arrive during shutdown."""
    return HttpResponse(
        "HTTP/1.1 503 Service Unavailable",
        {"Content-Type": "text/plain; charset=utf-8", "Retry-After": "1"},
        b"draining",
        True,
    )
