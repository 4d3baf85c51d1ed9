"""Request and response types exchanged with the caller's handler."""

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable, Optional

if TYPE_CHECKING:
    from graceserver.lifecycle.context import Context


@dataclass
class HttpRequest:
    """A parsed HTTP request.

    ``context`` is cancelled when the response has been written, when the
    connection ends, or as soon as server shutdown begins.
    """

    method: str
    path: str
    headers: dict[str, str]
    body: bytes
    version: str = "HTTP/1.1"
    query: str = ""
    client: Optional[str] = None
    context: Optional["Context"] = field(default=None, repr=False, compare=False)


@dataclass
class HttpResponse:
    """An HTTP response to be written back to the client."""

    status_line: str
    headers: dict[str, str]
    body: bytes = b""
    close_connection: bool = False
    body_iter: Optional[Iterable[bytes]] = None
    use_chunked: bool = False

    @property
    def status_code(self) -> int:
        return int(self.status_line.split(" ", 2)[1])


Handler = Callable[[HttpRequest], HttpResponse]


def should_close(request: HttpRequest) -> bool:
    """Return True when the client asked for the connection to end.

    HTTP/1.1 keeps connections open unless told otherwise; HTTP/1.0 closes
    them unless the client sent ``Connection: keep-alive``.
    """
    connection = request.headers.get("connection", "").lower()
    tokens = {token.strip() for token in connection.split(",")}
    if "close" in tokens:
        return True
    if request.version == "HTTP/1.0":
        return "keep-alive" not in tokens
    return False
