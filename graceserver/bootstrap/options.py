"""Functional options for building a server and resolving its settings.

Each option is a plain callable that mutates exactly one field of a
``ServerOptions`` record. Options are applied in the order given, so the last
option touching a field wins. Only ``with_port`` rejects its input, raising
``ConfigError`` for a negative port; other out-of-range values resolve to
defaults in ``resolve_settings``.
"""

import socket
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from graceserver.domain.errors import ConfigError

DEFAULT_WRITE_TIMEOUT = 15.0
DEFAULT_READ_TIMEOUT = 15.0
DEFAULT_IDLE_TIMEOUT = 60.0
DEFAULT_MAX_HEADER_BYTES = 1 << 20
DEFAULT_HOST = ""
DEFAULT_PORT = "0"
MAX_PORT = 65535


@dataclass
class ServerOptions:
    """Mutable option record; None means the field was never set."""

    host: Optional[str] = None
    port: Optional[str] = None
    max_header_bytes: Optional[int] = None
    write_timeout: Optional[float] = None
    read_timeout: Optional[float] = None
    idle_timeout: Optional[float] = None


Option = Callable[[ServerOptions], None]


@dataclass(frozen=True)
class ServerSettings:
    """Resolved server settings. Timeouts are seconds; 0 disables a timeout."""

    host: str
    port: str
    max_header_bytes: int
    write_timeout: float
    read_timeout: float
    idle_timeout: float

    @property
    def address(self) -> str:
        return format_address(self.host, self.port)


def _resolve_seconds(value: Optional[float], default: float) -> float:
    # Negative timeouts behave like 0: no timeout.
    if value is None:
        return default
    return max(0.0, value)


def with_host(host: str) -> Option:
    def apply(options: ServerOptions) -> None:
        options.host = host

    return apply


def with_port(port: int) -> Option:
    """Set the listening port. Port 0 listens on a random available port."""

    def apply(options: ServerOptions) -> None:
        if port < 0:
            raise ConfigError("port cannot be less than zero")
        options.port = str(port)

    return apply


def with_max_header_bytes(limit: int) -> Option:
    """Limit the request header block; 0 or less selects the default."""

    def apply(options: ServerOptions) -> None:
        options.max_header_bytes = limit

    return apply


def with_write_timeout(timeout: float) -> Option:
    def apply(options: ServerOptions) -> None:
        options.write_timeout = float(timeout)

    return apply


def with_read_timeout(timeout: float) -> Option:
    def apply(options: ServerOptions) -> None:
        options.read_timeout = float(timeout)

    return apply


def with_idle_timeout(timeout: float) -> Option:
    def apply(options: ServerOptions) -> None:
        options.idle_timeout = float(timeout)

    return apply


def apply_options(options: Iterable[Option]) -> ServerOptions:
    """Apply options in order to a fresh record."""
    record = ServerOptions()
    for option in options:
        option(record)
    return record


def format_address(host: str, port: str) -> str:
    """Join host and port, bracketing IPv6 literals."""
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def resolve_tcp_address(host: str, port: str) -> tuple[str, int]:
    """Check that host:port names a usable TCP address.

    An empty host means every interface. Raises ConfigError when the port is
    not a number in range or the host does not resolve.
    """
    address = format_address(host, port)
    try:
        port_number = int(port)
    except ValueError as exc:
        raise ConfigError(f"invalid port in address {address!r}") from exc
    if not 0 <= port_number <= MAX_PORT:
        raise ConfigError(f"invalid port in address {address!r}")
    try:
        socket.getaddrinfo(
            host or None,
            port_number,
            type=socket.SOCK_STREAM,
            flags=socket.AI_PASSIVE,
        )
    except (socket.gaierror, UnicodeError) as exc:
        raise ConfigError(f"cannot resolve address {address!r}: {exc}") from exc
    return host, port_number


def resolve_settings(options: Iterable[Option]) -> ServerSettings:
    """Apply options, validate the address and fill unset fields with defaults."""
    record = apply_options(options)
    host = record.host if record.host is not None else DEFAULT_HOST
    port = record.port if record.port is not None else DEFAULT_PORT
    resolve_tcp_address(host, port)
    return ServerSettings(
        host=host,
        port=port,
        max_header_bytes=(
            record.max_header_bytes
            if record.max_header_bytes is not None and record.max_header_bytes > 0
            else DEFAULT_MAX_HEADER_BYTES
        ),
        write_timeout=_resolve_seconds(record.write_timeout, DEFAULT_WRITE_TIMEOUT),
        read_timeout=_resolve_seconds(record.read_timeout, DEFAULT_READ_TIMEOUT),
        idle_timeout=_resolve_seconds(record.idle_timeout, DEFAULT_IDLE_TIMEOUT),
    )
