"""Server defaults, environment overrides and CLI argument parsing."""

import argparse
import os
from typing import Optional

from graceserver.bootstrap.options import (
    DEFAULT_IDLE_TIMEOUT,
    DEFAULT_MAX_HEADER_BYTES,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_WRITE_TIMEOUT,
    Option,
    with_host,
    with_idle_timeout,
    with_max_header_bytes,
    with_port,
    with_read_timeout,
    with_write_timeout,
)


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _env_int(name: str) -> Optional[int]:
    value = _env_str(name)
    return int(value) if value is not None else None


def _env_float(name: str, default: Optional[float] = None) -> Optional[float]:
    value = _env_str(name)
    return float(value) if value is not None else default


DEFAULT_STOP_TIMEOUT = _env_float("GRACESERVER_STOP_TIMEOUT", 30.0)


def parse_cli_args(argv: list[str]) -> argparse.Namespace:
    """Return parsed CLI arguments for server configuration.

    Flags left unset (and without a GRACESERVER_* override) stay None so the
    server falls back to its built-in defaults.
    """
    parser = argparse.ArgumentParser(description="Run an HTTP server with graceful shutdown")
    parser.add_argument("--host", default=_env_str("GRACESERVER_HOST"))
    parser.add_argument(
        "--port",
        type=int,
        default=_env_int("GRACESERVER_PORT"),
        help="TCP port to listen on (0 picks a free port)",
    )
    parser.add_argument(
        "--read-timeout",
        type=float,
        default=_env_float("GRACESERVER_READ_TIMEOUT"),
        help=f"Seconds allowed to read a request (default: {DEFAULT_READ_TIMEOUT:g})",
    )
    parser.add_argument(
        "--write-timeout",
        type=float,
        default=_env_float("GRACESERVER_WRITE_TIMEOUT"),
        help=f"Seconds allowed to write a response (default: {DEFAULT_WRITE_TIMEOUT:g})",
    )
    parser.add_argument(
        "--idle-timeout",
        type=float,
        default=_env_float("GRACESERVER_IDLE_TIMEOUT"),
        help=f"Seconds a keep-alive connection may sit idle (default: {DEFAULT_IDLE_TIMEOUT:g})",
    )
    parser.add_argument(
        "--max-header-bytes",
        type=int,
        default=_env_int("GRACESERVER_MAX_HEADER_BYTES"),
        help=f"Largest accepted request header block (default: {DEFAULT_MAX_HEADER_BYTES})",
    )
    parser.add_argument(
        "--stop-timeout",
        type=float,
        default=DEFAULT_STOP_TIMEOUT,
        help="Seconds to wait for in-flight requests on shutdown",
    )
    default_log_level = os.getenv("GRACESERVER_LOG_LEVEL", "INFO").upper()
    default_destination = os.getenv("GRACESERVER_LOG_DESTINATION", "stdout")
    default_log_format = os.getenv("GRACESERVER_LOG_FORMAT", "json").lower()
    parser.add_argument(
        "--log-level",
        default=default_log_level,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
    )
    parser.add_argument(
        "--log-destination",
        default=default_destination,
        help="stdout or a file path",
    )
    parser.add_argument(
        "--log-format",
        default=default_log_format,
        choices=["json", "text"],
        type=str.lower,
    )
    return parser.parse_args(argv)


def options_from_args(args: argparse.Namespace) -> list[Option]:
    """Translate explicitly provided CLI values into server options."""
    options: list[Option] = []
    if args.host is not None:
        options.append(with_host(args.host))
    if args.port is not None:
        options.append(with_port(args.port))
    if args.read_timeout is not None:
        options.append(with_read_timeout(args.read_timeout))
    if args.write_timeout is not None:
        options.append(with_write_timeout(args.write_timeout))
    if args.idle_timeout is not None:
        options.append(with_idle_timeout(args.idle_timeout))
    if args.max_header_bytes is not None:
        options.append(with_max_header_bytes(args.max_header_bytes))
    return options
