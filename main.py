"""Run a plain-text HTTP server that shuts down gracefully on termination signals."""

import sys

from graceserver.bootstrap.config import options_from_args, parse_cli_args
from graceserver.bootstrap.logging_setup import configure_logging
from graceserver.domain.errors import ConfigError, ShutdownError
from graceserver.domain.http_types import HttpRequest, HttpResponse
from graceserver.domain.response_builders import text_response
from graceserver.server import new_server


def hello_handler(request: HttpRequest) -> HttpResponse:
    """Answer every request with its method and path."""
    return text_response(f"{request.method} {request.path}\n", request)


def main(argv=None) -> int:
    """Start the server and block until it has shut down."""
    args = parse_cli_args(sys.argv[1:] if argv is None else argv)
    logger = configure_logging(
        args.log_level, args.log_destination, use_json=args.log_format == "json"
    )

    try:
        server = new_server(hello_handler, *options_from_args(args))
    except ConfigError as error:
        logger.critical(
            "Invalid server configuration",
            extra={"event": "config_error", "error": str(error)},
        )
        return 2

    logger.info(
        "Starting HTTP server",
        extra={
            "event": "server_starting",
            "address": server.address,
            "stop_timeout": args.stop_timeout,
            "log_destination": args.log_destination,
            "log_level": args.log_level,
        },
    )
    try:
        server.start_with_await_stop(args.stop_timeout)
    except ShutdownError as error:
        logger.error(
            "Shutdown did not complete cleanly",
            extra={"event": "shutdown_failed", "error": str(error)},
        )
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
