"""Shared pytest fixtures for integration and unit tests."""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path
from typing import Callable, Generator, TypedDict

import pytest

from graceserver.bootstrap.options import Option, with_host, with_port
from graceserver.domain.http_types import HttpRequest, HttpResponse
from graceserver.domain.response_builders import text_response
from graceserver.lifecycle.context import background, with_timeout
from graceserver.server import Server, new_server
from tests.utils.http import reserve_port, wait_for_port

PROJECT_ROOT = Path(__file__).resolve().parent.parent
SERVER_ENTRYPOINT = PROJECT_ROOT / "main.py"

ServerFactory = Callable[..., Server]


class ServerProcessInfo(TypedDict):
    """Metadata describing a running server process."""

    base_url: str
    host: str
    port: int
    process: subprocess.Popen[str]
    log_file: Path


def echo_handler(request: HttpRequest) -> HttpResponse:
    """Reply with the request method and path."""
    return text_response(f"{request.method} {request.path}", request)


@pytest.fixture(scope="session")
def project_root() -> Path:
    """Expose the repository root path to tests."""

    return PROJECT_ROOT


@pytest.fixture(name="start_server")
def _start_server() -> Generator[ServerFactory, None, None]:
    """Start in-process servers on 127.0.0.1 with an ephemeral port.

    Every server started through the factory is shut down on teardown.
    """

    started: list[Server] = []

    def factory(handler=echo_handler, *options: Option) -> Server:
        server = new_server(handler, with_host("127.0.0.1"), with_port(0), *options)
        server.serve_in_background()
        assert server.wait_until_listening(timeout=5.0)
        started.append(server)
        return server

    yield factory

    for server in started:
        context, cancel = with_timeout(background(), 2.0)
        try:
            server.shutdown(context)
        except Exception:  # pylint: disable=broad-except
            server.close()
        finally:
            cancel()


@pytest.fixture(name="server_process")
def _server_process(tmp_path: Path) -> Generator[ServerProcessInfo, None, None]:
    """Launch main.py in a subprocess for signal-driven shutdown tests."""

    host = "127.0.0.1"
    port = reserve_port(host)
    log_file = tmp_path / "server.log"
    args = [
        sys.executable,
        str(SERVER_ENTRYPOINT),
        "--host",
        host,
        "--port",
        str(port),
        "--stop-timeout",
        "5",
        "--log-destination",
        str(log_file),
    ]
    with subprocess.Popen(
        args,
        cwd=PROJECT_ROOT,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
    ) as process:
        try:
            wait_for_port(host, port)
        except Exception:
            process.terminate()
            stdout, stderr = process.communicate(timeout=5)
            print(f"\nServer stdout:\n{stdout}")
            print(f"\nServer stderr:\n{stderr}")
            raise

        yield {
            "base_url": f"http://{host}:{port}",
            "host": host,
            "port": port,
            "process": process,
            "log_file": log_file,
        }

        if process.poll() is None:
            process.terminate()
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                process.kill()
