"""Unit tests for CorrelationLoggerAdapter and correlation ID helpers."""

import logging

import pytest

from graceserver.domain.correlation_id import (
    MAX_INCOMING_ID_LENGTH,
    CorrelationLoggerAdapter,
    adopt_correlation_id,
    clear_correlation_id,
    get_correlation_id,
    set_correlation_id,
)


@pytest.fixture(name="logger_adapter")
def logger_adapter_fixture():
    """Create a CorrelationLoggerAdapter instance."""
    yield CorrelationLoggerAdapter(logging.getLogger("graceserver.test"), {})
    clear_correlation_id()


def test_adapter_injects_correlation_id(logger_adapter):
    """The current correlation ID is added to extra."""
    set_correlation_id("test-correlation-123")

    _, kwargs = logger_adapter.process("Test message", {})

    assert kwargs["extra"]["correlation_id"] == "test-correlation-123"


def test_adapter_defaults_correlation_id_when_missing(logger_adapter):
    """Without an ID the placeholder '-' is used."""
    clear_correlation_id()

    _, kwargs = logger_adapter.process("Test message", {})

    assert kwargs["extra"]["correlation_id"] == "-"


def test_adapter_preserves_existing_extra_fields(logger_adapter):
    """Caller-supplied extra fields survive."""
    _, kwargs = logger_adapter.process(
        "Test message", {"extra": {"event": "state_changed", "state": "draining"}}
    )

    assert kwargs["extra"]["event"] == "state_changed"
    assert kwargs["extra"]["state"] == "draining"
    assert kwargs["extra"]["component"] == "test"


def test_adapter_with_nested_component():
    """The project prefix is stripped from nested logger names."""
    adapter = CorrelationLoggerAdapter(logging.getLogger("graceserver.transport.worker"), {})

    _, kwargs = adapter.process("Test message", {})

    assert kwargs["extra"]["component"] == "transport.worker"


def test_adapter_handles_foreign_logger():
    """Loggers outside the project keep their full name."""
    adapter = CorrelationLoggerAdapter(logging.getLogger("other.module"), {})

    _, kwargs = adapter.process("Test message", {})

    assert kwargs["extra"]["component"] == "other.module"


def test_adopt_uses_incoming_request_id(logger_adapter):
    """A well-formed X-Request-ID is reused."""
    assert adopt_correlation_id({"x-request-id": "abc-123"}) == "abc-123"
    assert get_correlation_id() == "abc-123"


@pytest.mark.parametrize(
    "headers",
    [{}, {"x-request-id": "   "}, {"x-request-id": "a" * (MAX_INCOMING_ID_LENGTH + 1)}],
)
def test_adopt_generates_id_for_unusable_header(logger_adapter, headers):
    """Missing, blank or oversized IDs are replaced by a fresh one."""
    correlation_id = adopt_correlation_id(headers)
    assert correlation_id
    assert correlation_id != headers.get("x-request-id")
    assert get_correlation_id() == correlation_id
