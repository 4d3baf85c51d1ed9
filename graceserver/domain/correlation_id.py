"""Per-request correlation IDs carried through contextvars into log records."""

import contextvars
import logging
import uuid
from typing import Any, MutableMapping, Optional

LOGGER_PREFIX = "graceserver."
CORRELATION_HEADER = "x-request-id"
MAX_INCOMING_ID_LENGTH = 128

_correlation_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "graceserver_correlation_id", default=None
)


def generate_correlation_id() -> str:
    """Generate a new correlation ID using UUID4."""
    return str(uuid.uuid4())


def get_correlation_id() -> Optional[str]:
    return _correlation_id_var.get()


def set_correlation_id(correlation_id: str) -> None:
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    _correlation_id_var.set(None)


def adopt_correlation_id(headers: dict[str, str]) -> str:
    """Use the client's X-Request-ID when it is usable, otherwise mint one.

    The chosen ID is stored in the current context and returned.
    """
    incoming = headers.get(CORRELATION_HEADER, "").strip()
    if incoming and len(incoming) <= MAX_INCOMING_ID_LENGTH and incoming.isprintable():
        correlation_id = incoming
    else:
        correlation_id = generate_correlation_id()
    set_correlation_id(correlation_id)
    return correlation_id


def component_name(logger_name: str) -> str:
    """Strip the project prefix from a logger name."""
    if logger_name.startswith(LOGGER_PREFIX):
        return logger_name[len(LOGGER_PREFIX) :]
    return logger_name


class CorrelationLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter adding correlation_id and component to every record."""

    def process(
        self, msg: str, kwargs: MutableMapping[str, Any]
    ) -> tuple[str, MutableMapping[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        correlation_id = get_correlation_id()
        extra["correlation_id"] = correlation_id if correlation_id is not None else "-"
        extra["component"] = component_name(self.logger.name)
        kwargs["extra"] = extra
        return msg, kwargs
