"""Context object shared across worker threads."""

from dataclasses import dataclass

from graceserver.bootstrap.options import ServerSettings
from graceserver.domain.http_types import Handler
from graceserver.lifecycle.context import Context
from graceserver.lifecycle.state import ServerLifecycle


@dataclass
class WorkerContext:
    """Dependencies shared by the accept loop and its connection workers."""

    handler: Handler
    settings: ServerSettings
    lifecycle: ServerLifecycle
    base_context: Context
