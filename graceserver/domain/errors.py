"""Exception hierarchy shared across the server."""


class ServerError(Exception):
    """Base class for errors raised by the server."""


class ConfigError(ServerError, ValueError):
    """Raised when server options or the handler are invalid."""


class ServeError(ServerError):
    """Raised when the listener cannot be created or the serve loop fails."""


class ShutdownError(ServerError):
    """Raised when graceful shutdown does not complete cleanly."""


class ShutdownDeadlineExceeded(ShutdownError, TimeoutError):
    """Raised when in-flight requests outlive the shutdown deadline."""


class ContextError(Exception):
    """Base class for context completion reasons."""


class ContextCancelled(ContextError):
    """The context was cancelled explicitly or by its parent."""


class DeadlineExceeded(ContextError, TimeoutError):
    """The context deadline passed."""
