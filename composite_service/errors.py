"""
Error types for composite-service.

Every failure that forces the composite service to shut down is reported
through a single fatal path; these exceptions are what the collaborators
raise before their message reaches it.
"""

import traceback

BUG_NOTICE = "This is a bug in composite-service. Please file an issue."


class CompositeServiceError(Exception):
    """Base class for composite-service errors."""


class ConfigValidationError(CompositeServiceError, ValueError):
    """The composite service config is invalid."""


class ProcessSpawnError(CompositeServiceError):
    """A service process could not be started."""


class ReadyFunctionError(CompositeServiceError):
    """A service's ready function raised."""


class ReadyTimeoutError(ReadyFunctionError):
    """A service did not become ready within its ready timeout."""


class InternalError(CompositeServiceError):
    """An orchestration invariant was violated."""

    def __init__(self, message: str):
        super().__init__(f"{message}. {BUG_NOTICE}")


def error_text(error: BaseException) -> str:
    """Render an error with its traceback, or just its text if it has none."""
    if error.__traceback__ is None:
        return f"{type(error).__name__}: {error}"
    return "".join(traceback.format_exception(error)).rstrip()
