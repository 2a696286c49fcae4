"""
composite-service - Run several programs as one supervised service.

Starts services in dependency order once their dependencies are ready,
restarts them when they crash, and shuts everything down together on a
shutdown signal or any fatal error. Includes an HTTP gateway service.
"""

__version__ = "0.1.0"

from .composite import CompositeService, start_composite_service
from .errors import ConfigValidationError, CompositeServiceError
from .gateway import configure_http_gateway
from .models import (
    CompositeServiceConfig,
    Crash,
    CrashContext,
    CrashFunction,
    ReadyContext,
    ReadyFunction,
    ServiceConfig,
)
from .ready_helpers import (
    once_http_ok,
    once_output_line,
    once_output_line_includes,
    once_output_line_is,
    once_output_line_matches,
    once_tcp_port_used,
    once_timeout,
)
