"""Error taxonomy and server lifecycle."""

from .errors import (
    ErrorType,
    InvalidSeverity,
    LifecycleError,
    McpScopeError,
    ProtocolVersionError,
    detect_error_type,
    get_error_code,
)

__all__ = [
    "ErrorType",
    "InvalidSeverity",
    "LifecycleError",
    "McpScopeError",
    "ProtocolVersionError",
    "detect_error_type",
    "get_error_code",
]
