"""
Error taxonomy for the observability and lifecycle layer.

Configuration errors and lifecycle errors are raised to callers; logging
internals never raise (see StructuredLogger). ErrorType classifies server
errors and maps them onto JSON-RPC error codes for ``log_server_error``.
"""

import re
from enum import Enum

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class McpScopeError(Exception):
    """Base class for errors raised by mcpscope."""


class InvalidSeverity(McpScopeError, ValueError):
    """Raised when a severity name or value is not on the 8-level scale."""

    def __init__(self, value: object):
        self.value = value
        super().__init__(f"Invalid severity: {value!r}")


class LifecycleError(McpScopeError):
    """Raised when the server cannot enter or serve a lifecycle phase."""


class ProtocolVersionError(LifecycleError):
    """Raised when the client requests an unsupported protocol version."""

    def __init__(self, requested: str, supported: list[str]):
        self.requested = requested
        self.supported = list(supported)
        super().__init__(
            f"Unsupported protocol version {requested!r}. "
            f"Server supports: {', '.join(self.supported)}"
        )


class ErrorType(Enum):
    """Server error categories."""

    PARSE_ERROR = "parse_error"
    INVALID_REQUEST = "invalid_request"
    METHOD_NOT_FOUND = "method_not_found"
    INVALID_PARAMS = "invalid_params"
    INTERNAL_ERROR = "internal_error"
    TOOL_NOT_FOUND = "tool_not_found"
    RESOURCE_NOT_FOUND = "resource_not_found"
    AUTHENTICATION_ERROR = "authentication_error"
    TRANSPORT_ERROR = "transport_error"


_ERROR_CODES: dict[ErrorType, int] = {
    ErrorType.PARSE_ERROR: PARSE_ERROR,
    ErrorType.INVALID_REQUEST: INVALID_REQUEST,
    ErrorType.METHOD_NOT_FOUND: METHOD_NOT_FOUND,
    ErrorType.INVALID_PARAMS: INVALID_PARAMS,
    ErrorType.INTERNAL_ERROR: INTERNAL_ERROR,
    # Tools and resources are addressed as methods
    ErrorType.TOOL_NOT_FOUND: METHOD_NOT_FOUND,
    ErrorType.RESOURCE_NOT_FOUND: METHOD_NOT_FOUND,
    ErrorType.AUTHENTICATION_ERROR: INVALID_REQUEST,
    ErrorType.TRANSPORT_ERROR: INTERNAL_ERROR,
}

# Checked in order; first match wins
_MESSAGE_PATTERNS: list[tuple[re.Pattern[str], ErrorType]] = [
    (re.compile(r"tool not found|method.*not found", re.I), ErrorType.TOOL_NOT_FOUND),
    (re.compile(r"resource not found", re.I), ErrorType.RESOURCE_NOT_FOUND),
    (
        re.compile(r"invalid param|parameter.*required|missing.*param", re.I),
        ErrorType.INVALID_PARAMS,
    ),
    (re.compile(r"invalid request|bad request", re.I), ErrorType.INVALID_REQUEST),
    (re.compile(r"parse error|malformed", re.I), ErrorType.PARSE_ERROR),
    (
        re.compile(r"authentication|unauthorized|forbidden", re.I),
        ErrorType.AUTHENTICATION_ERROR,
    ),
    (re.compile(r"transport|connection|session", re.I), ErrorType.TRANSPORT_ERROR),
]


def get_error_code(error_type: ErrorType) -> int:
    """Get the JSON-RPC error code for an error type."""
    return _ERROR_CODES[error_type]


def detect_error_type(error: BaseException | str) -> ErrorType:
    """Classify an error from its message. Unprintable errors are internal errors."""
    if isinstance(error, str):
        message = error
    else:
        try:
            message = str(error)
        except Exception:
            return ErrorType.INTERNAL_ERROR
    for pattern, error_type in _MESSAGE_PATTERNS:
        if pattern.search(message):
            return error_type
    return ErrorType.INTERNAL_ERROR


def get_error_code_from_message(error: BaseException | str) -> int:
    """Get the JSON-RPC error code for an error, detecting its type."""
    return get_error_code(detect_error_type(error))
