"""
MCP Scope - structured logging, trace correlation and lifecycle for MCP servers.

Quick Start:
    >>> from mcpscope import get_structured_logger
    >>> logger = get_structured_logger()
    >>> span_id = logger.log_endpoint_entry("tools/call", request_id=7, params={"name": "echo"})
    >>> logger.end_operation(span_id, {"success": True})
"""

__version__ = "0.1.0"

from .core.errors import InvalidSeverity, LifecycleError, ProtocolVersionError
from .core.lifecycle import LifecycleState, LifecycleStateMachine, SessionLifecycleRegistry
from .observability.logging import (
    OMIT,
    StructuredLogger,
    get_logger,
    get_structured_logger,
    setup_logging,
)
from .observability.severity import Severity

__all__ = [
    "__version__",
    "OMIT",
    "InvalidSeverity",
    "LifecycleError",
    "LifecycleState",
    "LifecycleStateMachine",
    "ProtocolVersionError",
    "SessionLifecycleRegistry",
    "Severity",
    "StructuredLogger",
    "get_logger",
    "get_structured_logger",
    "setup_logging",
]
