"""
Observability for MCP servers.

Core Components:
- Severity: eight ordered syslog levels and the threshold policy
- Redaction: denylisted keys replaced at any depth, cycle-safe
- Rate limiting: per-window cap with one aggregate suppression warning
- Tracing: span ids correlated through a context-local stack
- Sessions: per-client identity stamped onto every record
- Logging: the StructuredLogger pipeline tying them together
"""

from .logging import (
    OMIT,
    CategoryLogger,
    LogRecord,
    NotificationSink,
    RecordFormatter,
    StructuredLogger,
    get_logger,
    get_structured_logger,
    set_structured_logger,
    setup_logging,
)
from .metrics import LoggingMetrics
from .patterns import execute_endpoint, execute_tool, measure_slow_operation, operation, run_task, traced
from .rate_limit import RateLimiter, SuppressionReport
from .redaction import SensitiveFieldRedactor
from .sessions import SessionContext, SessionRegistry, TransportType
from .severity import Severity, SeverityPolicy
from .tracing import CompletedSpan, TraceContext, TraceCorrelator

__all__ = [
    "OMIT",
    "CategoryLogger",
    "CompletedSpan",
    "LogRecord",
    "LoggingMetrics",
    "NotificationSink",
    "RateLimiter",
    "RecordFormatter",
    "SensitiveFieldRedactor",
    "SessionContext",
    "SessionRegistry",
    "Severity",
    "SeverityPolicy",
    "StructuredLogger",
    "SuppressionReport",
    "TraceContext",
    "TraceCorrelator",
    "TransportType",
    "execute_endpoint",
    "execute_tool",
    "get_logger",
    "get_structured_logger",
    "measure_slow_operation",
    "operation",
    "run_task",
    "set_structured_logger",
    "setup_logging",
    "traced",
]
