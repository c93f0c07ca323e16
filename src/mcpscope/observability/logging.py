"""
Structured logging for MCP servers with trace and session correlation.

StructuredLogger is the single emission pipeline. For every call it:

1. normalizes the input (a string becomes ``{"message": ...}``; ``OMIT``
   fields are dropped while ``None`` is kept as ``null``),
2. checks the severity threshold (below it, nothing else happens),
3. asks the rate limiter for a slot (emitting at most one aggregate
   suppression warning per closed window),
4. enriches the payload with ``_session`` and ``_trace``,
5. redacts sensitive fields,
6. writes one line to the stream sink and, if a notifier is attached and
   the record meets its floor, forwards it without awaiting delivery.

Logging never raises for malformed payloads: values that are not plain
structures are rendered with ``str()`` and cycles become a marker.

Usage:
    >>> from mcpscope.observability.logging import get_logger
    >>> logger = get_logger("tools")
    >>> logger.info("Tool invoked", tool="echo")
"""

import asyncio
import inspect
import json
import logging
import sys
import traceback
from collections.abc import Awaitable, Mapping
from dataclasses import dataclass, fields, is_dataclass
from datetime import UTC, date, datetime
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Protocol, TextIO

from ..core.errors import ErrorType, detect_error_type, get_error_code
from .metrics import LoggingMetrics
from .rate_limit import RateLimiter, SuppressionReport
from .redaction import CIRCULAR_MARKER, SensitiveFieldRedactor
from .sessions import SessionRegistry
from .severity import Severity, SeverityPolicy
from .tracing import CompletedSpan, TraceContext, TraceCorrelator

if TYPE_CHECKING:
    from contextvars import Token

    from ..config.settings import Settings

DEFAULT_CATEGORY = "general"
CORRELATION_KEYS = ("_trace", "_session")
RESERVED_KEYS = (*CORRELATION_KEYS, "error")


class _Omit:
    """Marker for fields that must not appear in the rendered record."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "OMIT"

    def __bool__(self) -> bool:
        return False


OMIT: Any = _Omit()


def _safe_str(value: Any) -> str:
    try:
        return str(value)
    except Exception:
        return f"<unrepresentable {type(value).__name__}>"


def to_jsonable(
    value: Any, circular_marker: str = CIRCULAR_MARKER, _ancestors: set[int] | None = None
) -> Any:
    """Convert an arbitrary value into JSON-native types.

    Mapping entries whose value is OMIT are dropped; OMIT inside a sequence
    becomes null. Cycles become ``circular_marker``. Anything else that is
    not JSON-native is rendered with ``str()``.
    """
    if _ancestors is None:
        _ancestors = set()

    if isinstance(value, Enum):
        return to_jsonable(value.value, circular_marker, _ancestors)
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {_safe_str(value)}"

    if isinstance(value, Mapping):
        if id(value) in _ancestors:
            return circular_marker
        _ancestors.add(id(value))
        try:
            return {
                (key if isinstance(key, str) else _safe_str(key)): to_jsonable(
                    item, circular_marker, _ancestors
                )
                for key, item in value.items()
                if item is not OMIT
            }
        finally:
            _ancestors.discard(id(value))

    if isinstance(value, (list, tuple, set, frozenset)):
        if id(value) in _ancestors:
            return circular_marker
        _ancestors.add(id(value))
        try:
            return [
                None if item is OMIT else to_jsonable(item, circular_marker, _ancestors)
                for item in value
            ]
        finally:
            _ancestors.discard(id(value))

    if is_dataclass(value) and not isinstance(value, type):
        if id(value) in _ancestors:
            return circular_marker
        _ancestors.add(id(value))
        try:
            return {
                f.name: to_jsonable(getattr(value, f.name), circular_marker, _ancestors)
                for f in fields(value)
            }
        finally:
            _ancestors.discard(id(value))

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        try:
            return to_jsonable(model_dump(mode="json"), circular_marker, _ancestors)
        except Exception:
            pass

    return _safe_str(value)


def preview(value: Any, limit: int) -> str:
    """Compact single-line JSON rendering truncated to ``limit`` characters."""
    try:
        text = json.dumps(to_jsonable(value), ensure_ascii=False, default=_safe_str)
    except (TypeError, ValueError):
        text = _safe_str(value)
    return text[:limit]


def extract_mcp_attributes(endpoint: str, params: Any) -> dict[str, Any]:
    """Pull well-known MCP request attributes out of endpoint params."""
    attributes: dict[str, Any] = {}
    if not isinstance(params, Mapping):
        return attributes

    if isinstance(params.get("uri"), str):
        attributes["mcp.resource.uri"] = params["uri"]
    if isinstance(params.get("name"), str):
        if "tool" in endpoint:
            attributes["mcp.tool.name"] = params["name"]
        elif "prompt" in endpoint:
            attributes["mcp.prompt.name"] = params["name"]
    if isinstance(params.get("cursor"), str):
        attributes["mcp.request.cursor"] = params["cursor"]
    if isinstance(params.get("hasMore"), bool):
        attributes["mcp.response.has_more"] = params["hasMore"]
    return attributes


@dataclass(frozen=True)
class ErrorInfo:
    """Normalized error block: name, message and a short stack."""

    name: str
    message: str
    stack: str | None = None

    @classmethod
    def from_exception(cls, error: BaseException | str, max_frames: int = 3) -> "ErrorInfo":
        if isinstance(error, str):
            return cls(name="Error", message=error)
        stack = None
        if error.__traceback__ is not None:
            frames = traceback.format_tb(error.__traceback__)[-max_frames:]
            stack = "".join(frames).rstrip() or None
        return cls(name=type(error).__name__, message=_safe_str(error), stack=stack)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "message": self.message}
        if self.stack:
            data["stack"] = self.stack
        return data


@dataclass(frozen=True)
class LogRecord:
    """One emitted diagnostic event. Fully enriched and redacted at construction."""

    timestamp: datetime
    severity: Severity
    category: str
    payload: Mapping[str, Any]
    trace: Mapping[str, Any] | None = None
    session: Mapping[str, Any] | None = None
    error: ErrorInfo | None = None

    @property
    def level(self) -> str:
        return self.severity.name

    @property
    def message(self) -> Any:
        return self.payload.get("message")

    def to_dict(self) -> dict[str, Any]:
        """Flat JSON-shaped body: payload fields plus reserved correlation keys."""
        body = {k: v for k, v in self.payload.items() if k not in RESERVED_KEYS}
        if self.trace is not None:
            body["_trace"] = dict(self.trace)
        if self.session is not None:
            body["_session"] = dict(self.session)
        if self.error is not None:
            body["error"] = self.error.as_dict()
        elif "error" in self.payload:
            body["error"] = self.payload["error"]
        return body


class RecordFormatter(logging.Formatter):
    """Renders records as JSON lines or as console lines.

    Standard library records that did not come through StructuredLogger
    (third-party libraries) are rendered in the same shape.
    """

    FORMATS = ("json", "console")

    def __init__(self, fmt: str = "json"):
        super().__init__()
        if fmt not in self.FORMATS:
            raise ValueError(f"log format must be one of {self.FORMATS}, got {fmt!r}")
        self.fmt = fmt

    def format(self, record: logging.LogRecord) -> str:
        mcp_record: LogRecord | None = getattr(record, "mcp_record", None)
        if mcp_record is not None:
            timestamp = mcp_record.timestamp.isoformat().replace("+00:00", "Z")
            level = mcp_record.level
            category = mcp_record.category
            body = mcp_record.to_dict()
        else:
            timestamp = datetime.fromtimestamp(record.created, UTC).isoformat().replace("+00:00", "Z")
            level = record.levelname
            category = record.name
            body = {"message": record.getMessage()}
            if record.exc_info:
                body["error"] = ErrorInfo.from_exception(record.exc_info[1]).as_dict()

        if self.fmt == "json":
            line: dict[str, Any] = {"timestamp": timestamp, "level": level, "logger": category}
            for key, value in body.items():
                line.setdefault(key if key not in line else f"data.{key}", value)
            return json.dumps(line, ensure_ascii=False, default=_safe_str)

        if set(body) == {"message"} and isinstance(body["message"], str):
            text = body["message"]
        else:
            text = json.dumps(body, ensure_ascii=False, default=_safe_str)
        return f"{timestamp} [{level:<9}] [{category:<15}] {text}"


class NotificationSink(Protocol):
    """Downstream receiver of accepted records, e.g. a connected client."""

    def send_log_message(
        self, level: str, logger: str, data: dict[str, Any]
    ) -> Awaitable[None] | None: ...


class StructuredLogger:
    """Severity-filtered, rate-limited, redacting logger with trace/session context."""

    def __init__(
        self,
        name: str = "mcpscope",
        *,
        level: Severity | str = Severity.INFO,
        fmt: str = "json",
        stream: TextIO | None = None,
        default_category: str = DEFAULT_CATEGORY,
        redactor: SensitiveFieldRedactor | None = None,
        limiter: RateLimiter | None = None,
        correlator: TraceCorrelator | None = None,
        sessions: SessionRegistry | None = None,
        metrics: LoggingMetrics | None = None,
        notifier: NotificationSink | None = None,
        notification_level: Severity | str = Severity.INFO,
        session_tracking: bool = True,
        max_param_chars: int = 200,
    ):
        self.name = name
        self.default_category = default_category
        self.policy = SeverityPolicy(level)
        self.redactor = redactor or SensitiveFieldRedactor()
        self.limiter = limiter or RateLimiter()
        self.correlator = correlator or TraceCorrelator()
        self.sessions = sessions or SessionRegistry(self.correlator)
        self.metrics = metrics or LoggingMetrics()
        self.max_param_chars = max_param_chars
        self.session_tracking = session_tracking

        self._notifier = notifier
        self._notification_floor = Severity.parse(notification_level)
        self._pending: set[asyncio.Future] = set()

        self._handler = logging.StreamHandler(stream or sys.stdout)
        self._handler.setFormatter(RecordFormatter(fmt))
        self._sink = logging.Logger(f"mcpscope.{name}", level=1)
        self._sink.propagate = False
        self._sink.addHandler(self._handler)

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        *,
        stream: TextIO | None = None,
        correlator: TraceCorrelator | None = None,
        sessions: SessionRegistry | None = None,
        notifier: NotificationSink | None = None,
        metrics: LoggingMetrics | None = None,
    ) -> "StructuredLogger":
        """Build a logger from the ``logging`` and ``rate_limit`` settings sections."""
        log_cfg = settings.logging
        rate_cfg = settings.rate_limit
        return cls(
            name=log_cfg.logger_name,
            level=log_cfg.level,
            fmt=log_cfg.format,
            stream=stream,
            default_category=log_cfg.default_category,
            redactor=SensitiveFieldRedactor(
                log_cfg.sensitive_keys,
                enabled=log_cfg.redact_sensitive,
                marker=log_cfg.redaction_marker,
                circular_marker=log_cfg.circular_marker,
            ),
            limiter=RateLimiter(
                rate_cfg.max_per_window,
                rate_cfg.window_seconds,
                enabled=rate_cfg.enabled,
                bypass_level=rate_cfg.bypass_level,
            ),
            correlator=correlator,
            sessions=sessions,
            metrics=metrics,
            notifier=notifier,
            notification_level=log_cfg.notification_level,
            session_tracking=log_cfg.session_tracking,
            max_param_chars=log_cfg.max_param_chars,
        )

    # Configuration surface

    @property
    def level(self) -> Severity:
        return self.policy.threshold

    def set_level(self, level: Severity | str) -> Severity:
        """Change the minimum emitted severity.

        Raises:
            InvalidSeverity: if ``level`` is not on the scale.
        """
        previous = self.policy.set_threshold(level)
        self.info(
            {
                "message": "Logging level changed",
                "previousLevel": previous.label,
                "newLevel": self.policy.threshold.label,
            },
            "logger",
        )
        return previous

    def is_enabled_for(self, severity: Severity | str) -> bool:
        return self.policy.is_enabled(severity)

    def set_sensitive_data_filter(self, enabled: bool) -> None:
        self.redactor.set_enabled(enabled)
        self.info({"message": "Sensitive data filtering changed", "enabled": bool(enabled)}, "logger")

    def set_rate_limiting(self, enabled: bool) -> None:
        self.limiter.set_enabled(enabled)
        self.info({"message": "Log rate limiting changed", "enabled": bool(enabled)}, "logger")

    def set_session_tracking(self, enabled: bool) -> None:
        self.session_tracking = bool(enabled)
        self.info({"message": "Session tracking changed", "enabled": bool(enabled)}, "logger")

    def set_format(self, fmt: str) -> None:
        self._handler.setFormatter(RecordFormatter(fmt))

    def set_stream(self, stream: TextIO) -> None:
        self._handler.setStream(stream)

    def set_session_context(self, session_id: str | None) -> "Token":
        """Mark ``session_id`` as the current session of this execution context."""
        token = self.sessions.set_session_context(session_id)
        if self.session_tracking and session_id is not None:
            self.debug({"message": "Session context set", "sessionId": session_id}, "session")
        return token

    # Notifier

    def attach_notifier(
        self, notifier: NotificationSink, level: Severity | str | None = None
    ) -> None:
        """Forward accepted records at or above ``level`` to ``notifier``."""
        self._notifier = notifier
        if level is not None:
            self._notification_floor = Severity.parse(level)

    def detach_notifier(self) -> None:
        self._notifier = None

    def disconnect(self) -> None:
        self.detach_notifier()
        self.info("Logger disconnected from client", "logger")

    @property
    def notification_level(self) -> Severity:
        return self._notification_floor

    def set_notification_level(self, level: Severity | str) -> None:
        self._notification_floor = Severity.parse(level)

    async def drain_notifications(self) -> None:
        """Wait for in-flight notifier deliveries to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    # Severity entry points

    def log(
        self,
        severity: Severity | str,
        data: Any,
        category: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> LogRecord | None:
        return self._log(Severity.parse(severity), data, category, extra)

    def debug(self, data: Any, category: str | None = None, extra: Mapping[str, Any] | None = None):
        return self._log(Severity.DEBUG, data, category, extra)

    def info(self, data: Any, category: str | None = None, extra: Mapping[str, Any] | None = None):
        return self._log(Severity.INFO, data, category, extra)

    def notice(self, data: Any, category: str | None = None, extra: Mapping[str, Any] | None = None):
        return self._log(Severity.NOTICE, data, category, extra)

    def warning(self, data: Any, category: str | None = None, extra: Mapping[str, Any] | None = None):
        return self._log(Severity.WARNING, data, category, extra)

    def error(self, data: Any, category: str | None = None, extra: Mapping[str, Any] | None = None):
        return self._log(Severity.ERROR, data, category, extra)

    def critical(self, data: Any, category: str | None = None, extra: Mapping[str, Any] | None = None):
        return self._log(Severity.CRITICAL, data, category, extra)

    def alert(self, data: Any, category: str | None = None, extra: Mapping[str, Any] | None = None):
        return self._log(Severity.ALERT, data, category, extra)

    def emergency(self, data: Any, category: str | None = None, extra: Mapping[str, Any] | None = None):
        return self._log(Severity.EMERGENCY, data, category, extra)

    def flush(self) -> LogRecord | None:
        """Emit the pending rate-limit suppression report, if any."""
        report = self.limiter.flush()
        if report is None:
            return None
        return self._emit_suppression(report)

    # Operations

    def start_operation(
        self, operation_name: str, attributes: Mapping[str, Any] | None = None
    ) -> str | None:
        """Open a span under the current one. Returns None when session tracking is off."""
        if not self.session_tracking:
            return None

        span = self.correlator.start_operation(
            operation_name, attributes, session_id=self.sessions.current_session_id()
        )
        self._log(
            Severity.DEBUG,
            {
                "message": "Operation trace started",
                "operationName": operation_name,
                "attributes": dict(span.attributes),
            },
            "trace",
            trace=span,
        )
        return span.span_id

    def end_operation(
        self,
        span_id: str | None,
        result_attributes: Mapping[str, Any] | None = None,
        *,
        error: BaseException | str | None = None,
    ) -> CompletedSpan | None:
        """Close a span by id and emit its record. Unknown ids are reported, not raised."""
        if span_id is None:
            return None

        completed = self.correlator.end_operation(span_id, result_attributes, error=error)
        if completed is None:
            self.warning(
                {"message": "Attempted to end unknown or already-ended operation", "spanId": span_id},
                "trace",
            )
            return None

        self.metrics.record_operation(
            completed.context.operation_name, completed.duration_ms, completed.success
        )
        self._log(
            Severity.INFO if completed.success else Severity.ERROR,
            completed.as_payload(),
            "trace",
            trace=completed.context,
        )
        return completed

    def current_trace(self) -> TraceContext | None:
        return self.correlator.current()

    def log_method_entry(
        self, method_name: str, params: Any = None, category: str = "method"
    ) -> str | None:
        """Start an operation for ``method_name`` and log its (redacted) params at debug."""
        span_id = self.start_operation(method_name, {"mcp.method": method_name})
        if self.policy.is_enabled(Severity.DEBUG):
            args = "" if params is None else self._preview(params, self.max_param_chars)
            self.debug(f"→ {method_name}({args})", category)
        return span_id

    def log_method_exit(
        self,
        method_name: str,
        result: Any = None,
        category: str = "method",
        span_id: str | None = None,
    ) -> CompletedSpan | None:
        """Log a method's result at debug and end its operation."""
        if self.policy.is_enabled(Severity.DEBUG):
            shown = "void" if result is None else self._preview(result, 100)
            self.debug(f"← {method_name} → {shown}", category)

        if span_id is None:
            return None

        attributes: dict[str, Any] = {
            "mcp.method.result": "void" if result is None else "success",
        }
        if isinstance(result, Mapping):
            if isinstance(result.get("responseTimeMs"), (int, float)):
                attributes["mcp.response.time.ms"] = result["responseTimeMs"]
            if isinstance(result.get("requestId"), (str, int)):
                attributes["mcp.request.id"] = str(result["requestId"])
        return self.end_operation(span_id, attributes)

    def log_endpoint_entry(
        self, endpoint: str, request_id: str | int | None = None, params: Any = None
    ) -> str | None:
        """Start an ``mcp.<endpoint>`` operation and log the endpoint call at info."""
        span_id = self.start_operation(
            f"mcp.{endpoint}",
            {
                "mcp.endpoint": endpoint,
                "mcp.request.id": str(request_id) if request_id is not None else "unknown",
                **extract_mcp_attributes(endpoint, params),
            },
        )
        id_str = f"[{request_id}]" if request_id is not None else ""
        param_info = f" {self._preview(params, 100)}" if params else ""
        self.info(
            {"message": f"{endpoint} triggered{id_str}{param_info}", "endpoint": endpoint},
            "endpoint",
        )
        return span_id

    def log_server_error(
        self,
        error: BaseException | str,
        context: str,
        details: Any = None,
        error_type: ErrorType | None = None,
    ) -> LogRecord | None:
        """Log a server error at ``error`` with a normalized error block and JSON-RPC code."""
        detected = error_type or detect_error_type(error)
        payload: dict[str, Any] = {
            "message": error if isinstance(error, str) else _safe_str(error),
            "context": context,
            "errorType": detected.value,
            "errorCode": get_error_code(detected),
        }
        if details is not None:
            payload["details"] = details
        return self._log(
            Severity.ERROR, payload, "server", error=ErrorInfo.from_exception(error)
        )

    # Statistics

    def get_statistics(self) -> dict[str, Any]:
        if not self.session_tracking:
            return {
                "sessionEnabled": False,
                "sessionStats": {"activeSessions": 0, "activeTraces": 0, "sessions": []},
            }
        return {"sessionEnabled": True, "sessionStats": self.sessions.get_statistics()}

    # Pipeline

    def _log(
        self,
        severity: Severity,
        data: Any,
        category: str | None = None,
        extra: Mapping[str, Any] | None = None,
        *,
        trace: TraceContext | None = None,
        error: ErrorInfo | None = None,
        rate_limited: bool = True,
    ) -> LogRecord | None:
        if not self.policy.is_enabled(severity):
            return None

        if rate_limited:
            admitted = self.limiter.admit(severity)
            report = self.limiter.take_report()
            if report is not None:
                self._emit_suppression(report)
            if not admitted:
                self.metrics.record_suppressed()
                return None

        record = self._build_record(severity, data, category, extra, trace, error)
        self._emit(record)
        return record

    def _build_record(
        self,
        severity: Severity,
        data: Any,
        category: str | None,
        extra: Mapping[str, Any] | None,
        trace: TraceContext | None,
        error: ErrorInfo | None,
    ) -> LogRecord:
        payload, normalized_error = self._normalize(data, extra)
        payload = to_jsonable(payload, self.redactor.circular_marker)
        # Correlation keys come only from the registry and correlator
        for key in CORRELATION_KEYS:
            if key in payload:
                payload[f"data.{key}"] = payload.pop(key)

        session = None
        if self.session_tracking:
            payload = self.sessions.enrich_log_data(payload)
            session = payload.pop("_session", None)
            if trace is None:
                trace = self.correlator.current()

        payload = self.redactor.redact(payload)
        return LogRecord(
            timestamp=datetime.now(UTC),
            severity=severity,
            category=category or self.default_category,
            payload=MappingProxyType(payload),
            trace=MappingProxyType(trace.as_log_fields()) if trace is not None else None,
            session=MappingProxyType(session) if session is not None else None,
            error=error or normalized_error,
        )

    def _normalize(
        self, data: Any, extra: Mapping[str, Any] | None
    ) -> tuple[dict[str, Any], ErrorInfo | None]:
        error = None
        if isinstance(data, str) or data is None:
            payload: dict[str, Any] = {"message": data}
        elif isinstance(data, Mapping):
            try:
                payload = dict(data)
            except Exception:
                payload = {"message": _safe_str(data)}
        elif isinstance(data, BaseException):
            payload = {"message": _safe_str(data)}
            error = ErrorInfo.from_exception(data)
        else:
            payload = {"message": to_jsonable(data, self.redactor.circular_marker)}

        if extra:
            try:
                payload.update(extra)
            except Exception:
                payload["extra"] = _safe_str(extra)
        return payload, error

    def _preview(self, value: Any, limit: int) -> str:
        return preview(self.redactor.redact(to_jsonable(value, self.redactor.circular_marker)), limit)

    def _emit(self, record: LogRecord, *, forward: bool = True) -> None:
        self._sink.log(record.severity.logging_level, "%s", record.message, extra={"mcp_record": record})
        self.metrics.record_emitted(record.severity.label)
        if forward:
            self._forward(record)

    def _emit_suppression(self, report: SuppressionReport) -> LogRecord | None:
        return self._log(Severity.WARNING, report.as_payload(), "logger", rate_limited=False)

    def _forward(self, record: LogRecord) -> None:
        notifier = self._notifier
        if notifier is None or record.severity < self._notification_floor:
            return

        try:
            result = notifier.send_log_message(record.severity.label, record.category, record.to_dict())
        except Exception as exc:
            self._report_notification_failure(record, exc)
            return

        if not inspect.isawaitable(result):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError as exc:
            # No running event loop to deliver on
            if inspect.iscoroutine(result):
                result.close()
            self._report_notification_failure(record, exc)
            return

        future = asyncio.ensure_future(result, loop=loop)
        self._pending.add(future)
        future.add_done_callback(lambda f: self._on_forward_done(record, f))

    def _on_forward_done(self, record: LogRecord, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            self._report_notification_failure(record, exc)

    def _report_notification_failure(self, record: LogRecord, exc: BaseException) -> None:
        self.metrics.record_notification_failed()
        if not self.policy.is_enabled(Severity.WARNING):
            return
        failure = self._build_record(
            Severity.WARNING,
            {
                "message": "Log notification delivery failed",
                "notifiedLevel": record.severity.label,
                "notifiedLogger": record.category,
            },
            "logger",
            None,
            None,
            ErrorInfo.from_exception(exc),
        )
        self._emit(failure, forward=False)


class CategoryLogger:
    """Logger bound to one category, with keyword-field calls.

    Resolves the process-wide StructuredLogger lazily so modules can create
    their logger at import time.
    """

    def __init__(self, category: str, logger: StructuredLogger | None = None):
        self.category = category
        self._logger = logger

    @property
    def logger(self) -> StructuredLogger:
        return self._logger or get_structured_logger()

    def _log(self, severity: Severity, msg: Any, fields: dict[str, Any]):
        data = {"message": msg, **fields} if fields else msg
        return self.logger.log(severity, data, self.category)

    def debug(self, msg: Any, **fields):
        return self._log(Severity.DEBUG, msg, fields)

    def info(self, msg: Any, **fields):
        return self._log(Severity.INFO, msg, fields)

    def notice(self, msg: Any, **fields):
        return self._log(Severity.NOTICE, msg, fields)

    def warning(self, msg: Any, **fields):
        return self._log(Severity.WARNING, msg, fields)

    def error(self, msg: Any, **fields):
        return self._log(Severity.ERROR, msg, fields)

    def critical(self, msg: Any, **fields):
        return self._log(Severity.CRITICAL, msg, fields)

    def timed(self, msg: str, duration_ms: float, **fields):
        """Log with timing information."""
        fields["durationMs"] = round(duration_ms, 3)
        return self.info(msg, **fields)


# Process-wide default logger and category logger cache
_default_logger: StructuredLogger | None = None
_loggers: dict[str, CategoryLogger] = {}


def get_structured_logger() -> StructuredLogger:
    """Get the process-wide StructuredLogger, building it from settings on first use."""
    global _default_logger
    if _default_logger is None:
        from ..config.settings import get_settings

        _default_logger = StructuredLogger.from_settings(get_settings())
    return _default_logger


def set_structured_logger(logger: StructuredLogger | None) -> None:
    """Replace (or with None, reset) the process-wide StructuredLogger."""
    global _default_logger
    _default_logger = logger


def get_logger(name: str) -> CategoryLogger:
    """Get a category-bound logger; dotted module names use their last part."""
    category = name.rsplit(".", 1)[-1]
    if category not in _loggers:
        _loggers[category] = CategoryLogger(category)
    return _loggers[category]


def setup_logging(
    level: Severity | str | None = None,
    fmt: str | None = None,
    stream: TextIO | None = None,
) -> StructuredLogger:
    """Configure the process-wide logger and route third-party logging through it."""
    logger = get_structured_logger()
    if level is not None:
        logger.policy.set_threshold(level)
    if fmt is not None:
        logger.set_format(fmt)
    if stream is not None:
        logger.set_stream(stream)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(RecordFormatter(fmt or logger._handler.formatter.fmt))

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(logger.level.logging_level)

    # Disable other loggers to avoid noise
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("opentelemetry").setLevel(logging.WARNING)
    return logger
