"""Tests for the StructuredLogger pipeline."""

import json
import logging
import re
from datetime import datetime

import pytest

from mcpscope.core.errors import InvalidSeverity
from mcpscope.observability.logging import (
    OMIT,
    CategoryLogger,
    RecordFormatter,
    extract_mcp_attributes,
    get_logger,
    get_structured_logger,
    set_structured_logger,
)
from mcpscope.observability.rate_limit import RateLimiter
from mcpscope.observability.severity import Severity


class RecordingNotifier:
    def __init__(self):
        self.messages = []

    async def send_log_message(self, level, logger, data):
        self.messages.append((level, logger, data))


class FailingNotifier:
    def __init__(self):
        self.calls = 0

    async def send_log_message(self, level, logger, data):
        self.calls += 1
        raise ConnectionError("client went away")


class Unprintable:
    def __str__(self):
        raise RuntimeError("no")


class TestSeverities:
    """Test severity entry points and threshold filtering."""

    @pytest.mark.parametrize("severity", list(Severity))
    def test_each_severity_emits_one_record(self, logger, capture, severity):
        record = getattr(logger, severity.label)("hello")
        records = capture.records()
        assert len(records) == 1
        assert records[0]["level"] == severity.name
        assert records[0]["message"] == "hello"
        assert records[0]["logger"] == "general"
        assert record.severity is severity

    def test_threshold_filters_lower_severities(self, make_logger, capture):
        logger = make_logger(level="warning", limiter=RateLimiter(enabled=False))
        assert logger.debug("d") is None
        assert logger.info("i") is None
        assert logger.notice("n") is None
        logger.warning("w")
        logger.error("e")
        logger.critical("c")
        assert capture.messages() == ["w", "e", "c"]
        assert capture.levels() == ["WARNING", "ERROR", "CRITICAL"]

    def test_generic_log(self, logger, capture):
        logger.log("notice", "via log")
        assert capture.levels() == ["NOTICE"]
        with pytest.raises(InvalidSeverity):
            logger.log("loud", "nope")

    def test_set_level_reports_change(self, make_logger, capture):
        logger = make_logger(level="warning", limiter=RateLimiter(enabled=False))
        previous = logger.set_level("info")
        assert previous is Severity.WARNING
        record = capture.records()[-1]
        assert record["logger"] == "logger"
        assert record["previousLevel"] == "warning"
        assert record["newLevel"] == "info"

    def test_set_level_rejects_unknown(self, logger, capture):
        with pytest.raises(InvalidSeverity):
            logger.set_level("verbose")
        assert logger.level is Severity.DEBUG
        assert capture.records() == []


class TestPayloads:
    """Test normalization and rendering of payloads."""

    def test_null_is_kept_omit_is_dropped(self, logger, capture):
        logger.info(
            {
                "message": "m",
                "present": None,
                "absent": OMIT,
                "nested": {"x": OMIT, "y": None},
                "items": [1, OMIT],
            }
        )
        line = capture.lines()[0]
        record = json.loads(line)
        assert '"present": null' in line
        assert "absent" not in record
        assert record["nested"] == {"y": None}
        assert record["items"] == [1, None]

    def test_string_with_category_and_extra(self, logger, capture):
        logger.info("tool ran", "tools", extra={"tool": "echo"})
        record = capture.records()[0]
        assert record["logger"] == "tools"
        assert record["message"] == "tool ran"
        assert record["tool"] == "echo"

    def test_none_payload(self, logger, capture):
        logger.info(None)
        assert capture.records()[0]["message"] is None

    def test_non_plain_values_are_stringified(self, logger, capture):
        when = datetime(2025, 1, 2, 3, 4, 5)
        logger.info({"message": "m", "when": when, "tags": {"a"}, "obj": Unprintable()})
        record = capture.records()[0]
        assert record["when"] == "2025-01-02T03:04:05"
        assert record["tags"] == ["a"]
        assert record["obj"] == "<unrepresentable Unprintable>"

    def test_unprintable_payload_does_not_raise(self, logger, capture):
        logger.warning(Unprintable())
        assert capture.records()[0]["message"] == "<unrepresentable Unprintable>"

    def test_cyclic_payload_renders_marker(self, logger, capture):
        payload = {"message": "loop"}
        payload["self"] = payload
        logger.info(payload)
        record = capture.records()[0]
        assert record["self"]["message"] == "loop"
        assert record["self"]["self"] == "[CIRCULAR]"

    def test_exception_payload(self, logger, capture):
        try:
            raise ValueError("bad input")
        except ValueError as e:
            logger.error(e)
        record = capture.records()[0]
        assert record["message"] == "bad input"
        assert record["error"]["name"] == "ValueError"
        assert "raise ValueError" in record["error"]["stack"]

    def test_timestamp_is_utc_iso(self, logger, capture):
        logger.info("t")
        assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d(\.\d+)?Z", capture.records()[0]["timestamp"])

    def test_reserved_header_keys_are_not_overwritten(self, logger, capture):
        logger.info({"message": "m", "level": "mine"})
        record = capture.records()[0]
        assert record["level"] == "INFO"
        assert record["data.level"] == "mine"

    def test_console_format(self, make_logger, capture):
        logger = make_logger(fmt="console", limiter=RateLimiter(enabled=False))
        logger.warning("plain", "net")
        logger.info({"message": "structured", "n": 1}, "net")
        plain, structured = capture.lines()
        assert re.fullmatch(r"\S+Z \[WARNING  \] \[net {12}\] plain", plain)
        assert structured.endswith('{"message": "structured", "n": 1}')

    def test_invalid_format(self, make_logger):
        with pytest.raises(ValueError):
            make_logger(fmt="xml")


class TestRedaction:
    """Test redaction within the pipeline."""

    def test_sensitive_fields_redacted(self, logger, capture):
        logger.info({"message": "login", "user": "u", "auth": {"password": "hunter2"}})
        record = capture.records()[0]
        assert record["user"] == "u"
        assert record["auth"] == {"password": "[FILTERED]"}
        assert "hunter2" not in capture.lines()[0]

    def test_filter_can_be_disabled(self, logger, capture):
        logger.set_sensitive_data_filter(False)
        capture.clear()
        logger.info({"message": "login", "password": "hunter2"})
        assert capture.records()[0]["password"] == "hunter2"

    def test_extra_is_redacted(self, logger, capture):
        logger.info("call", extra={"apiKey": "k-123"})
        assert capture.records()[0]["apiKey"] == "[FILTERED]"


class TestOperations:
    """Test trace records emitted by the logger."""

    def test_start_and_end_records(self, logger, capture):
        span_id = logger.start_operation("op", {"k": "v"})
        logger.info("inside")
        completed = logger.end_operation(span_id, {"rows": 3})

        start, inside, end = capture.records()
        assert start["level"] == "DEBUG"
        assert start["logger"] == "trace"
        assert start["message"] == "Operation trace started"
        assert start["_trace"]["spanId"] == span_id
        assert inside["_trace"]["spanId"] == span_id
        assert end["level"] == "INFO"
        assert end["message"] == "Operation trace ended"
        assert end["success"] is True
        assert end["attributes"] == {"k": "v", "rows": 3}
        assert end["_trace"]["spanId"] == span_id
        assert end["durationMs"] == round(completed.duration_ms, 3)

    def test_failed_operation_logs_error(self, logger, capture):
        span_id = logger.start_operation("op")
        logger.end_operation(span_id, error=RuntimeError("boom"))
        end = capture.records()[-1]
        assert end["level"] == "ERROR"
        assert end["success"] is False
        assert end["error"] == "boom"

    def test_parent_child_correlation(self, logger, capture):
        parent = logger.start_operation("parent")
        child = logger.start_operation("child")
        logger.end_operation(child)
        logger.end_operation(parent)

        ends = [r for r in capture.records() if r["message"] == "Operation trace ended"]
        assert [r["operationName"] for r in ends] == ["child", "parent"]
        child_trace, parent_trace = ends[0]["_trace"], ends[1]["_trace"]
        assert child_trace["traceId"] == parent_trace["traceId"]
        assert child_trace["spanId"] != parent_trace["spanId"]
        assert child_trace["parentSpanId"] == parent_trace["spanId"]

    def test_no_trace_after_all_spans_end(self, logger, capture):
        logger.end_operation(logger.start_operation("op"))
        capture.clear()
        logger.info("after")
        assert "_trace" not in capture.records()[0]

    def test_unknown_span_warns(self, logger, capture):
        assert logger.end_operation("deadbeefdeadbeef") is None
        record = capture.records()[0]
        assert record["level"] == "WARNING"
        assert record["spanId"] == "deadbeefdeadbeef"

    def test_end_none_is_noop(self, logger, capture):
        assert logger.end_operation(None) is None
        assert capture.records() == []

    def test_tracking_disabled(self, make_logger, capture):
        logger = make_logger(session_tracking=False, limiter=RateLimiter(enabled=False))
        assert logger.start_operation("op") is None
        logger.info("plain")
        assert "_trace" not in capture.records()[0]

    def test_duration_metric(self, logger):
        logger.end_operation(logger.start_operation("op"))
        assert logger.metrics.snapshot()["operations"] == 1


class TestMethodAndEndpointHelpers:
    """Test method entry/exit and endpoint helpers."""

    def test_method_entry_exit(self, logger, capture):
        span_id = logger.log_method_entry("tools/call", {"name": "echo", "apiKey": "k-1"})
        entry = [r for r in capture.records() if r["logger"] == "method"][0]
        assert entry["level"] == "DEBUG"
        assert entry["message"].startswith("→ tools/call(")
        assert '"apiKey": "[FILTERED]"' in entry["message"]
        assert "k-1" not in entry["message"]

        completed = logger.log_method_exit(
            "tools/call", {"responseTimeMs": 12, "requestId": 7}, span_id=span_id
        )
        exit_line = [r for r in capture.records() if r["logger"] == "method"][1]
        assert exit_line["message"].startswith("← tools/call → ")
        assert completed.attributes == {
            "mcp.method": "tools/call",
            "mcp.method.result": "success",
            "mcp.response.time.ms": 12,
            "mcp.request.id": "7",
        }

    def test_method_exit_void(self, logger, capture):
        span_id = logger.log_method_entry("ping")
        completed = logger.log_method_exit("ping", span_id=span_id)
        messages = [r["message"] for r in capture.by_logger("method")]
        assert messages == ["→ ping()", "← ping → void"]
        assert completed.attributes["mcp.method.result"] == "void"

    def test_params_truncated(self, make_logger, capture):
        logger = make_logger(max_param_chars=10, limiter=RateLimiter(enabled=False))
        logger.log_method_entry("m", {"long": "x" * 100})
        message = capture.by_logger("method")[0]["message"]
        assert message == '→ m({"long": ")'

    def test_method_entry_skipped_above_debug(self, make_logger, capture):
        logger = make_logger(level="info", limiter=RateLimiter(enabled=False))
        span_id = logger.log_method_entry("m", {"a": 1})
        assert capture.by_logger("method") == []
        assert logger.correlator.is_active(span_id)

    def test_endpoint_entry(self, logger, capture):
        span_id = logger.log_endpoint_entry("tools/call", 42, {"name": "echo"})
        record = capture.by_logger("endpoint")[0]
        assert record["level"] == "INFO"
        assert record["message"] == 'tools/call triggered[42] {"name": "echo"}'
        assert record["endpoint"] == "tools/call"
        assert record["_trace"]["operationName"] == "mcp.tools/call"

        span = logger.correlator.get(span_id)
        assert dict(span.attributes) == {
            "mcp.endpoint": "tools/call",
            "mcp.request.id": "42",
            "mcp.tool.name": "echo",
        }

    def test_endpoint_without_request_id(self, logger, capture):
        span_id = logger.log_endpoint_entry("resources/list")
        assert capture.by_logger("endpoint")[0]["message"] == "resources/list triggered"
        assert logger.correlator.get(span_id).attributes["mcp.request.id"] == "unknown"

    @pytest.mark.parametrize(
        "endpoint,params,expected",
        [
            ("resources/read", {"uri": "file:///a"}, {"mcp.resource.uri": "file:///a"}),
            ("prompts/get", {"name": "greet"}, {"mcp.prompt.name": "greet"}),
            ("tools/call", {"name": "echo"}, {"mcp.tool.name": "echo"}),
            (
                "tools/list",
                {"cursor": "c1", "hasMore": True},
                {"mcp.request.cursor": "c1", "mcp.response.has_more": True},
            ),
            ("completion/complete", {"name": "x"}, {}),
            ("tools/call", None, {}),
        ],
    )
    def test_extract_mcp_attributes(self, endpoint, params, expected):
        assert extract_mcp_attributes(endpoint, params) == expected


class TestServerErrors:
    """Test log_server_error."""

    def test_server_error_record(self, logger, capture):
        try:
            raise LookupError("Tool not found: echo")
        except LookupError as e:
            logger.log_server_error(e, "tools/call", {"tool": "echo"})
        record = capture.records()[0]
        assert record["level"] == "ERROR"
        assert record["logger"] == "server"
        assert record["context"] == "tools/call"
        assert record["errorType"] == "tool_not_found"
        assert record["errorCode"] == -32601
        assert record["details"] == {"tool": "echo"}
        assert record["error"]["name"] == "LookupError"
        assert record["error"]["message"] == "Tool not found: echo"
        assert record["error"]["stack"]

    def test_string_error_defaults_to_internal(self, logger, capture):
        logger.log_server_error("something odd", "startup")
        record = capture.records()[0]
        assert record["errorType"] == "internal_error"
        assert record["errorCode"] == -32603
        assert record["error"] == {"name": "Error", "message": "something odd"}
        assert "details" not in record

    def test_details_are_redacted(self, logger, capture):
        logger.log_server_error("auth failed", "auth", {"token": "t-1"})
        assert capture.records()[0]["details"] == {"token": "[FILTERED]"}

    def test_unprintable_error_is_logged_as_internal(self, logger, capture):
        class BrokenError(Exception):
            def __str__(self):
                raise RuntimeError("no")

        assert logger.log_server_error(BrokenError(), "tools/call") is not None
        record = capture.records()[0]
        assert record["errorType"] == "internal_error"
        assert record["errorCode"] == -32603
        assert record["message"] == "<unrepresentable BrokenError>"
        assert record["error"]["name"] == "BrokenError"
        assert record["error"]["message"] == "<unrepresentable BrokenError>"


class TestSessions:
    """Test session enrichment."""

    def test_records_carry_current_session(self, logger, capture):
        session_id = logger.sessions.create_session("http", "client-1")
        logger.set_session_context(session_id)
        logger.info("x")
        record = capture.records()[-1]
        assert record["_session"]["sessionId"] == session_id
        assert record["_session"]["clientId"] == "client-1"

    def test_span_records_session(self, logger):
        session_id = logger.sessions.create_session("stdio")
        logger.set_session_context(session_id)
        span_id = logger.start_operation("op")
        assert logger.correlator.get(span_id).session_id == session_id

    def test_caller_correlation_keys_are_moved_aside(self, logger, capture):
        logger.info({"message": "hi", "_session": "client-supplied", "_trace": "x"})
        record = capture.records()[0]
        assert "_session" not in record
        assert "_trace" not in record
        assert record["data._session"] == "client-supplied"
        assert record["data._trace"] == "x"

    def test_caller_session_key_does_not_replace_current_session(self, logger, capture):
        session_id = logger.sessions.create_session("http", "client-1")
        logger.set_session_context(session_id)
        capture.clear()
        logger.info({"message": "hi", "_session": {"sessionId": "spoofed"}})
        record = capture.records()[0]
        assert record["_session"]["sessionId"] == session_id
        assert record["data._session"] == {"sessionId": "spoofed"}

    def test_tracking_disabled_omits_session(self, logger, capture):
        session_id = logger.sessions.create_session("http")
        logger.set_session_context(session_id)
        logger.set_session_tracking(False)
        capture.clear()
        logger.info("x")
        assert "_session" not in capture.records()[0]

    def test_statistics(self, logger):
        logger.sessions.create_session("http", "c")
        logger.start_operation("op")
        stats = logger.get_statistics()
        assert stats["sessionEnabled"] is True
        assert stats["sessionStats"]["activeSessions"] == 1
        assert stats["sessionStats"]["activeTraces"] == 1

    def test_statistics_when_disabled(self, make_logger):
        logger = make_logger(session_tracking=False)
        assert logger.get_statistics() == {
            "sessionEnabled": False,
            "sessionStats": {"activeSessions": 0, "activeTraces": 0, "sessions": []},
        }


class TestRateLimiting:
    """Test rate limiting within the pipeline."""

    def test_excess_records_suppressed_with_one_notice(self, make_logger, capture, clock):
        logger = make_logger(limiter=RateLimiter(max_per_window=5, clock=clock))
        for i in range(20):
            logger.debug(f"d{i}")
        assert len(capture.records()) == 5

        clock.advance(1.0)
        logger.debug("next")
        records = capture.records()
        notices = [r for r in records if r.get("suppressedCount") is not None]
        assert len(notices) == 1
        assert notices[0]["level"] == "WARNING"
        assert notices[0]["suppressedCount"] == 15
        assert notices[0]["timeWindowMs"] == 1000
        assert [r["message"] for r in records[-2:]][1] == "next"
        assert logger.metrics.snapshot()["suppressed"] == 15

    def test_critical_records_never_suppressed(self, make_logger, capture, clock):
        logger = make_logger(limiter=RateLimiter(max_per_window=5, clock=clock))
        for i in range(20):
            logger.critical(f"c{i}")
        assert len(capture.records()) == 20

    def test_below_threshold_does_not_consume_slots(self, make_logger, capture, clock):
        logger = make_logger(level="info", limiter=RateLimiter(max_per_window=2, clock=clock))
        for _ in range(10):
            logger.debug("hidden")
        logger.info("a")
        logger.info("b")
        assert capture.messages() == ["a", "b"]

    def test_flush_emits_pending_notice(self, make_logger, capture, clock):
        logger = make_logger(limiter=RateLimiter(max_per_window=1, clock=clock))
        logger.info("kept")
        logger.info("dropped")
        notice = logger.flush()
        assert notice.payload["suppressedCount"] == 1
        assert capture.messages()[-1] == "Log messages were suppressed due to rate limiting"
        assert logger.flush() is None

    def test_toggle_rate_limiting(self, make_logger, capture, clock):
        logger = make_logger(limiter=RateLimiter(max_per_window=1, clock=clock))
        logger.set_rate_limiting(False)
        capture.clear()
        for _ in range(5):
            logger.info("x")
        assert len(capture.records()) == 5


class TestNotifier:
    """Test forwarding to a downstream notifier."""

    async def test_forwards_at_or_above_floor(self, logger):
        notifier = RecordingNotifier()
        logger.attach_notifier(notifier, "warning")
        logger.info("quiet")
        logger.error({"message": "loud", "token": "t"}, "tools")
        await logger.drain_notifications()

        assert len(notifier.messages) == 1
        level, category, data = notifier.messages[0]
        assert (level, category) == ("error", "tools")
        assert data["message"] == "loud"
        assert data["token"] == "[FILTERED]"

    async def test_detach(self, logger):
        notifier = RecordingNotifier()
        logger.attach_notifier(notifier)
        logger.detach_notifier()
        logger.error("after detach")
        await logger.drain_notifications()
        assert notifier.messages == []

    async def test_failure_reported_on_stream_only(self, logger, capture):
        notifier = FailingNotifier()
        logger.attach_notifier(notifier)
        logger.error("boom")
        await logger.drain_notifications()

        assert notifier.calls == 1
        failure = capture.records()[-1]
        assert failure["level"] == "WARNING"
        assert failure["message"] == "Log notification delivery failed"
        assert failure["error"]["name"] == "ConnectionError"
        assert logger.metrics.snapshot()["notifications_failed"] == 1

    def test_sync_notifier(self, logger):
        received = []

        class SyncNotifier:
            def send_log_message(self, level, logger, data):
                received.append(level)

        logger.attach_notifier(SyncNotifier())
        logger.notice("n")
        assert received == ["notice"]

    def test_async_notifier_without_loop(self, logger, capture):
        notifier = RecordingNotifier()
        logger.attach_notifier(notifier)
        logger.error("no loop")
        assert notifier.messages == []
        assert capture.records()[-1]["message"] == "Log notification delivery failed"


class TestDefaultLogger:
    """Test process-wide logger accessors."""

    def test_get_structured_logger_from_settings(self, monkeypatch):
        monkeypatch.setenv("MCPSCOPE_LOGGING__LEVEL", "warning")
        logger = get_structured_logger()
        assert logger.level is Severity.WARNING
        assert get_structured_logger() is logger

    def test_category_logger(self, logger, capture):
        set_structured_logger(logger)
        category_logger = get_logger("mcpscope.tools")
        assert isinstance(category_logger, CategoryLogger)
        assert get_logger("tools") is category_logger

        category_logger.info("Tool invoked", tool="echo")
        category_logger.timed("Tool done", 12.34567)
        first, second = capture.records()
        assert first["logger"] == "tools"
        assert first["tool"] == "echo"
        assert second["durationMs"] == 12.346

    def test_formatter_renders_stdlib_records(self):
        record = logging.LogRecord("uvicorn.error", logging.WARNING, __file__, 1, "port %d busy", (80,), None)
        line = json.loads(RecordFormatter("json").format(record))
        assert line["level"] == "WARNING"
        assert line["logger"] == "uvicorn.error"
        assert line["message"] == "port 80 busy"
