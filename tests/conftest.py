"""
Global pytest configuration and fixtures for test isolation.

Resets cached settings, the process-wide logger and the context-local
session/span state between tests, and provides a captured log stream.
"""

import io
import json

import pytest

from mcpscope.config.container import get_container
from mcpscope.config.settings import Settings, get_settings
from mcpscope.observability import logging as mcp_logging
from mcpscope.observability import sessions as mcp_sessions
from mcpscope.observability import tracing as mcp_tracing
from mcpscope.observability.logging import StructuredLogger, set_structured_logger
from mcpscope.observability.rate_limit import RateLimiter


def reset_all_global_state():
    """Completely reset cached and context-local global state."""
    get_settings.cache_clear()
    get_container.cache_clear()
    set_structured_logger(None)
    mcp_logging._loggers.clear()
    mcp_tracing._span_stack.set(())
    mcp_sessions._current_session.set(None)


@pytest.fixture(autouse=True)
def test_isolation(monkeypatch):
    """Per-test isolation to ensure clean state for each test."""
    monkeypatch.setenv("MCPSCOPE_LIFECYCLE__INSTALL_SIGNAL_HANDLERS", "false")
    reset_all_global_state()
    yield
    reset_all_global_state()


class FakeClock:
    """Settable wall clock for window arithmetic."""

    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class LogCapture:
    """Parses JSON log lines written to a text stream."""

    def __init__(self, stream: io.StringIO):
        self.stream = stream

    def lines(self) -> list[str]:
        return [line for line in self.stream.getvalue().splitlines() if line.strip()]

    def records(self) -> list[dict]:
        return [json.loads(line) for line in self.lines()]

    def messages(self) -> list:
        return [r.get("message") for r in self.records()]

    def levels(self) -> list[str]:
        return [r["level"] for r in self.records()]

    def by_logger(self, category: str) -> list[dict]:
        return [r for r in self.records() if r["logger"] == category]

    def clear(self) -> None:
        self.stream.seek(0)
        self.stream.truncate(0)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def stream():
    return io.StringIO()


@pytest.fixture
def capture(stream):
    return LogCapture(stream)


@pytest.fixture
def make_logger(stream):
    """Factory for loggers writing JSON to the captured stream."""

    def factory(**kwargs) -> StructuredLogger:
        kwargs.setdefault("level", "debug")
        kwargs.setdefault("stream", stream)
        return StructuredLogger(**kwargs)

    return factory


@pytest.fixture
def logger(make_logger):
    """Debug-level logger with rate limiting off."""
    return make_logger(limiter=RateLimiter(enabled=False))


@pytest.fixture
def settings():
    return Settings(
        logging={"level": "debug"},
        rate_limit={"enabled": False},
        lifecycle={"install_signal_handlers": False},
    )
