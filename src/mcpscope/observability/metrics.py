"""
OpenTelemetry instruments for the logging pipeline.

Counts emitted, suppressed and failed-to-forward records and records
operation durations. Instruments come from the global meter provider unless
a Meter is injected; with no provider configured they are no-ops. A plain
in-process tally is kept alongside for diagnostics and tests.
"""

from collections import defaultdict
from typing import Any

from opentelemetry import metrics
from opentelemetry.metrics import Meter


class LoggingMetrics:
    """Counters and histograms for one StructuredLogger."""

    def __init__(self, meter: Meter | None = None):
        self.meter = meter or metrics.get_meter("mcpscope")

        self._emitted = self.meter.create_counter(
            "mcpscope_records_emitted_total",
            description="Log records written to the sink",
            unit="1",
        )
        self._suppressed = self.meter.create_counter(
            "mcpscope_records_suppressed_total",
            description="Log records dropped by the rate limiter",
            unit="1",
        )
        self._notify_failed = self.meter.create_counter(
            "mcpscope_notifications_failed_total",
            description="Log notifications the downstream notifier failed to deliver",
            unit="1",
        )
        self._durations = self.meter.create_histogram(
            "mcpscope_operation_duration_ms",
            description="Duration of traced operations",
            unit="ms",
        )

        self._tally: dict[str, Any] = {
            "emitted": defaultdict(int),
            "suppressed": 0,
            "notifications_failed": 0,
            "operations": 0,
        }

    def record_emitted(self, level: str) -> None:
        self._emitted.add(1, {"level": level})
        self._tally["emitted"][level] += 1

    def record_suppressed(self, count: int = 1) -> None:
        self._suppressed.add(count)
        self._tally["suppressed"] += count

    def record_notification_failed(self) -> None:
        self._notify_failed.add(1)
        self._tally["notifications_failed"] += 1

    def record_operation(self, operation: str, duration_ms: float, success: bool) -> None:
        self._durations.record(
            duration_ms, {"operation": operation, "success": str(success).lower()}
        )
        self._tally["operations"] += 1

    def snapshot(self) -> dict[str, Any]:
        return {
            "emitted": dict(self._tally["emitted"]),
            "suppressed": self._tally["suppressed"],
            "notifications_failed": self._tally["notifications_failed"],
            "operations": self._tally["operations"],
        }
