"""
Fixed-window log volume limiter.

Windows are wall-clock aligned buckets of ``window_seconds``. Counters for
a window are dropped as soon as a call observes a newer window; there is no
background sweep. Records at or above the bypass level are always admitted.

The limiter never emits anything itself. When a window closes with
suppressed records, one SuppressionReport is queued; the logger takes it and
emits a single aggregate warning.
"""

import math
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from .severity import Severity


@dataclass(frozen=True)
class SuppressionReport:
    """Aggregate count of records dropped in one closed window."""

    suppressed: int
    window_start: float
    window_seconds: float

    def as_payload(self) -> dict[str, object]:
        return {
            "message": "Log messages were suppressed due to rate limiting",
            "suppressedCount": self.suppressed,
            "timeWindowMs": int(self.window_seconds * 1000),
        }


class RateLimiter:
    """Process-wide per-window admission counter."""

    def __init__(
        self,
        max_per_window: int = 100,
        window_seconds: float = 1.0,
        *,
        enabled: bool = True,
        bypass_level: Severity | str = Severity.CRITICAL,
        clock: Callable[[], float] = time.time,
    ):
        if max_per_window < 1:
            raise ValueError("max_per_window must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")

        self.max_per_window = max_per_window
        self.window_seconds = window_seconds
        self.enabled = enabled
        self.bypass_level = Severity.parse(bypass_level)
        self._clock = clock
        self._lock = threading.Lock()

        self._window: int | None = None
        self._count = 0
        self._suppressed = 0
        self._pending: SuppressionReport | None = None

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)

    def admit(self, severity: Severity | str) -> bool:
        """Count a record against the current window and decide whether it passes."""
        severity = Severity.parse(severity)
        if not self.enabled or severity >= self.bypass_level:
            return True

        with self._lock:
            self._roll(self._clock())
            self._count += 1
            if self._count <= self.max_per_window:
                return True
            self._suppressed += 1
            return False

    def take_report(self) -> SuppressionReport | None:
        """Pop the report for the last closed window, if it suppressed anything."""
        with self._lock:
            self._roll(self._clock())
            report, self._pending = self._pending, None
            return report

    def flush(self) -> SuppressionReport | None:
        """Pop pending and in-progress suppression counts as one report."""
        with self._lock:
            self._roll(self._clock())
            report, self._pending = self._pending, None
            if self._suppressed:
                report = self._merge(report, self._window_start(self._window), self._suppressed)
                self._suppressed = 0
            return report

    def state(self) -> dict[str, object]:
        """Snapshot of the current window for diagnostics."""
        with self._lock:
            return {
                "enabled": self.enabled,
                "windowStart": self._window_start(self._window) if self._window is not None else None,
                "count": self._count,
                "suppressed": self._suppressed,
                "maxPerWindow": self.max_per_window,
                "windowSeconds": self.window_seconds,
            }

    def reset(self) -> None:
        with self._lock:
            self._window = None
            self._count = 0
            self._suppressed = 0
            self._pending = None

    def _roll(self, now: float) -> None:
        window = math.floor(now / self.window_seconds)
        if window == self._window:
            return
        if self._window is not None and self._suppressed:
            self._pending = self._merge(
                self._pending, self._window_start(self._window), self._suppressed
            )
        self._window = window
        self._count = 0
        self._suppressed = 0

    def _window_start(self, window: int | None) -> float:
        return (window or 0) * self.window_seconds

    def _merge(
        self, report: SuppressionReport | None, window_start: float, suppressed: int
    ) -> SuppressionReport:
        if report is None:
            return SuppressionReport(suppressed, window_start, self.window_seconds)
        return SuppressionReport(
            report.suppressed + suppressed, report.window_start, self.window_seconds
        )
