"""
Severity scale and threshold policy.

The eight syslog-style levels are totally ordered. Each level also has a
standard library ``logging`` number so records can flow through ordinary
handlers; NOTICE, ALERT and EMERGENCY are registered as extra level names.
"""

import logging
from enum import IntEnum

from ..core.errors import InvalidSeverity


class Severity(IntEnum):
    """Ordered log severity: debug < info < ... < emergency."""

    DEBUG = 0
    INFO = 1
    NOTICE = 2
    WARNING = 3
    ERROR = 4
    CRITICAL = 5
    ALERT = 6
    EMERGENCY = 7

    @property
    def label(self) -> str:
        """Lowercase wire name (e.g. ``"warning"``)."""
        return self.name.lower()

    @property
    def logging_level(self) -> int:
        """Matching standard library logging level number."""
        return _LOGGING_LEVELS[self]

    @classmethod
    def parse(cls, value: "Severity | str | int") -> "Severity":
        """Coerce a name, number or Severity into a Severity.

        Raises:
            InvalidSeverity: if the value is not on the scale.
        """
        if isinstance(value, Severity):
            return value
        if isinstance(value, bool):
            raise InvalidSeverity(value)
        if isinstance(value, int):
            try:
                return cls(value)
            except ValueError:
                raise InvalidSeverity(value) from None
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise InvalidSeverity(value) from None
        raise InvalidSeverity(value)


NOTICE = 25
ALERT = 60
EMERGENCY = 70

_LOGGING_LEVELS: dict[Severity, int] = {
    Severity.DEBUG: logging.DEBUG,
    Severity.INFO: logging.INFO,
    Severity.NOTICE: NOTICE,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
    Severity.CRITICAL: logging.CRITICAL,
    Severity.ALERT: ALERT,
    Severity.EMERGENCY: EMERGENCY,
}

logging.addLevelName(NOTICE, "NOTICE")
logging.addLevelName(ALERT, "ALERT")
logging.addLevelName(EMERGENCY, "EMERGENCY")


class SeverityPolicy:
    """Process-wide minimum severity for emitted records."""

    def __init__(self, threshold: Severity | str = Severity.INFO):
        self._threshold = Severity.parse(threshold)

    @property
    def threshold(self) -> Severity:
        return self._threshold

    def set_threshold(self, severity: Severity | str) -> Severity:
        """Replace the threshold, returning the previous one."""
        new = Severity.parse(severity)
        previous, self._threshold = self._threshold, new
        return previous

    def is_enabled(self, severity: Severity | str) -> bool:
        """Check whether a record at ``severity`` passes the threshold."""
        return Severity.parse(severity) >= self._threshold
