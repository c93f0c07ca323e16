"""
Sensitive field redaction for structured log payloads.

Walks mappings and sequences depth-first and replaces the value of every
key on the denylist with a fixed marker. Key matching ignores case and
separators, so ``apiKey``, ``api_key`` and ``API-KEY`` are the same key; a
key also matches when it ends with a denylisted name (``client_secret``,
``accessToken``).

Cycles are detected by object identity along the current path and replaced
with a circular marker. Containers shared between siblings are not cycles
and are walked each time they appear.
"""

import re
from collections.abc import Iterable, Mapping
from typing import Any

DEFAULT_SENSITIVE_KEYS: tuple[str, ...] = (
    "password",
    "passwd",
    "apiKey",
    "token",
    "secret",
    "privateKey",
    "credential",
    "credentials",
    "authToken",
    "authorization",
)

REDACTION_MARKER = "[FILTERED]"
CIRCULAR_MARKER = "[CIRCULAR]"

_SEPARATORS = re.compile(r"[\s_\-.]+")


def normalize_key(key: str) -> str:
    """Lowercase a key and strip separators for denylist comparison."""
    return _SEPARATORS.sub("", key).lower()


class SensitiveFieldRedactor:
    """Replaces values under sensitive keys with a redaction marker."""

    def __init__(
        self,
        sensitive_keys: Iterable[str] = DEFAULT_SENSITIVE_KEYS,
        *,
        enabled: bool = True,
        marker: str = REDACTION_MARKER,
        circular_marker: str = CIRCULAR_MARKER,
    ):
        self.enabled = enabled
        self.marker = marker
        self.circular_marker = circular_marker
        self._terms = frozenset(normalize_key(k) for k in sensitive_keys if k)

    @property
    def sensitive_keys(self) -> frozenset[str]:
        return self._terms

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = bool(enabled)

    def is_sensitive_key(self, key: Any) -> bool:
        """Check a mapping key against the denylist. Non-string keys never match."""
        if not isinstance(key, str):
            return False
        normalized = normalize_key(key)
        if normalized in self._terms:
            return True
        return any(normalized.endswith(term) for term in self._terms)

    def redact(self, payload: Any) -> Any:
        """Return a redacted copy of ``payload``; identity when disabled."""
        if not self.enabled:
            return payload
        return self._walk(payload, set())

    def _walk(self, value: Any, ancestors: set[int]) -> Any:
        if isinstance(value, Mapping):
            if id(value) in ancestors:
                return self.circular_marker
            ancestors.add(id(value))
            try:
                return {
                    key: (
                        self.marker
                        if self.is_sensitive_key(key)
                        else self._walk(item, ancestors)
                    )
                    for key, item in value.items()
                }
            finally:
                ancestors.discard(id(value))

        if isinstance(value, (list, tuple)):
            if id(value) in ancestors:
                return self.circular_marker
            ancestors.add(id(value))
            try:
                items = [self._walk(item, ancestors) for item in value]
            finally:
                ancestors.discard(id(value))
            return tuple(items) if isinstance(value, tuple) else items

        return value
