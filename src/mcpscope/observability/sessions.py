"""
Client session tracking.

The registry holds every connected session. Which session the current
request belongs to is held in a ContextVar, set explicitly by the transport
or handler code; it is never inferred and never shared between concurrent
tasks, so enrichment cannot leak one client's identity into another
client's records.
"""

import uuid
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, field, fields, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .tracing import TraceCorrelator

_current_session: ContextVar[str | None] = ContextVar("mcpscope_session", default=None)


class TransportType(str, Enum):
    """Client transport kinds."""

    STDIO = "stdio"
    HTTP = "http"
    WEBSOCKET = "websocket"


@dataclass(frozen=True)
class SessionContext:
    """One connected client session. Updates produce a new instance."""

    session_id: str
    transport_type: TransportType
    client_id: str | None = None
    connection_id: str = field(default_factory=lambda: f"conn_{uuid.uuid4().hex[:12]}")
    capabilities: frozenset[str] = frozenset()
    connected_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    last_active_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    user_agent: str | None = None
    remote_address: str | None = None
    protocol_version: str | None = None
    client_info: Mapping[str, Any] | None = None

    def identity(self) -> dict[str, Any]:
        """Identifying fields stamped onto records under ``_session``."""
        return {
            "sessionId": self.session_id,
            "clientId": self.client_id,
            "connectionId": self.connection_id,
            "transportType": self.transport_type.value,
        }

    def uptime_ms(self, now: datetime | None = None) -> int:
        now = now or datetime.now(UTC)
        return int((now - self.connected_at).total_seconds() * 1000)


_UPDATABLE = {f.name for f in fields(SessionContext)} - {"session_id", "connected_at"}


class SessionRegistry:
    """Registry of active sessions plus the per-context current session."""

    def __init__(self, correlator: TraceCorrelator | None = None):
        self._sessions: dict[str, SessionContext] = {}
        self._correlator = correlator

    def create_session(
        self,
        transport_type: TransportType | str,
        client_id: str | None = None,
        capabilities: Iterable[str] | None = None,
        **details: Any,
    ) -> str:
        """Register a new session and return its id."""
        session = SessionContext(
            session_id=f"sess_{uuid.uuid4().hex}",
            transport_type=TransportType(transport_type),
            client_id=client_id,
            capabilities=frozenset(capabilities or ()),
            **details,
        )
        self._sessions[session.session_id] = session
        return session.session_id

    def get_session(self, session_id: str) -> SessionContext | None:
        return self._sessions.get(session_id)

    def update_session(self, session_id: str, **changes: Any) -> SessionContext | None:
        """Apply changes to a session, refreshing its activity time.

        Returns the updated session, or None if the session is unknown.
        """
        session = self._sessions.get(session_id)
        if session is None:
            return None

        unknown = set(changes) - _UPDATABLE
        if unknown:
            raise TypeError(f"Cannot update session fields: {', '.join(sorted(unknown))}")
        if "capabilities" in changes:
            changes["capabilities"] = frozenset(changes["capabilities"] or ())
        if "transport_type" in changes:
            changes["transport_type"] = TransportType(changes["transport_type"])
        changes.setdefault("last_active_at", datetime.now(UTC))

        updated = replace(session, **changes)
        self._sessions[session_id] = updated
        return updated

    def touch(self, session_id: str) -> bool:
        return self.update_session(session_id) is not None

    def remove_session(self, session_id: str) -> bool:
        """Remove a session and reap its in-flight spans."""
        session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        if self._correlator is not None:
            self._correlator.discard_session(session_id)
        if _current_session.get() == session_id:
            _current_session.set(None)
        return True

    def list_sessions(self) -> list[SessionContext]:
        return list(self._sessions.values())

    def cleanup_inactive_sessions(
        self, max_inactive_seconds: float, now: datetime | None = None
    ) -> list[str]:
        """Remove sessions idle for longer than ``max_inactive_seconds``."""
        now = now or datetime.now(UTC)
        stale = [
            s.session_id
            for s in self._sessions.values()
            if (now - s.last_active_at).total_seconds() > max_inactive_seconds
        ]
        for session_id in stale:
            self.remove_session(session_id)
        return stale

    # Current session (per execution context)

    def set_session_context(self, session_id: str | None) -> Token:
        return _current_session.set(session_id)

    def reset_session_context(self, token: Token) -> None:
        _current_session.reset(token)

    def current_session_id(self) -> str | None:
        return _current_session.get()

    def current_session(self) -> SessionContext | None:
        session_id = _current_session.get()
        return self._sessions.get(session_id) if session_id else None

    @contextmanager
    def session_scope(self, session_id: str) -> Iterator[SessionContext | None]:
        """Run a block with ``session_id`` as the current session."""
        token = _current_session.set(session_id)
        try:
            yield self._sessions.get(session_id)
        finally:
            _current_session.reset(token)

    def enrich_log_data(self, data: Mapping[str, Any]) -> dict[str, Any]:
        """Shallow-merge the current session's identity into ``data`` as ``_session``."""
        enriched = dict(data)
        session = self.current_session()
        if session is not None:
            enriched["_session"] = session.identity()
        return enriched

    def get_statistics(self) -> dict[str, Any]:
        now = datetime.now(UTC)
        return {
            "activeSessions": len(self._sessions),
            "activeTraces": self._correlator.active_count if self._correlator else 0,
            "sessions": [
                {
                    "sessionId": s.session_id,
                    "clientId": s.client_id,
                    "transportType": s.transport_type.value,
                    "uptime": s.uptime_ms(now),
                }
                for s in self._sessions.values()
            ],
        }

    def clear(self) -> None:
        self._sessions.clear()
        _current_session.set(None)
