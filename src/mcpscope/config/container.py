"""
Dependency injection container wiring one process's observability components.

The logger, session registry and lifecycle machine share one trace
correlator, so ``activeTraces`` statistics and session span reaping see the
same in-flight spans the logger emits records for.
"""

import asyncio
from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Any, TextIO

from .settings import Settings, get_settings


class Container:
    """Dependency injection container with async lifecycle management."""

    def __init__(self, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self._services: dict[str, Any] = {}
        self._factories: dict[str, Any] = {}
        self._singletons: dict[str, Any] = {}

    def register_factory(self, name: str, factory: Any) -> None:
        """Register a factory function for a service."""
        self._factories[name] = factory

    def register_singleton(self, name: str, instance: Any) -> None:
        """Register a singleton instance."""
        self._singletons[name] = instance

    def get(self, name: str, default: Any = None) -> Any:
        """Get a service by name."""
        if name in self._singletons:
            return self._singletons[name]

        if name in self._services:
            return self._services[name]

        if name in self._factories:
            instance = self._factories[name](self)
            self._services[name] = instance
            return instance

        return default

    @property
    def logger(self):
        return self.get("logger")

    @property
    def lifecycle(self):
        return self.get("lifecycle")

    async def cleanup(self) -> None:
        """Shut the lifecycle down if it was started and is not already closed."""
        from ..core.lifecycle import LifecycleState

        lifecycle = self._services.get("lifecycle") or self._singletons.get("lifecycle")
        if lifecycle is None or lifecycle.state is LifecycleState.SHUTDOWN:
            return
        await lifecycle.shutdown("Container cleanup")

    async def sweep_inactive_sessions(self) -> list[str]:
        """Remove sessions and session lifecycles idle past the configured limit."""
        max_inactive = self.settings.lifecycle.session_max_inactive_seconds
        removed = self.get("sessions").cleanup_inactive_sessions(max_inactive)
        removed += await self.get("session_lifecycles").cleanup_inactive(max_inactive)
        return removed

    async def run_session_sweeper(self, interval: float = 60.0) -> None:
        """Sweep inactive sessions every ``interval`` seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            await self.sweep_inactive_sessions()

    @asynccontextmanager
    async def lifespan(self):
        """Async context manager for container lifecycle."""
        try:
            yield self
        finally:
            await self.cleanup()


def setup_container(settings: Settings | None = None, stream: TextIO | None = None) -> Container:
    """Setup container with default service factories."""
    container = Container(settings)

    def _correlator_factory(c: Container):
        from ..observability.tracing import TraceCorrelator

        return TraceCorrelator()

    def _sessions_factory(c: Container):
        from ..observability.sessions import SessionRegistry

        return SessionRegistry(c.get("correlator"))

    def _metrics_factory(c: Container):
        from ..observability.metrics import LoggingMetrics

        return LoggingMetrics()

    def _logger_factory(c: Container):
        from ..observability.logging import StructuredLogger

        return StructuredLogger.from_settings(
            c.settings,
            stream=stream,
            correlator=c.get("correlator"),
            sessions=c.get("sessions"),
            metrics=c.get("metrics"),
        )

    def _session_lifecycles_factory(c: Container):
        from ..core.lifecycle import SessionLifecycleRegistry

        lifecycle = c.settings.lifecycle
        return SessionLifecycleRegistry(
            c.get("logger"),
            protocol_version=lifecycle.protocol_version,
            supported_versions=lifecycle.supported_versions,
            instructions=lifecycle.instructions,
        )

    def _lifecycle_factory(c: Container):
        from ..core.lifecycle import LifecycleStateMachine

        machine = LifecycleStateMachine.from_settings(c.settings, c.get("logger"))
        session_lifecycles = c.get("session_lifecycles")
        machine.session_lifecycles = session_lifecycles
        machine.on_shutdown(session_lifecycles.shutdown_all)
        return machine

    container.register_factory("correlator", _correlator_factory)
    container.register_factory("sessions", _sessions_factory)
    container.register_factory("metrics", _metrics_factory)
    container.register_factory("logger", _logger_factory)
    container.register_factory("session_lifecycles", _session_lifecycles_factory)
    container.register_factory("lifecycle", _lifecycle_factory)

    return container


@lru_cache
def get_container() -> Container:
    """Get cached container instance."""
    return setup_container()
