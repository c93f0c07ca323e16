"""
Server lifecycle state machine with protocol negotiation and shutdown hooks.

States advance in one direction only:

    UNINITIALIZED -> INITIALIZING -> OPERATIONAL -> SHUTTING_DOWN -> SHUTDOWN

Shutdown is also reachable from UNINITIALIZED and INITIALIZING. Requests must
be refused unless ``is_operational()`` is true.
"""

import asyncio
import inspect
import signal
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..observability.logging import StructuredLogger, get_structured_logger
from ..observability.patterns import operation
from .errors import LifecycleError, ProtocolVersionError

if TYPE_CHECKING:
    from ..config.settings import Settings

ShutdownHandler = Callable[[], Awaitable[None] | None]

DEFAULT_PROTOCOL_VERSION = "2025-06-18"

DEFAULT_SERVER_CAPABILITIES: dict[str, Any] = {
    "prompts": {"listChanged": True},
    "resources": {"subscribe": True, "listChanged": True},
    "tools": {"listChanged": True},
    "logging": {},
    "completions": {},
}


class LifecycleState(Enum):
    """Server lifecycle states."""

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    OPERATIONAL = "operational"
    SHUTTING_DOWN = "shutting_down"
    SHUTDOWN = "shutdown"


class Implementation(BaseModel):
    """Name and version of an MCP client or server."""

    model_config = ConfigDict(extra="allow")

    name: str
    title: str | None = None
    version: str


class InitializeRequest(BaseModel):
    """Parameters of the client's ``initialize`` request."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    protocol_version: str = Field(alias="protocolVersion")
    capabilities: dict[str, Any] = Field(default_factory=dict)
    client_info: Implementation | None = Field(None, alias="clientInfo")


class InitializeResult(BaseModel):
    """Server's answer to ``initialize``."""

    model_config = ConfigDict(populate_by_name=True)

    protocol_version: str = Field(alias="protocolVersion")
    capabilities: dict[str, Any] = Field(default_factory=dict)
    server_info: Implementation | None = Field(None, alias="serverInfo")
    instructions: str | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


@dataclass(frozen=True)
class Transition:
    """State transition with optional guard condition."""

    event: str
    from_states: frozenset[LifecycleState]
    to_state: LifecycleState
    guard: Callable[["LifecycleStateMachine"], bool] | None = None

    def can_transition(self, machine: "LifecycleStateMachine") -> bool:
        """Check if transition is allowed based on guard condition."""
        if self.guard:
            return self.guard(machine)
        return True


TRANSITIONS: tuple[Transition, ...] = (
    Transition(
        "initialize",
        frozenset({LifecycleState.UNINITIALIZED}),
        LifecycleState.INITIALIZING,
    ),
    Transition(
        "initialized",
        frozenset({LifecycleState.INITIALIZING}),
        LifecycleState.OPERATIONAL,
        guard=lambda m: m.negotiated,
    ),
    Transition(
        "shutdown",
        frozenset(
            {
                LifecycleState.UNINITIALIZED,
                LifecycleState.INITIALIZING,
                LifecycleState.OPERATIONAL,
            }
        ),
        LifecycleState.SHUTTING_DOWN,
    ),
    Transition(
        "shutdown_complete",
        frozenset({LifecycleState.SHUTTING_DOWN}),
        LifecycleState.SHUTDOWN,
    ),
)


def _as_implementation(info: Implementation | Mapping[str, Any] | None) -> Implementation | None:
    if info is None or isinstance(info, Implementation):
        return info
    return Implementation.model_validate(info)


class LifecycleStateMachine:
    """
    Lifecycle of one MCP server (or of one client session when ``session_id`` is set).

    Features:
    - Guarded transitions; repeated initialize/shutdown calls are warnings
    - Protocol version negotiation against a supported list
    - Ordered shutdown hooks that run even when earlier ones fail
    - One-time SIGINT/SIGTERM wiring on the running event loop
    """

    def __init__(
        self,
        logger: StructuredLogger | None = None,
        *,
        server_info: Implementation | Mapping[str, Any] | None = None,
        server_capabilities: Mapping[str, Any] | None = None,
        protocol_version: str = DEFAULT_PROTOCOL_VERSION,
        supported_versions: list[str] | None = None,
        instructions: str | None = None,
        session_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.logger = logger or get_structured_logger()
        self.session_id = session_id
        self.protocol_version = protocol_version
        self.supported_versions = list(supported_versions or [protocol_version])
        self.instructions = instructions
        self.server_info = _as_implementation(server_info)
        self.server_capabilities = dict(
            DEFAULT_SERVER_CAPABILITIES if server_capabilities is None else server_capabilities
        )
        self.client_info: Implementation | None = None
        self.client_capabilities: dict[str, Any] = {}
        self.negotiated = False
        self.session_lifecycles: SessionLifecycleRegistry | None = None

        self._clock = clock
        self._state = LifecycleState.UNINITIALIZED
        self._started_at = clock()
        self._last_active = self._started_at
        self._shutdown_handlers: list[ShutdownHandler] = []
        self._signals_installed = False
        self._loop: asyncio.AbstractEventLoop | None = None
        self._signal_task: asyncio.Task | None = None
        self._closed = asyncio.Event()

    @classmethod
    def from_settings(
        cls, settings: "Settings", logger: StructuredLogger | None = None
    ) -> "LifecycleStateMachine":
        return cls(
            logger,
            server_info={
                "name": settings.server.name,
                "title": settings.server.title,
                "version": settings.server.version,
            },
            protocol_version=settings.lifecycle.protocol_version,
            supported_versions=settings.lifecycle.supported_versions,
            instructions=settings.lifecycle.instructions,
        )

    @property
    def state(self) -> LifecycleState:
        return self._state

    def is_operational(self) -> bool:
        return self._state is LifecycleState.OPERATIONAL

    def require_operational(self) -> None:
        """Refuse work unless operational.

        Raises:
            LifecycleError: in any state other than OPERATIONAL.
        """
        if not self.is_operational():
            raise LifecycleError(f"Server is not operational (state: {self._state.value})")

    def uptime_ms(self) -> int:
        return int((self._clock() - self._started_at) * 1000)

    def touch(self) -> None:
        self._last_active = self._clock()

    def inactive_seconds(self) -> float:
        return self._clock() - self._last_active

    def _log_fields(self, **fields: Any) -> dict[str, Any]:
        if self.session_id is not None:
            fields["sessionId"] = self.session_id
        return fields

    def _fire(self, event: str) -> LifecycleState:
        for transition in TRANSITIONS:
            if transition.event != event or self._state not in transition.from_states:
                continue
            if not transition.can_transition(self):
                raise LifecycleError(
                    f"Transition '{event}' from {self._state.value} blocked by guard"
                )
            previous, self._state = self._state, transition.to_state
            self.logger.debug(
                self._log_fields(
                    message="State transition",
                    event=event,
                    fromState=previous.value,
                    toState=self._state.value,
                ),
                "lifecycle",
            )
            return self._state
        raise LifecycleError(f"Invalid transition '{event}' from state {self._state.value}")

    def initialize(self, server_info: Implementation | Mapping[str, Any] | None = None) -> bool:
        """Enter INITIALIZING. A second call logs a warning and returns False."""
        if self._state is not LifecycleState.UNINITIALIZED:
            self.logger.warning(
                self._log_fields(
                    message="Lifecycle already initialized",
                    state=self._state.value,
                ),
                "lifecycle",
            )
            return False

        info = _as_implementation(server_info) or self.server_info
        with operation(
            "lifecycle.initialize",
            {
                "lifecycle.state.initial": self._state.value,
                "lifecycle.server.name": info.name if info else None,
                "lifecycle.server.version": info.version if info else None,
            },
            logger=self.logger,
        ) as result:
            self.server_info = info
            self._started_at = self._clock()
            self.touch()
            self._fire("initialize")
            result["lifecycle.state.final"] = self._state.value

        self.logger.info(
            self._log_fields(
                message="Lifecycle manager initialized",
                state=self._state.value,
                serverInfo=info.model_dump(exclude_none=True) if info else None,
            ),
            "lifecycle",
        )
        return True

    def handle_initialize_request(
        self, request: InitializeRequest | Mapping[str, Any]
    ) -> InitializeResult:
        """Negotiate the protocol version and capabilities, then become operational.

        Raises:
            LifecycleError: outside INITIALIZING or for a malformed request.
            ProtocolVersionError: the requested version is not supported;
                the state is left unchanged.
        """
        if self._state is not LifecycleState.INITIALIZING:
            raise LifecycleError(
                f"Cannot handle initialize request in state {self._state.value}"
            )

        if not isinstance(request, InitializeRequest):
            params = request.get("params", request) if isinstance(request, Mapping) else request
            try:
                request = InitializeRequest.model_validate(params)
            except ValidationError as e:
                raise LifecycleError(f"Invalid initialize request: {e}") from e

        self.logger.info(
            self._log_fields(
                message="Initialize request received",
                clientProtocolVersion=request.protocol_version,
                clientCapabilities=request.capabilities,
                clientInfo=request.client_info.model_dump(exclude_none=True)
                if request.client_info
                else None,
            ),
            "lifecycle",
        )

        if request.protocol_version not in self.supported_versions:
            self.logger.warning(
                self._log_fields(
                    message="Protocol version mismatch",
                    requested=request.protocol_version,
                    supported=self.supported_versions,
                ),
                "lifecycle",
            )
            raise ProtocolVersionError(request.protocol_version, self.supported_versions)

        self.protocol_version = request.protocol_version
        self.client_capabilities = dict(request.capabilities)
        self.client_info = request.client_info
        self.negotiated = True
        self.touch()

        self.logger.info(
            self._log_fields(
                message="Initialize request processed successfully",
                negotiatedVersion=self.protocol_version,
                clientCapabilities=self.client_capabilities,
                serverCapabilities=self.server_capabilities,
            ),
            "lifecycle",
        )
        self.mark_initialized()

        return InitializeResult(
            protocol_version=self.protocol_version,
            capabilities=dict(self.server_capabilities),
            server_info=self.server_info,
            instructions=self.instructions,
        )

    def mark_initialized(self) -> bool:
        """Enter OPERATIONAL after a successful handshake.

        Outside INITIALIZING, or before the handshake negotiated a version,
        logs a warning and returns False.
        """
        if self._state is LifecycleState.OPERATIONAL:
            self.logger.warning(
                self._log_fields(message="Lifecycle already operational"), "lifecycle"
            )
            return False
        try:
            self._fire("initialized")
        except LifecycleError as e:
            self.logger.warning(
                self._log_fields(
                    message="Cannot mark lifecycle initialized",
                    state=self._state.value,
                    reason=str(e),
                ),
                "lifecycle",
            )
            return False
        self.logger.info(
            self._log_fields(message="Server marked as initialized", state=self._state.value),
            "lifecycle",
        )
        return True

    def on_shutdown(self, handler: ShutdownHandler) -> None:
        """Register a cleanup hook; hooks run in registration order."""
        self._shutdown_handlers.append(handler)
        self.logger.debug(
            self._log_fields(
                message="Shutdown handler registered",
                handlerCount=len(self._shutdown_handlers),
            ),
            "lifecycle",
        )

    async def shutdown(self, reason: str = "Server shutdown requested") -> bool:
        """Run every shutdown hook once and enter SHUTDOWN.

        A failing hook is logged and the remaining hooks still run. A
        KeyboardInterrupt or SystemExit from a hook is re-raised once the
        machine is SHUTDOWN. A second call logs a warning and returns False.
        """
        if self._state in (LifecycleState.SHUTTING_DOWN, LifecycleState.SHUTDOWN):
            self.logger.warning(
                self._log_fields(
                    message="Lifecycle already shutting down",
                    currentState=self._state.value,
                ),
                "lifecycle",
            )
            return False

        with operation(
            "lifecycle.shutdown",
            {"lifecycle.state.initial": self._state.value, "lifecycle.shutdown.reason": reason},
            logger=self.logger,
        ) as result:
            self.logger.info(
                self._log_fields(
                    message="Starting graceful shutdown",
                    reason=reason,
                    state=self._state.value,
                    uptime=self.uptime_ms(),
                ),
                "lifecycle",
            )
            self._fire("shutdown")

            failures = 0
            deferred: BaseException | None = None
            for index, handler in enumerate(list(self._shutdown_handlers)):
                started = time.perf_counter()
                try:
                    outcome = handler()
                    if inspect.isawaitable(outcome):
                        await outcome
                except BaseException as e:
                    failures += 1
                    if isinstance(e, (KeyboardInterrupt, SystemExit)) and deferred is None:
                        deferred = e
                    self.logger.log_server_error(
                        e,
                        "lifecycle.shutdown",
                        self._log_fields(handlerIndex=index, reason=reason),
                    )
                    continue
                self.logger.debug(
                    self._log_fields(
                        message="Shutdown handler completed",
                        handlerIndex=index,
                        durationMs=round((time.perf_counter() - started) * 1000, 3),
                    ),
                    "lifecycle",
                )

            self._fire("shutdown_complete")
            result["lifecycle.shutdown.failed_handlers"] = failures
            result["lifecycle.state.final"] = self._state.value

        self.logger.info(
            self._log_fields(
                message="Graceful shutdown completed",
                state=self._state.value,
                totalUptime=self.uptime_ms(),
            ),
            "lifecycle",
        )
        self.logger.flush()
        self._closed.set()
        if deferred is not None:
            raise deferred
        return True

    async def wait_closed(self) -> None:
        """Wait until the machine reaches SHUTDOWN."""
        await self._closed.wait()

    def install_signal_handlers(self, loop: asyncio.AbstractEventLoop | None = None) -> bool:
        """Shut down on SIGINT/SIGTERM. Installed at most once per machine."""
        if self._signals_installed:
            self.logger.debug("Signal handlers already registered", "lifecycle")
            return False

        loop = loop or asyncio.get_running_loop()
        try:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(sig, self._on_signal, sig)
        except (NotImplementedError, RuntimeError) as e:
            self.logger.warning(
                {"message": "Signal handlers not supported on this event loop", "error": str(e)},
                "lifecycle",
            )
            return False

        loop.set_exception_handler(self._on_loop_exception)
        self._loop = loop
        self._signals_installed = True
        self.logger.debug("Signal handlers registered", "lifecycle")
        return True

    def _on_signal(self, sig: int) -> None:
        name = signal.Signals(sig).name
        self.logger.info(
            {"message": "Received shutdown signal", "signal": name}, "lifecycle"
        )
        if self._loop is not None and self._signal_task is None:
            self._signal_task = self._loop.create_task(self.shutdown(f"Signal received: {name}"))

    def _on_loop_exception(self, loop: asyncio.AbstractEventLoop, context: dict[str, Any]) -> None:
        error = context.get("exception") or context.get("message", "Unhandled event loop error")
        self.logger.log_server_error(error, "lifecycle.event_loop")

    def get_status(self) -> dict[str, Any]:
        """Snapshot for health and diagnostic tooling."""
        status = {
            "state": self._state.value,
            "uptime": self.uptime_ms(),
            "isOperational": self.is_operational(),
            "protocolVersion": self.protocol_version,
            "clientInfo": self.client_info.model_dump(exclude_none=True) if self.client_info else None,
            "serverInfo": self.server_info.model_dump(exclude_none=True) if self.server_info else None,
            "clientCapabilities": dict(self.client_capabilities),
            "serverCapabilities": dict(self.server_capabilities),
        }
        if self.session_id is not None:
            status["sessionId"] = self.session_id
        if self.session_lifecycles is not None:
            status["sessionStats"] = self.session_lifecycles.statistics()
        return status


class SessionLifecycleRegistry:
    """Per-session lifecycle machines keyed by session id."""

    def __init__(self, logger: StructuredLogger | None = None, **machine_options: Any):
        self.logger = logger or get_structured_logger()
        self._options = machine_options
        self._machines: dict[str, LifecycleStateMachine] = {}

    def get_or_create(self, session_id: str) -> LifecycleStateMachine:
        machine = self._machines.get(session_id)
        if machine is None:
            machine = LifecycleStateMachine(self.logger, session_id=session_id, **self._options)
            self._machines[session_id] = machine
            self.logger.debug(
                {"message": "Session lifecycle manager created", "sessionId": session_id},
                "lifecycle",
            )
        else:
            machine.touch()
        return machine

    def get(self, session_id: str) -> LifecycleStateMachine | None:
        return self._machines.get(session_id)

    def __len__(self) -> int:
        return len(self._machines)

    async def remove(self, session_id: str, reason: str = "Session closed") -> bool:
        """Shut down and forget one session's machine."""
        machine = self._machines.pop(session_id, None)
        if machine is None:
            return False
        if machine.state is not LifecycleState.SHUTDOWN:
            await machine.shutdown(reason)
        return True

    async def shutdown_all(self, reason: str = "Server shutdown requested") -> None:
        for session_id in list(self._machines):
            await self.remove(session_id, reason)

    async def cleanup_inactive(self, max_inactive_seconds: float) -> list[str]:
        """Remove machines idle for longer than ``max_inactive_seconds``."""
        stale = [
            session_id
            for session_id, machine in self._machines.items()
            if machine.inactive_seconds() > max_inactive_seconds
        ]
        for session_id in stale:
            await self.remove(session_id, "Session inactive")
        if stale:
            self.logger.info(
                {"message": "Inactive session lifecycles cleaned up", "count": len(stale)},
                "lifecycle",
            )
        return stale

    def statistics(self) -> dict[str, int]:
        counts = {state: 0 for state in LifecycleState}
        for machine in self._machines.values():
            counts[machine.state] += 1
        return {
            "total": len(self._machines),
            "uninitialized": counts[LifecycleState.UNINITIALIZED],
            "initializing": counts[LifecycleState.INITIALIZING],
            "operational": counts[LifecycleState.OPERATIONAL],
            "shuttingDown": counts[LifecycleState.SHUTTING_DOWN],
            "shutdown": counts[LifecycleState.SHUTDOWN],
        }
