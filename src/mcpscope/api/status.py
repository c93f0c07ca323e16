"""
Read-mostly FastAPI surface for health, status and runtime logging controls.

Endpoints:
- GET /health: 200 when the lifecycle is operational, 503 otherwise
- GET /status: lifecycle status plus logger statistics
- POST /initialize: MCP initialize handshake (protocol negotiation)
- PUT /logging: change level, redaction, rate limiting or session tracking

Usage:
    $ uvicorn mcpscope.api.status:app --host 127.0.0.1 --port 8000
    $ curl http://127.0.0.1:8000/health
    {"status": "ok", "state": "operational"}
"""

import asyncio
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ..config.container import Container, setup_container
from ..core.errors import INVALID_PARAMS, INVALID_REQUEST, InvalidSeverity, LifecycleError, ProtocolVersionError
from ..core.lifecycle import InitializeRequest, LifecycleStateMachine
from ..observability.logging import StructuredLogger, get_logger, set_structured_logger
from ..observability.patterns import operation

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    """Response model for health check."""

    status: str
    state: str


class LoggingUpdate(BaseModel):
    """Runtime logging toggles; omitted fields are left unchanged."""

    model_config = ConfigDict(populate_by_name=True)

    level: str | None = None
    redact_sensitive: bool | None = Field(None, alias="redactSensitive")
    rate_limiting: bool | None = Field(None, alias="rateLimiting")
    session_tracking: bool | None = Field(None, alias="sessionTracking")


def _container(request: Request) -> Container:
    return request.app.state.container


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    container: Container = app.state.container
    structured: StructuredLogger = container.logger
    set_structured_logger(structured)

    lifecycle: LifecycleStateMachine = container.lifecycle
    lifecycle.initialize()
    logger.info("Status API started", state=lifecycle.state.value)
    sweeper = asyncio.create_task(container.run_session_sweeper())

    try:
        yield
    finally:
        sweeper.cancel()
        with suppress(asyncio.CancelledError):
            await sweeper
        await container.cleanup()
        logger.info("Status API stopped", state=lifecycle.state.value)


def create_app(container: Container | None = None) -> FastAPI:
    """Create the FastAPI application around a container."""
    container = container or setup_container()
    settings = container.settings

    app = FastAPI(
        title=f"{settings.server.name} status",
        version=settings.server.version,
        docs_url="/docs" if settings.api.enable_docs else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.api.enable_docs else None,
        lifespan=lifespan,
    )
    app.state.container = container

    @app.middleware("http")
    async def trace_requests(request: Request, call_next):
        with operation(
            f"http.{request.method.lower()}",
            {"http.method": request.method, "http.path": request.url.path},
            logger=container.logger,
        ) as result:
            response = await call_next(request)
            result["http.status_code"] = response.status_code
            return response

    @app.get("/health", response_model=HealthResponse)
    async def health(request: Request):
        """Health check endpoint."""
        lifecycle = _container(request).lifecycle
        body = HealthResponse(
            status="ok" if lifecycle.is_operational() else "unavailable",
            state=lifecycle.state.value,
        )
        status_code = 200 if lifecycle.is_operational() else 503
        return JSONResponse(body.model_dump(), status_code=status_code)

    @app.get("/status")
    async def status(request: Request) -> dict[str, Any]:
        """Lifecycle status and logger statistics."""
        c = _container(request)
        return {
            "lifecycle": c.lifecycle.get_status(),
            "logging": {
                "level": c.logger.level.label,
                "redactSensitive": c.logger.redactor.enabled,
                "rateLimit": c.logger.limiter.state(),
                **c.logger.get_statistics(),
            },
            "metrics": c.logger.metrics.snapshot(),
        }

    @app.post("/initialize")
    async def initialize(request: Request, body: InitializeRequest) -> dict[str, Any]:
        """MCP initialize handshake."""
        lifecycle = _container(request).lifecycle
        try:
            result = lifecycle.handle_initialize_request(body)
        except ProtocolVersionError as e:
            raise HTTPException(
                status_code=400,
                detail={
                    "code": INVALID_PARAMS,
                    "message": str(e),
                    "data": {"supported": e.supported, "requested": e.requested},
                },
            ) from e
        except LifecycleError as e:
            raise HTTPException(
                status_code=409, detail={"code": INVALID_REQUEST, "message": str(e)}
            ) from e
        return result.to_wire()

    @app.put("/logging")
    async def update_logging(request: Request, body: LoggingUpdate) -> dict[str, Any]:
        """Change logging toggles at runtime."""
        structured = _container(request).logger
        if body.level is not None:
            try:
                structured.set_level(body.level)
            except InvalidSeverity as e:
                raise HTTPException(
                    status_code=400, detail={"code": INVALID_PARAMS, "message": str(e)}
                ) from e
        if body.redact_sensitive is not None:
            structured.set_sensitive_data_filter(body.redact_sensitive)
        if body.rate_limiting is not None:
            structured.set_rate_limiting(body.rate_limiting)
        if body.session_tracking is not None:
            structured.set_session_tracking(body.session_tracking)
        return {
            "level": structured.level.label,
            "redactSensitive": structured.redactor.enabled,
            "rateLimiting": structured.limiter.enabled,
            "sessionTracking": structured.session_tracking,
        }

    return app


def __getattr__(name: str):
    # ``uvicorn mcpscope.api.status:app`` builds the app on first access
    if name == "app":
        return create_app()
    raise AttributeError(name)
