"""
Configuration with Pydantic Settings.

Every value can be overridden from the environment with the ``MCPSCOPE_``
prefix and ``__`` between nested sections, e.g.
``MCPSCOPE_LOGGING__LEVEL=debug`` or ``MCPSCOPE_RATE_LIMIT__MAX_PER_WINDOW=500``.
"""

from functools import lru_cache

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..observability.redaction import (
    CIRCULAR_MARKER,
    DEFAULT_SENSITIVE_KEYS,
    REDACTION_MARKER,
)
from ..observability.severity import Severity

SUPPORTED_PROTOCOL_VERSIONS = ["2025-06-18", "2025-03-26", "2024-11-05"]


def _severity_label(value: object) -> str:
    return Severity.parse(value).label


class LoggingConfig(BaseModel):
    """Configuration for the structured logger."""

    level: str = Field("info", description="Minimum emitted severity")
    format: str = Field("json")  # json or console
    logger_name: str = Field("mcp-server")
    default_category: str = Field("general")
    redact_sensitive: bool = Field(True)
    sensitive_keys: list[str] = Field(default_factory=lambda: list(DEFAULT_SENSITIVE_KEYS))
    redaction_marker: str = Field(REDACTION_MARKER)
    circular_marker: str = Field(CIRCULAR_MARKER)
    notification_level: str = Field("info", description="Floor for forwarding to the client")
    session_tracking: bool = Field(True)
    max_param_chars: int = Field(200, gt=0)

    @field_validator("level", "notification_level", mode="before")
    @classmethod
    def validate_severity(cls, v):
        return _severity_label(v)

    @field_validator("format")
    @classmethod
    def validate_format(cls, v):
        if v not in ("json", "console"):
            raise ValueError("format must be 'json' or 'console'")
        return v


class RateLimitConfig(BaseModel):
    """Configuration for log rate limiting."""

    enabled: bool = Field(True)
    window_seconds: float = Field(1.0, gt=0)
    max_per_window: int = Field(100, gt=0)
    bypass_level: str = Field("critical")

    @field_validator("bypass_level", mode="before")
    @classmethod
    def validate_bypass_level(cls, v):
        return _severity_label(v)


class LifecycleConfig(BaseModel):
    """Configuration for the server lifecycle and protocol negotiation."""

    protocol_version: str = Field(SUPPORTED_PROTOCOL_VERSIONS[0])
    supported_versions: list[str] = Field(default_factory=lambda: list(SUPPORTED_PROTOCOL_VERSIONS))
    install_signal_handlers: bool = Field(True)
    session_max_inactive_seconds: float = Field(1800.0, gt=0)
    instructions: str | None = Field("MCP server ready for operation")

    @model_validator(mode="after")
    def validate_protocol_version(self):
        if self.protocol_version not in self.supported_versions:
            raise ValueError(
                f"protocol_version {self.protocol_version!r} is not in supported_versions"
            )
        return self


class ServerConfig(BaseModel):
    """Server identity reported during initialization."""

    name: str = Field("mcpscope")
    title: str | None = Field("MCP Scope")
    version: str = Field("0.1.0")


class APIConfig(BaseModel):
    """Configuration for the status API server."""

    host: str = Field("127.0.0.1")
    port: int = Field(8000, gt=0, le=65535)
    enable_docs: bool = Field(False)


class Settings(BaseSettings):
    """Main application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_prefix="MCPSCOPE_", env_nested_delimiter="__", case_sensitive=False, extra="ignore"
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    api: APIConfig = Field(default_factory=APIConfig)

    environment: str = Field(
        "development", description="Environment: development, staging, production"
    )
    debug: bool = Field(False)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v):
        allowed = {"development", "staging", "production"}
        if v not in allowed:
            raise ValueError(f"environment must be one of {allowed}")
        return v

    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment == "production"

    def is_development(self) -> bool:
        """Check if running in development environment."""
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
