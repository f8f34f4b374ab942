"""Transport configuration.

All settings can be configured via environment variables with the prefix
``MCP_HTTP_``; nested fields use ``__``. For example ``MCP_HTTP_PING__FREQUENCY=0``
disables pings. Durations are given in milliseconds.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from mcp_httpstream.codec import DEFAULT_MAX_MESSAGE_SIZE
from mcp_httpstream.types import ResponseMode


class CORSSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    allow_origin: str = "*"
    allow_methods: str = "GET, POST, DELETE, OPTIONS"
    allow_headers: str = "Content-Type, Accept, Authorization, x-api-key, Mcp-Session-Id"
    expose_headers: str = "Content-Type, Authorization, x-api-key, Mcp-Session-Id"
    max_age: int = Field(default=86400, ge=0)
    """Seconds a browser may cache a preflight response."""


class PingSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    frequency: int = Field(default=30000, ge=0)
    """Milliseconds between liveness probes of a session. 0 disables pings."""

    timeout: int = Field(default=10000, gt=0)
    """Milliseconds to wait for a probe to be answered."""

    @property
    def frequency_seconds(self) -> float:
        return self.frequency / 1000

    @property
    def timeout_seconds(self) -> float:
        return self.timeout / 1000


class AuthSettings(BaseModel):
    model_config = ConfigDict(frozen=True)

    header_name: str = "x-api-key"
    api_keys: list[str] = Field(default_factory=list)
    """When non-empty, requests must present one of these keys."""


class HttpStreamSettings(BaseSettings):
    """HTTP stream transport settings, validated once at startup."""

    model_config = SettingsConfigDict(
        env_prefix="MCP_HTTP_",
        env_file=".env",
        env_nested_delimiter="__",
        nested_model_default_partial_update=True,
        extra="ignore",
        frozen=True,
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # HTTP settings
    host: str = "127.0.0.1"
    port: int = Field(default=8080, ge=1, le=65535)
    endpoint: str = "/mcp"

    # Delivery settings
    response_mode: ResponseMode = "stream"
    batch_timeout: int = Field(default=30000, ge=0)
    """Milliseconds a batch window stays open after its first message. 0 flushes on the first message."""

    max_message_size: int = Field(default=DEFAULT_MAX_MESSAGE_SIZE, gt=0)
    max_queue_size: int = Field(default=1000, gt=0)
    """Messages held per session while no stream is attached."""

    ping: PingSettings = PingSettings()
    cors: CORSSettings = CORSSettings()
    auth: AuthSettings = AuthSettings()

    @field_validator("endpoint")
    @classmethod
    def _endpoint_is_absolute(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError("endpoint must start with '/'")
        return value

    @property
    def batch_timeout_seconds(self) -> float:
        return self.batch_timeout / 1000
