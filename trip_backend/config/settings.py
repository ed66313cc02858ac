"""Application configuration and environment management."""

from functools import lru_cache
from typing import Annotated, Literal, Optional

from pydantic import AliasChoices, Field, PositiveFloat, ValidationError, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

from trip_backend.exceptions import MissingConfiguration

DEFAULT_DURATION_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


class Settings(BaseSettings):
    """Centralised application settings.

    Only ``PORT`` is mandatory; every observability knob has a default that
    matches a local Prometheus/Jaeger/Loki setup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Core service metadata
    api_title: str = Field(default="Trip Backend", description="Human readable API title")
    api_version: str = Field(default="1.0.0", description="Semantic version exposed by FastAPI")
    port: int = Field(
        alias="PORT",
        gt=0,
        lt=65536,
        description="TCP port the HTTP server listens on.",
    )
    host: str = Field(
        default="0.0.0.0",
        alias="HOST",
        description="Interface the HTTP server binds to.",
    )
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("environment", "APP_ENV", "NODE_ENV"),
        description="Deployment environment name; any value other than \"production\" keeps console logging.",
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level used for application loggers.",
    )
    log_format: Literal["json", "text"] = Field(
        default="json",
        alias="LOG_FORMAT",
        description="Record format written to the log sinks.",
    )
    log_file: Optional[str] = Field(
        default=None,
        alias="LOG_FILE",
        description="Optional file receiving every log record.",
    )
    error_log_file: Optional[str] = Field(
        default=None,
        alias="ERROR_LOG_FILE",
        description="Optional file receiving error level records only.",
    )
    request_id_header: str = Field(
        default="X-Request-ID",
        alias="REQUEST_ID_HEADER",
        description="HTTP header used to propagate the correlation identifier.",
    )

    # Tracing
    service_name: str = Field(
        default="mern-backend",
        alias="SERVICE_NAME",
        description="Service name attached to every exported span.",
    )
    otlp_endpoint: Optional[str] = Field(
        default=None,
        alias="OTEL_EXPORTER_OTLP_TRACES_ENDPOINT",
        description="OTLP/HTTP traces endpoint, e.g. http://localhost:4318/v1/traces.",
    )
    otlp_timeout_seconds: PositiveFloat = Field(
        default=5.0,
        alias="OTLP_TIMEOUT_SECONDS",
        description="Network timeout applied to each span export batch.",
    )
    trace_console_export: bool = Field(
        default=False,
        alias="TRACE_CONSOLE_EXPORT",
        description="Also print finished spans to stdout.",
    )
    span_timeout_seconds: PositiveFloat = Field(
        default=30.0,
        alias="SPAN_TIMEOUT_SECONDS",
        description="Delay after which a span with no completion event is force-closed.",
    )

    # Metrics
    collect_default_metrics: bool = Field(
        default=True,
        alias="COLLECT_DEFAULT_METRICS",
        description="Expose process, platform and GC metrics alongside HTTP metrics.",
    )
    http_duration_buckets: Annotated[list[float], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_DURATION_BUCKETS),
        alias="HTTP_DURATION_BUCKETS",
        description="Comma separated histogram bucket upper bounds, in seconds.",
    )

    # HTTP surface
    cors_allow_origins: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["*"],
        alias="CORS_ALLOW_ORIGINS",
        description="Comma separated list of origins allowed by CORS.",
    )
    trip_route_prefix: str = Field(
        default="/trip",
        alias="TRIP_ROUTE_PREFIX",
        description="Path prefix under which the trip routes are mounted.",
    )

    @field_validator("http_duration_buckets", mode="before")
    @classmethod
    def _split_buckets(cls, value: Optional[str | list[float]]) -> list[float]:
        if value in (None, ""):
            return list(DEFAULT_DURATION_BUCKETS)
        if isinstance(value, str):
            value = [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple)):
            bounds = sorted(float(item) for item in value)
            if len(set(bounds)) != len(bounds):
                raise ValueError("Histogram bucket bounds must be unique")
            return bounds
        raise TypeError("Invalid value for HTTP_DURATION_BUCKETS")

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: Optional[str | list[str]]) -> list[str]:
        if value in (None, ""):
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, list):
            return [item for item in value if item]
        raise TypeError("Invalid value for CORS_ALLOW_ORIGINS")


@lru_cache()
def get_settings() -> Settings:
    """Return a cached settings instance.

    Raises ``MissingConfiguration`` when the listen port is absent or invalid.
    """

    try:
        return Settings()
    except ValidationError as exc:
        fields = sorted({str(error["loc"][0]) for error in exc.errors() if error.get("loc")})
        raise MissingConfiguration(
            f"Invalid or missing configuration: {', '.join(fields) or 'unknown'}"
        ) from exc
