from functools import lru_cache
from secrets import token_urlsafe
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..domain.rate_limits import RateLimitConfig


class Settings(BaseSettings):
    """Service configuration loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    api_v1_prefix: str = "/v1"
    project_name: str = "Impersonation Guard API"
    secret_key: str = Field(default_factory=lambda: token_urlsafe(32))
    access_token_expire_minutes: int = 60

    database_url: str | None = Field(
        default=None,
        description="SQLAlchemy async connection string; the in-memory store is used when unset",
    )

    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Render structlog events as JSON lines")

    max_impersonations_per_hour: int = Field(default=10, ge=1)
    max_concurrent_sessions: int = Field(default=5, ge=1)
    max_session_duration_minutes: int = Field(default=30, ge=1)
    rate_limit_window_minutes: int = Field(
        default=60,
        ge=1,
        description="Length of the rolling window used for the hourly impersonation quota",
    )
    rate_limit_enabled: bool = Field(
        default=True,
        description="When false every impersonation check is allowed but usage is still tracked",
    )
    usage_warning_threshold_percent: float = Field(
        default=80.0,
        gt=0,
        le=100,
        description="Usage percentage above which stats flag an admin as near a limit",
    )

    violation_retention_days: int = Field(
        default=90,
        ge=1,
        description="Violations and start events older than this are pruned by cleanup",
    )
    cleanup_interval_minutes: int = Field(
        default=5,
        ge=1,
        description="Interval of the Celery beat schedule that expires overdue sessions",
    )
    cleanup_tenant_ids: List[str] = Field(
        default_factory=list,
        description="Tenants swept by the periodic cleanup task",
    )

    celery_broker_url: str | None = Field(
        default=None,
        description="Broker URL for Celery workers",
    )
    celery_result_backend: str | None = Field(
        default=None,
        description="Result backend for Celery; defaults to the broker when omitted",
    )

    enable_prometheus_metrics: bool = Field(
        default=True, description="Expose Prometheus metrics endpoint when true"
    )
    prometheus_metrics_path: str = Field(
        default="/metrics/prometheus",
        description="Path where scraped Prometheus metrics are served",
    )
    otel_exporter_otlp_endpoint: str | None = Field(
        default=None,
        description="OTLP HTTP endpoint for exporting traces",
    )
    otel_exporter_otlp_headers: str | None = Field(
        default=None,
        description="Comma separated key=value pairs added to OTLP requests",
    )
    otel_service_name: str | None = Field(
        default=None, description="Optional override for OpenTelemetry service.name"
    )

    worker_prometheus_port: int | None = Field(
        default=None,
        description="Optional port that exposes worker Prometheus metrics",
    )
    worker_prometheus_host: str = Field(
        default="0.0.0.0",
        description="Host interface used for worker Prometheus exporter",
    )

    def rate_limit_config(self) -> RateLimitConfig:
        """Build the immutable limits handed to the rate limiter."""

        return RateLimitConfig(
            max_impersonations_per_hour=self.max_impersonations_per_hour,
            max_concurrent_sessions=self.max_concurrent_sessions,
            max_session_duration_minutes=self.max_session_duration_minutes,
            window_minutes=self.rate_limit_window_minutes,
            enabled=self.rate_limit_enabled,
            warning_threshold_percent=self.usage_warning_threshold_percent,
        )


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()
