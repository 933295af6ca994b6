"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Store operation budgets (seconds)
    point_read_timeout_seconds: float = 5.0
    list_read_timeout_seconds: float = 10.0
    write_timeout_seconds: float = 10.0
    transaction_timeout_seconds: float = 30.0

    # Sessions
    session_token_grace_seconds: int = 30  # Old token stays valid this long after rotation
    session_rotation_interval_seconds: int = 900  # Idle tokens are rotated on next use after this

    # CSRF
    csrf_token_expiry_seconds: int = 86400

    # Idempotency
    idempotency_ttl_seconds: int = 86400  # Default lifetime of saved responses and claims

    # Per-user rate limits (fixed windows)
    rate_limit_per_minute: int = 60
    rate_limit_per_hour: int = 300
    rate_limit_per_day: int = 1000
    rate_limit_fail_open: bool = True  # Admit requests when the store is unavailable

    # Quote job queue
    quote_job_max_attempts: int = 3
    quote_job_batch_size: int = 10
    quote_job_stuck_after_seconds: int = 300  # Must exceed the longest legitimate processing time

    # Maintenance
    maintenance_interval_seconds: int = 300
    run_migrations_on_startup: bool = True

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True
    metrics_port: int = 9090

    # Observability - Tracing
    tracing_enabled: bool = False
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "quickquote-core"
    service_version: str = "0.1.0"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The process MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        # DATABASE_URL is absolutely required
        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        for name in (
            "point_read_timeout_seconds",
            "list_read_timeout_seconds",
            "write_timeout_seconds",
            "transaction_timeout_seconds",
        ):
            if getattr(self, name) <= 0:
                errors.append(f"{name.upper()} must be positive")

        if self.session_token_grace_seconds < 0:
            errors.append("SESSION_TOKEN_GRACE_SECONDS must not be negative")

        if self.session_rotation_interval_seconds <= 0:
            errors.append("SESSION_ROTATION_INTERVAL_SECONDS must be positive")

        if self.idempotency_ttl_seconds <= 0:
            errors.append("IDEMPOTENCY_TTL_SECONDS must be positive")

        if self.quote_job_max_attempts < 1:
            errors.append("QUOTE_JOB_MAX_ATTEMPTS must be at least 1")

        # If we have errors, fail immediately with clear messaging
        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - PROCESS CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
