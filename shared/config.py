"""
Shared configuration management for the Business Rules services.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RULES_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Persistence
    postgres_dsn: str = Field(default="postgres://localhost:5432/business_rules")
    persistence_enabled: bool = Field(default=False)

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: Optional[str] = Field(default=None)
    enable_console_tracing: bool = Field(default=False)

    # Condition expression limits
    max_condition_depth: int = Field(default=10, ge=1)
    max_rules_per_group: int = Field(default=50, ge=1)
    max_field_path_length: int = Field(default=200, ge=1)
    max_structural_depth: int = Field(default=5, ge=1)
    max_regex_length: int = Field(default=500, ge=1)

    # Discovery cache
    rule_cache_max_entries: int = Field(default=1024, ge=1)

    # Execution history
    execution_log_capacity: int = Field(default=10000, ge=1)

    # Outbound webhooks
    webhook_timeout_seconds: float = Field(default=10.0, gt=0)
    webhook_max_attempts: int = Field(default=3, ge=1)
    webhook_failure_threshold: int = Field(default=5, ge=1)
    webhook_recovery_timeout: float = Field(default=60.0, gt=0)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
