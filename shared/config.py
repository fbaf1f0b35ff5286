"""
Shared configuration management for the role correlation engine.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="CORRELATION_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Evaluation behaviour
    do_role_assignment: bool = Field(default=True)
    promote_soft_permits: bool = Field(default=False)
    demote_soft_permits: bool = Field(default=False)
    account_load_strategy: str = Field(default="iterate")
    max_roles_considered: Optional[int] = Field(default=None)

    # Batch processing
    max_workers: int = Field(default=4)

    # Role graph source
    role_graph_file: Optional[str] = Field(default=None)

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: str = Field(default="http://localhost:4317")
    enable_console_tracing: bool = Field(default=False)
    metrics_port: Optional[int] = Field(default=None)


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str = "correlation"

    def __init__(self, service_name: str = "correlation", **kwargs):
        super().__init__(service_name=service_name, **kwargs)


def get_config(service_name: str = "correlation", **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, **overrides)
