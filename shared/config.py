"""
Shared configuration management for the risk index access layer.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="RISK_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")


class IndexGatewayConfig(BaseConfig):
    """Settings for the index gateway and its collaborators."""

    service_name: str = Field(default="risk")

    # Upstream index
    index_url: str = Field(default="http://localhost:8000/subgraphs/name/eigenlayer")
    index_timeout_seconds: float = Field(default=30.0, gt=0)

    # Cache store
    redis_url: str = Field(default="redis://localhost:6379/0")
    cache_namespace: str = Field(default="risk")
    default_cache_ttl_seconds: int = Field(default=300, gt=0)
    stale_ttl_seconds: int = Field(default=86400, gt=0)

    # Scheduling. The local request timeout sits below the transport timeout
    # so local timeouts fire first.
    max_concurrent_requests: int = Field(default=10, ge=1)
    tick_interval_seconds: float = Field(default=0.1, gt=0)
    request_timeout_seconds: float = Field(default=25.0, gt=0)
    processed_ttl_seconds: float = Field(default=3600.0, gt=0)
    memo_sweep_interval_seconds: float = Field(default=300.0, gt=0)

    # Circuit breaker
    failure_threshold: int = Field(default=5, ge=1)
    recovery_timeout_seconds: float = Field(default=60.0, gt=0)

    # Historical window
    history_years_back: int = Field(default=1, ge=0)
    history_months_back: int = Field(default=0, ge=0)
    history_days_back: int = Field(default=0, ge=0)


def get_config(**overrides) -> IndexGatewayConfig:
    """Get gateway configuration, environment first, then explicit overrides."""
    return IndexGatewayConfig(**overrides)
