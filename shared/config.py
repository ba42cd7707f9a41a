"""
Shared configuration management for the tour booking state layer.
"""

from typing import Dict, List, Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="BOOKING_",
        env_file=".env",
        case_sensitive=False,
        extra="allow",
        populate_by_name=True,
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Backing stores
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        validation_alias=AliasChoices("BOOKING_REDIS_URL", "REDIS_URL"),
    )

    # Upstream booking platform
    rezdy_base_url: str = Field(default="https://api.rezdy.com/v1")
    rezdy_api_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("BOOKING_REZDY_API_KEY", "REZDY_API_KEY"),
    )
    rezdy_timeout_seconds: float = Field(default=15.0)

    # Sessions
    session_ttl_seconds: int = Field(
        default=3600,
        validation_alias=AliasChoices("BOOKING_SESSION_TTL_SECONDS", "SESSION_TTL"),
    )
    session_cookie_name: str = Field(default="sessionId")
    demo_user_email: str = Field(default="demo@example.com")
    demo_user_password: str = Field(default="password123")

    # Booking correlation
    correlation_backend: str = Field(default="memory")
    correlation_ttl_seconds: int = Field(default=3600)
    correlation_sweep_interval_seconds: float = Field(default=600.0)

    # Read-through cache
    cache_max_entries: int = Field(default=1000)
    cache_cleanup_interval_seconds: float = Field(default=60.0)
    cache_ttl_overrides: Dict[str, int] = Field(default_factory=dict)
    cache_warm_concurrency: int = Field(default=5)
    warm_plan_file: Optional[str] = Field(default=None)
    popular_categories: List[int] = Field(default_factory=lambda: [1, 2, 3, 4, 5])

    # Pickup index
    pickup_data_dir: str = Field(default="data/pickups")

    # Observability
    enable_tracing: bool = Field(default=False)
    otel_exporter: Optional[str] = Field(default=None)


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
