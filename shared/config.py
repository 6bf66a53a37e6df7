"""
Shared configuration management for the market data access layer.
"""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings.

    Every field can be overridden with an ``ACCESS_``-prefixed environment
    variable or from a ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/access")

    # Observability
    enable_metrics: bool = Field(default=True)
    metrics_port: int = Field(default=9090)
