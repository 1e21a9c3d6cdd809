"""
Application configuration using Pydantic Settings.
Loads configuration from environment variables with sensible defaults.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Job servers ("host" or "host:port"), JSON list when set from the environment
    gearman_servers: list[str] = ["127.0.0.1:4730"]

    # Client Configuration
    client_connect_timeout_ms: int = 1000
    client_dispatch_timeout_seconds: int = 10

    # Worker Configuration
    worker_id: str | None = None
    worker_socket_timeout_ms: int = 250
    worker_retry_seconds: int = 3
    worker_max_retry_seconds: int = 60
    worker_sleep_seconds: int = 30

    # Administrative channel
    admin_timeout_seconds: float = 5.0

    # Observability
    otel_enabled: bool = False
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "gearqueue"
    prometheus_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
