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

    # Broker connection
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str | None = None
    redis_db: int = 0
    redis_connect_timeout_ms: int = 10_000
    redis_command_timeout_ms: int | None = None
    # None means a command is never given up on; the reconnect loop retries it
    redis_max_retries_per_request: int | None = None
    redis_enable_ready_check: bool = False
    redis_enable_offline_queue: bool = True
    redis_offline_queue_limit: int = 1000
    redis_retry_delay_ms: int = 50
    redis_retry_max_delay_ms: int = 2000
    redis_connect_max_attempts: int = 10
    redis_reconnect_on_readonly: bool = True
    redis_key_prefix: str = "pdfq"

    # Queue defaults, applied to jobs that do not override them
    queue_name: str = "document-generation"
    job_attempts: int = 3
    job_backoff_type: str = "exponential"
    job_backoff_delay_ms: int = 2000
    job_backoff_max_delay_ms: int = 300_000
    job_remove_on_complete: int = 50
    job_remove_on_fail: int = 100
    queue_wait_poll_interval_ms: int = 100

    # Worker Configuration
    worker_id: str | None = None
    worker_lock_duration_ms: int = 30_000
    worker_lock_renew_ms: int | None = None
    worker_poll_interval_seconds: float = 1.0
    worker_stalled_interval_ms: int = 30_000
    worker_max_stalled_count: int = 1
    worker_run_watchdog: bool = True
    document_concurrency: int = 2
    cleanup_concurrency: int = 1

    # Cleanup retention windows
    cleanup_completed_grace_ms: int = 24 * 60 * 60 * 1000
    cleanup_failed_grace_ms: int = 7 * 24 * 60 * 60 * 1000

    # Collaborators
    gotenberg_url: str = "http://localhost:3001"
    gotenberg_timeout_seconds: float = 60.0
    hubspot_api_url: str = "https://api.hubapi.com"
    hubspot_access_token: str | None = None
    template_directory: str = "templates"

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_enqueue_ready_timeout_seconds: float = 2.0

    # Observability
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_service_name: str = "pdfqueue"
    prometheus_port: int = 9090
    log_level: str = "INFO"
    log_format: str = "json"  # json or console


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
