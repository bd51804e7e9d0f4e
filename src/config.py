"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (metrics cache, alert cooldowns, worker heartbeat)
    redis_url: str = "redis://localhost:6379/0"

    # Sentry
    sentry_dsn: str = ""

    # Push delivery gateway
    push_gateway_url: str = ""  # Empty = gateway not configured, sends abort
    push_gateway_token: str = ""
    push_gateway_timeout_seconds: float = 10.0
    push_send_concurrency: int = 10  # Max in-flight gateway calls per run

    # Scheduler
    cron_secret: str = ""  # Bearer secret presented by the external cron
    cron_scheduler_enabled: bool = False  # In-process loop for deployments without external cron
    cron_interval_seconds: int = 300
    cron_health_history_size: int = 20
    cron_failure_streak_threshold: int = 3

    # Alerting
    alert_webhook_url: str = ""  # Discord/Slack webhook URL for critical alerts

    # Metrics
    metrics_cache_ttl_seconds: int = 60
    metrics_trend_max_rows: int = 50000

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
