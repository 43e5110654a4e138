from functools import lru_cache
from typing import ClassVar

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # Storage (":memory:" is accepted for tests)
    db_path: str = "linkwatch.db"
    sessions_dir: str = "sessions"

    # External recorder argv prefixes; the URL and output flags are appended
    codegen_command: str = "npx playwright codegen"
    replay_command: str = "npx playwright test"

    # Base URL the reconnection monitor talks to (the API served by this package)
    backend_url: str = "http://127.0.0.1:4000"

    # Reconnection monitor timing
    poll_interval_seconds: float = 2.0
    status_timeout_seconds: float = 5.0
    reconnect_timeout_seconds: float = 10.0
    event_timeout_seconds: float = 5.0
    warning_after_failures: int = 3
    max_poll_failures: int = 5
    max_reconnect_attempts: int = 3

    # Default alert thresholds (user overrides are persisted in the db)
    alert_quality_score: int = 60
    alert_disconnection_count: int = 3
    alert_reconnection_fail_rate: float = 25.0
    alert_downtime_threshold: int = 30000

    # Periodic jobs (0 disables a job)
    evaluation_interval_seconds: int = 30
    history_refresh_minutes: int = 15
    process_retention_minutes: int = 60

    log_level: str = "INFO"

    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", env_prefix="LINKWATCH_", extra="ignore"
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Lazily load and cache settings. Fails at first call, not at import time."""
    return Settings()
