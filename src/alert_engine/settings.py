"""Environment-driven settings for the alert engine.

Uses pydantic-settings to load from environment variables (prefixed
ALERT_ENGINE_) with defaults matching DEFAULT_ENGINE_CONFIG.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from src.alert_engine.config import (
    AnalyticsConfig,
    DeliveryConfig,
    EngineConfig,
    EscalationConfig,
)


class EngineSettings(BaseSettings):
    """Alert engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_prefix="ALERT_ENGINE_", env_file=".env", extra="ignore")

    # --- Delivery ---
    max_retries: int = 3
    retry_delay_seconds: float = 30.0
    delivery_batch_size: int = 50
    queue_tick_seconds: float = 5.0

    # --- Analytics ---
    analytics_batch_size: int = 50
    analytics_flush_seconds: float = 30.0
    learning_rate: float = 0.1

    # --- Escalation ---
    fatigue_window_minutes: int = 60
    fatigue_max_escalations: int = 2

    # --- Retention ---
    retention_days: int = 7
    cleanup_interval_hours: int = 24

    # --- Storage ---
    database_url: str = "sqlite:///alert_engine.db"
    use_database: bool = False

    # --- Logging ---
    log_level: str = "INFO"
    log_format: str = "json"

    def to_engine_config(self) -> EngineConfig:
        """Build an EngineConfig from these settings."""
        return EngineConfig(
            delivery=DeliveryConfig(
                max_retries=self.max_retries,
                retry_delay_seconds=self.retry_delay_seconds,
                batch_size=self.delivery_batch_size,
                queue_tick_seconds=self.queue_tick_seconds,
            ),
            escalation=EscalationConfig(
                fatigue_window_minutes=self.fatigue_window_minutes,
                fatigue_max_escalations=self.fatigue_max_escalations,
            ),
            analytics=AnalyticsConfig(
                batch_size=self.analytics_batch_size,
                flush_interval_seconds=self.analytics_flush_seconds,
                learning_rate=self.learning_rate,
            ),
            retention_days=self.retention_days,
            cleanup_interval_hours=self.cleanup_interval_hours,
        )


@lru_cache
def get_settings() -> EngineSettings:
    """Cached settings singleton."""
    return EngineSettings()
