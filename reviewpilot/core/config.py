"""
Application configuration

All runtime settings are read from the environment (or a local .env file)
through pydantic-settings and cached for the lifetime of the process.
"""
from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings for the API, workers and beat scheduler"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    app_name: str = "ReviewPilot"
    api_version: str = "1.0.0"
    environment: str = "development"
    log_level: str = "INFO"
    use_json_logging: bool = False

    # Persistence
    database_url: str = "sqlite:///./reviewpilot.db"
    auto_create_tables: bool = False  # create missing tables at startup (dev and SQLite only)
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None
    celery_result_backend: Optional[str] = None

    # Twilio
    twilio_account_sid: Optional[str] = None
    twilio_auth_token: Optional[str] = None
    twilio_phone_number: Optional[str] = None
    twilio_validate_signature: bool = False
    public_base_url: Optional[str] = None

    # Stripe
    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    app_base_url: str = "http://localhost:8000"

    # Review sources and reply generation
    google_places_api_key: Optional[str] = None
    yelp_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # Scheduling
    poll_interval_seconds: int = Field(default=300, ge=30)
    sms_retry_base_seconds: int = Field(default=60, ge=1)
    sms_retry_max_attempts: int = Field(default=3, ge=1)
    sms_retry_batch_size: int = 50
    digest_weekday: int = Field(default=6, ge=0, le=6)  # Monday=0 ... Sunday=6
    digest_hour: int = Field(default=9, ge=0, le=23)
    reply_post_max_attempts: int = Field(default=5, ge=1)
    crisis_alert_cooldown_hours: int = Field(default=6, ge=1)

    # Timeouts
    http_timeout_seconds: float = 10.0
    lock_timeout_seconds: int = 120
    notification_retry_lock_seconds: int = 900

    # Observability
    sentry_dsn: Optional[str] = None

    def get_celery_broker_url(self) -> str:
        """Broker URL, falling back to the shared Redis instance"""
        return self.celery_broker_url or self.redis_url

    def get_celery_result_backend(self) -> str:
        """Result backend URL, falling back to the shared Redis instance"""
        return self.celery_result_backend or self.redis_url

    def is_production(self) -> bool:
        return self.environment.lower() == "production"


@lru_cache()
def get_settings() -> Settings:
    """Get cached application settings"""
    return Settings()
