"""
Application configuration using pydantic-settings.
Values come from the environment or .env and are validated once, at startup.
"""
from functools import lru_cache
from typing import Optional
from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_env: str = "development"
    app_base_url: str = "http://localhost:8000"
    app_secret_key: str
    log_level: str = "INFO"
    allowed_origins: str = ""  # comma-separated, on top of app_base_url

    # Booking store (Postgres)
    database_url: str
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis: webhook redelivery marks, task wake-ups, worker heartbeat
    redis_url: str = "redis://localhost:6379/0"

    # Tokens are minted by the identity service; APP_SECRET_KEY is the fallback
    jwt_secret: str = ""
    jwt_algorithm: str = "HS256"
    jwt_expiry_hours: int = 24

    # Stripe
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_currency: str = "usd"
    webhook_path: str = "/api/PaymentReceive/WebhookEvent"
    reconcile_max_attempts: int = 3

    # SendGrid
    sendgrid_api_key: str = ""
    from_email_transactional: str = "noreply@cleanbook.app"
    from_name_transactional: str = "CleanBook"

    sentry_dsn: str = ""
    task_worker_enabled: bool = True

    # Listing endpoints
    default_page_size: int = 10
    max_page_size: int = 100

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("stripe_currency")
    @classmethod
    def _lower_currency(cls, v: str) -> str:
        return v.lower()

    @model_validator(mode="after")
    def _check_paging(self) -> "Settings":
        if not 0 < self.default_page_size <= self.max_page_size:
            raise ValueError("DEFAULT_PAGE_SIZE must be between 1 and MAX_PAGE_SIZE")
        return self

    @property
    def jwt_signing_secret(self) -> str:
        return self.jwt_secret or self.app_secret_key

    @property
    def webhook_url(self) -> str:
        """Public URL of the payment webhook, told to Stripe in intent metadata."""
        return f"{self.app_base_url.rstrip('/')}/{self.webhook_path.lstrip('/')}"

    def page_size(self, requested: Optional[int]) -> int:
        """Requested page size, defaulted and capped."""
        return min(requested or self.default_page_size, self.max_page_size)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
