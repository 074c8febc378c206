"""Application configuration."""

from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Environment
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "postgresql+asyncpg://identity:identity123@db:5432/identity_sync"

    # Scheduler (all cron expressions are evaluated in SYNC_TIMEZONE, never host time)
    ENABLE_SCHEDULER: bool = True
    SYNC_TIMEZONE: str = "America/Chicago"
    PIXEL_SYNC_CRON: str = "0 8-20 * * *"   # hourly 8AM-8PM Central
    NOTE_SYNC_CRON: str = "0 8-20 * * *"    # hourly 8AM-8PM Central
    EMAIL_SYNC_CRON: str = "0 0 * * *"      # nightly at midnight Central

    # Pixel ingestion source
    PIXEL_ENDPOINT_URL: str = "https://spheredsgpixel.com/pixelEndpoint"
    PIXEL_TIMEOUT_SECONDS: float = 30.0

    # Identity resolver (Audience Acuity)
    RESOLVER_ORIGIN: str = "https://api.audienceacuity.com"
    RESOLVER_KEY_ID: Optional[str] = None
    RESOLVER_API_KEY: Optional[str] = None
    RESOLVER_TEMPLATE_ID: int = 210723778
    RESOLVER_TIMEOUT_SECONDS: float = 25.0
    RESOLVER_TOKEN_TIMEOUT_SECONDS: float = 15.0

    # Enrichment engine
    ENRICHMENT_MAX_RETRIES: int = 3
    ENRICHMENT_RETRY_BASE_SECONDS: float = 1.0
    ENRICHMENT_RETRY_MULTIPLIER: float = 2.0
    ENRICHMENT_BATCH_SIZE: int = 10
    ENRICHMENT_CONCURRENCY: int = 3
    ENRICHMENT_BATCH_PAUSE_SECONDS: float = 0.2
    ENRICHMENT_ERROR_CAP: int = 10

    # Email channel (Mailchimp)
    MAILCHIMP_API_KEY: Optional[str] = None
    MAILCHIMP_LIST_ID: Optional[str] = None

    # Note channel (Handwrytten)
    HANDWRYTTEN_API_KEY: Optional[str] = None
    HANDWRYTTEN_BASE_URL: str = "https://api.handwrytten.com/v1"
    NOTE_DEFAULT_SENDER: str = "Robbie at Sphere DSG"
    NOTE_CARD_ID: str = "1"

    # Outbound HTTP
    CHANNEL_TIMEOUT_SECONDS: float = 30.0

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
