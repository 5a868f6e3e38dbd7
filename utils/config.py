"""
Configuration Utility - Environment Variables Management

Centralized configuration loading from .env files using pydantic-settings.
Type-safe access to all environment variables with validation.

Usage:
    from utils.config import settings

    interval = settings.RATE_LIMIT_BASE_INTERVAL_SECONDS
    redis_url = settings.REDIS_URL

The throttling constants are tuned empirically against the extraction
service. Their relative ordering is validated at load time:
INTER_DOCUMENT_DELAY_SECONDS > RATE_LIMIT_BASE_INTERVAL_SECONDS > INTER_TICKET_DELAY_SECONDS.
"""

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Rate-limited executor
    RATE_LIMIT_BASE_INTERVAL_SECONDS: float = Field(default=8.0, ge=0)
    RATE_LIMIT_POST_SUCCESS_DELAY_SECONDS: float = Field(default=2.0, ge=0)
    RATE_LIMIT_POST_FAILURE_DELAY_SECONDS: float = Field(default=5.0, ge=0)
    RATE_LIMIT_MAX_MULTIPLIER: float = Field(default=5.0, ge=1)
    RATE_LIMIT_FAILURE_STEP: float = Field(default=0.5, ge=0)
    RATE_LIMIT_SUCCESS_DECAY: float = Field(default=0.8, gt=0, le=1)

    # Per-call retry on rate limiting
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY_SECONDS: float = Field(default=15.0, ge=0)
    RETRY_EXPONENT_BASE: float = Field(default=3.0, ge=1)
    RETRY_JITTER_SECONDS: float = Field(default=5.0, ge=0)
    RETRY_MAX_DELAY_SECONDS: float = Field(default=120.0, ge=0)

    # Cooldown guard
    COOLDOWN_DOCUMENT_SECONDS: float = Field(default=300.0, ge=0)
    COOLDOWN_BATCH_SECONDS: float = Field(default=600.0, ge=0)
    FORCED_COOLDOWN_SECONDS: float = Field(default=300.0, ge=0)

    # Batch orchestration
    INTER_DOCUMENT_DELAY_SECONDS: float = Field(default=10.0, ge=0)
    INTER_TICKET_DELAY_SECONDS: float = Field(default=3.0, ge=0)
    POST_UPLOAD_DELAY_SECONDS: float = Field(default=2.0, ge=0)
    FALLBACK_STEP_DELAY_SECONDS: float = Field(default=1.0, ge=0)
    WORKFLOW_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)
    BATCH_MAX_DOCUMENTS: int = Field(default=2, ge=1)

    # Document intake
    DOCUMENT_CHAR_BUDGET: int = Field(default=4000, ge=1)
    EMAIL_MAX_CHARS: int = Field(default=8000, ge=1)
    EMAIL_MIN_INTERVAL_SECONDS: float = Field(default=30.0, ge=0)

    # Ticket defaults
    PLACEHOLDER_TOTAL_AMOUNT: float = Field(default=100.0)
    DEFAULT_CURRENCY: str = Field(default="USD")
    PLACEHOLDER_PHONE: str = Field(default="+1-000-000-0000")
    PLACEHOLDER_EMAIL_DOMAIN: str = Field(default="passenger.com")

    # Extraction / workflow collaborators
    EXTRACTION_API_BASE: str = Field(default="http://localhost:8080/v1")
    EXTRACTION_API_KEY: str | None = Field(default=None)
    WORKFLOW_API_BASE: str = Field(default="")
    WORKFLOW_API_KEY: str | None = Field(default=None)
    API_TIMEOUT: int = Field(default=120)

    # Storage
    STORAGE_BACKEND: str = Field(default="sqlite")
    SQLITE_PATH: str = Field(default="/app/data/db/ingest.db")

    # Upload
    UPLOAD_BACKEND: str = Field(default="local")

    # SFTP Configuration
    SFTP_HOST: str = Field(default="")
    SFTP_PORT: int = Field(default=22)
    SFTP_USERNAME: str = Field(default="")
    SFTP_KEY_PATH: str = Field(default="/run/secrets/id_rsa")
    SFTP_KEY_PASSPHRASE: str | None = Field(default=None)
    SFTP_REMOTE_BASE: str = Field(default="/upload")
    SFTP_TIMEOUT: int = Field(default=15)

    # Redis Configuration
    REDIS_URL: str = Field(default="redis://redis:6379/0")
    REDIS_MAX_CONNECTIONS: int = Field(default=10)
    REDIS_CHANNEL_JOBS: str = Field(default="ingest.jobs")
    PUBLISH_JOB_EVENTS: bool = Field(default=False)

    # Inbox scheduler
    INBOX_DIR: str = Field(default="/app/data/inbox")
    SYNC_SCHEDULE_CRON: str = Field(default="*/30 * * * *")
    DEFAULT_AGENCY_ID: str = Field(default="")
    DEFAULT_AGENT_EMAIL: str = Field(default="")

    # Backend API Configuration
    API_PORT: int = Field(default=8000)
    API_HOST: str = Field(default="0.0.0.0")

    # Logging Configuration
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json")

    # Application Metadata
    ENVIRONMENT: str = Field(default="production")
    APP_NAME: str = Field(default="ticket-ingest")
    APP_VERSION: str = Field(default="0.1.0")

    @model_validator(mode="after")
    def check_delay_ordering(self) -> "Settings":
        """Batch-level delay > per-call spacing > per-ticket delay."""
        if not (
            self.INTER_DOCUMENT_DELAY_SECONDS
            > self.RATE_LIMIT_BASE_INTERVAL_SECONDS
            > self.INTER_TICKET_DELAY_SECONDS
        ):
            raise ValueError(
                "INTER_DOCUMENT_DELAY_SECONDS > RATE_LIMIT_BASE_INTERVAL_SECONDS "
                "> INTER_TICKET_DELAY_SECONDS must hold "
                f"(got {self.INTER_DOCUMENT_DELAY_SECONDS}, "
                f"{self.RATE_LIMIT_BASE_INTERVAL_SECONDS}, "
                f"{self.INTER_TICKET_DELAY_SECONDS})"
            )
        if self.STORAGE_BACKEND not in ("sqlite", "memory"):
            raise ValueError(f"Unsupported STORAGE_BACKEND: {self.STORAGE_BACKEND}")
        if self.UPLOAD_BACKEND not in ("local", "sftp"):
            raise ValueError(f"Unsupported UPLOAD_BACKEND: {self.UPLOAD_BACKEND}")
        return self


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Singleton Settings instance
    """
    return Settings()


# Global settings instance
settings = get_settings()
