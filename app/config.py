from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Webhook Security - required from .env
    WEBHOOK_SECRET: str

    # Profile / group-info enrichment
    PROFILE_LOOKUP_ENABLED: bool = True
    PROFILE_LOOKUP_TIMEOUT_SECONDS: float = 3.0

    # Media object storage: "local" or "http"
    MEDIA_STORAGE_BACKEND: str = "local"
    MEDIA_STORAGE_DIR: str = "./media"
    MEDIA_PUBLIC_BASE_URL: str = "http://localhost:8000/media"
    MEDIA_STORAGE_URL: Optional[str] = None
    MEDIA_STORAGE_KEY: Optional[str] = None
    MEDIA_BUCKET: str = "media"
    MEDIA_UPLOAD_TIMEOUT_SECONDS: float = 10.0

    # Downstream analysis / transcription triggers
    ANALYSIS_TRIGGER_URL: Optional[str] = None
    TRANSCRIPTION_TRIGGER_URL: Optional[str] = None
    TRIGGER_AUTH_TOKEN: Optional[str] = None
    TRIGGER_TIMEOUT_SECONDS: float = 10.0
    ANALYSIS_MESSAGE_INTERVAL: int = 20

    # Trigger outbox worker
    OUTBOX_WORKER_ENABLED: bool = False
    OUTBOX_POLL_INTERVAL_SECONDS: float = 5.0
    OUTBOX_BATCH_SIZE: int = 50
    OUTBOX_MAX_ATTEMPTS: int = 5
    OUTBOX_BACKOFF_BASE_SECONDS: float = 30.0
    OUTBOX_LEASE_SECONDS: float = 300.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
