from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # App
    PROJECT_NAME: str = "Telecare Alerts"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = ""  # local, dev, prod (from .env)

    # CORS (from .env, comma-separated)
    BACKEND_CORS_ORIGINS: List[str] = []

    # Logging & Sentry
    LOG_LEVEL: str = "INFO"
    SENTRY_DSN: str | None = None

    # Security (from .env); tokens are issued by the auth service
    SECRET_KEY: str = ""
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15
    AUTH_TIMEOUT_SECONDS: float = 10.0

    # Alert history sink (optional, set empty to disable)
    MONGODB_URL: str = ""
    MONGODB_DB_NAME: str = "telecare"

    # Alert policy
    ALERT_THRESHOLDS_PATH: str | None = None
    ALERT_UPDATE_INTERVAL_SECONDS: float = 5.0
    ALERT_CLEAR_AFTER_NORMAL_READINGS: int = 2
    ALERT_LIST_CAP: int = 10
    ALERT_ARCHIVE_SIZE: int = 1000
    ALERT_RETENTION_SECONDS: float | None = None

    # Realtime transport
    CLIENT_OUTBOUND_QUEUE_SIZE: int = 100

    # Device ingest (empty disables the X-Ingest-Key check)
    INGEST_API_KEY: str = ""

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )


settings = Settings()
