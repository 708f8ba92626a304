"""
Configuration management with environment and .env loading.
"""
import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Database Configuration
    DATABASE_URL: str = "sqlite:///./fleet_alerts.db"

    # API Configuration
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    API_WORKERS: int = 1

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    # Alert thresholds
    SPEED_LIMIT_KMH: float = 100.0
    MAX_LATERAL_ACCEL: float = 20.0
    MAX_VERTICAL_ACCEL: float = 30.0
    MAX_TILT_DEGREES: float = 45.0

    # Alert gate and pipeline
    ALERT_COOLDOWN_SECONDS: float = 60.0
    PIPELINE_CONCURRENCY: int = 8
    PERSISTENCE_MAX_RETRIES: int = 3
    PERSISTENCE_RETRY_BASE_DELAY: float = 0.5

    # Batch sweep
    SWEEP_LIMIT: int = 50
    SWEEP_INTERVAL_SECONDS: float = 30.0

    # Vehicle location tracking
    LOCATION_HISTORY_LIMIT: int = 100

    # Notifications
    ALERT_WEBHOOK_URL: Optional[str] = None
    NOTIFY_TIMEOUT_SECONDS: float = 5.0

    # Development flags
    DEBUG: bool = False


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).
    Loads the first .env found in the working directory or its parents.
    """
    for env_file in (".env", "../.env", "../../.env"):
        if os.path.exists(env_file):
            load_dotenv(env_file, override=False)
            break

    return Settings()
