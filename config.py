"""
Application configuration settings.
Uses pydantic-settings for environment variable management.
"""

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Application
    APP_NAME: str = "Startup Crowdfunding API"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "crowdfunding"
    MONGO_TIMEOUT_MS: int = 5000

    # Security
    JWT_SECRET: str = "dev-secret"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 7  # 7 days

    # Ledger
    LEDGER_LOCK_TIMEOUT_SECONDS: float = 10.0
    MAJOR_INVESTOR_THRESHOLD: float = 10000.0
    SETTLEMENT_LEASE_SECONDS: float = 60.0

    # Uploads
    UPLOAD_DIR: Path = Path("uploads")
    MAX_UPLOAD_MB: int = 10

    CORS_ORIGINS: List[str] = ["*"]


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
