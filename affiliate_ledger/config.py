from functools import lru_cache
from typing import Optional, Union
import json

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite:///./affiliate_ledger.db"
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for a pooled connection
    DB_STATEMENT_TIMEOUT_MS: int = 5000  # PostgreSQL only
    CAS_MAX_RETRIES: int = 3

    # App
    APP_NAME: str = "Affiliate Ledger API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS - JSON list or comma-separated
    CORS_ORIGINS: list[str] = ["*"]

    # Notification collaborator
    NOTIFICATION_URL: Optional[str] = None
    REFERRAL_NOTIFICATION_URL: Optional[str] = None
    NOTIFICATION_API_KEY: Optional[str] = None
    NOTIFICATION_TIMEOUT: float = 10.0

    # Affiliates / leaderboard
    DEFAULT_COMMISSION_RATE: float = 10.0
    LEADERBOARD_DEFAULT_LIMIT: int = 10
    LEADERBOARD_MAX_LIMIT: int = 100

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: Union[str, list[str]]) -> list[str]:
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                return json.loads(v)
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")


@lru_cache()
def get_settings() -> Settings:
    return Settings()
