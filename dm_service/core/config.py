from functools import lru_cache
from typing import List, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "dm-service"
    VERSION: str = "0.1.0"

    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DB: str = "community"
    MONGODB_SERVER_SELECTION_TIMEOUT_MS: int = 3000

    # bounded store/directory calls; writes are never retried
    STORE_TIMEOUT_SECONDS: float = 5.0
    STORE_READ_RETRIES: int = 1

    DIRECTORY_CACHE_TTL_SECONDS: float = 30.0
    ONLINE_WINDOW_SECONDS: int = 300
    PRESENCE_TTL_SECONDS: int = 60

    NOTIFICATION_QUEUE_SIZE: int = 1000

    REDIS_URL: Optional[str] = None
    FCM_SERVICE_ACCOUNT_FILE: Optional[str] = None
    FCM_PROJECT_ID: Optional[str] = None

    JWT_SECRET: str = "change-me"
    JWT_ALGORITHM: str = "HS256"

    LOG_LEVEL: str = "INFO"
    LOG_FILE: Optional[str] = None

    CORS_ORIGINS: List[str] = ["*"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    return Settings()
