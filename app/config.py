from pydantic import AnyUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache
from typing import Literal

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "dev"
    SERVICE_PORT: int = 8080
    MAX_EVENT_SIZE: int = 1048576
    MAX_BATCH_SIZE: int = 1000
    LOG_JSON: bool = True
    # Storage engine selection: "memory", "sqlite" or "redis"
    STORE_BACKEND: Literal["memory", "sqlite", "redis"] = "memory"
    SQLITE_PATH: str = "data/ingestor.db"
    REDIS_URL: AnyUrl | None = None
    REDIS_KEY_PREFIX: str = "ingestor"
    DEFAULT_PAGE_LIMIT: int = 100

@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
