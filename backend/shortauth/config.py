from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    DATABASE_URL: str = "sqlite:///./shortener.db"
    REDIS_URL: str = "redis://localhost:6379/0"
    CHALLENGE_BACKEND: Literal["memory", "redis"] = "memory"
    CHALLENGE_TIMEOUT_SECONDS: int = 60

    RP_ID: str = "localhost"
    RP_NAME: str = "Thalora URL Shortener"
    ORIGIN: str = "http://localhost:3000"
    ALLOWED_ORIGINS: str = "http://localhost:3000"

    JWT_SECRET: str
    SESSION_TTL_SECONDS: int = 3600
    SESSION_COOKIE_NAME: str = "session"

    # Only ever set by the operator; nothing in the API can flip it.
    TEST_MODE: bool = False

    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    @property
    def allowed_origins_list(self) -> List[str]:
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def challenge_timeout_ms(self) -> int:
        return self.CHALLENGE_TIMEOUT_SECONDS * 1000


@lru_cache
def get_settings() -> Settings:
    return Settings()
