from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Relay settings, read from the environment with .env as a fallback.

    DATABASE_URL, LOG_LEVEL and AUTH_SECRET have no defaults and must be
    provided. The remaining fields bound per-connection memory and the
    size of history and catch-up reads.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    DATABASE_URL: str
    LOG_LEVEL: str
    AUTH_SECRET: str

    # Frames a connection may have pending before it is dropped as overflowed
    QUEUE_CAPACITY: int = Field(256, ge=1)

    # Seconds a catch-up waits for a full queue to drain
    CATCHUP_DRAIN_TIMEOUT: float = Field(5.0, ge=0)
    CATCHUP_PAGE_SIZE: int = Field(100, ge=1)

    MAX_CONTENT_LENGTH: int = Field(4096, ge=1)

    HISTORY_DEFAULT_LIMIT: int = Field(50, ge=1)
    HISTORY_MAX_LIMIT: int = Field(100, ge=1)

    @field_validator("LOG_LEVEL")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"unknown log level {v}")
        return level


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
