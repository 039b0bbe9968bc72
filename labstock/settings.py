from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Iterable

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class LabStockSettings(BaseSettings):
    """Stock engine configuration read from the environment or a .env file."""

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    APP_NAME: str = "LabStock"
    DATA_DIR: Path = Field(default_factory=lambda: Path(__file__).resolve().parent.parent / "data")
    LOG_LEVEL: str = "INFO"

    API_KEY: str = Field(default="", validation_alias=AliasChoices("API_KEY", "API_TOKEN"))
    JWT_SECRET: str = "change-me"
    JWT_ACCESS_TTL_MIN: int = 15
    ALLOWED_ORIGINS: list[str] = Field(default_factory=list)

    DB_URL: str = Field(default="", validation_alias=AliasChoices("DATABASE_URL", "DB_URL"))

    HOST: str = "0.0.0.0"
    PORT: int = 8089

    # Stock engine
    CENTRAL_STORE_ID: str = "central-store"
    ADMIN_GRACE_DAYS: int = 2
    ALLOCATION_MAX_RETRIES: int = 3
    ALLOCATION_RETRY_BACKOFF_SECONDS: float = 0.1

    # Lab directory cache
    LAB_CACHE_TTL_SECONDS: float = 300.0
    LAB_CACHE_SERVE_STALE: bool = True

    @field_validator("ALLOWED_ORIGINS", mode="before")
    @classmethod
    def parse_allowed_origins(cls, value: Any) -> list[str]:
        if value in (None, "", []):
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, Iterable):
            return [str(item).strip() for item in value if str(item).strip()]
        raise TypeError("ALLOWED_ORIGINS must be a comma separated string or list")

    @field_validator("ALLOCATION_MAX_RETRIES")
    @classmethod
    def at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("ALLOCATION_MAX_RETRIES must be >= 1")
        return value

    @model_validator(mode="after")
    def default_db_url(self) -> "LabStockSettings":
        if not self.DB_URL:
            self.DB_URL = f"sqlite:///{self.DATA_DIR / 'labstock.db'}"
        return self


@lru_cache(maxsize=1)
def get_settings() -> LabStockSettings:
    settings = LabStockSettings()
    settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
    return settings


settings = get_settings()
