"""Process settings for a notifier."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Server settings
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080)
    log_level: str = Field(default="INFO")

    # Notifier settings
    project_id: str = Field(default="")
    config_path: str = Field(default="")
    ignore_bad_messages: bool = Field(default=False)
    delivery_timeout: float = Field(default=30.0, gt=0)
    secret_cache_ttl: float | None = Field(default=None, gt=0)

    # Modes that exit without serving
    smoketest: bool = Field(default=False)
    setup_check: bool = Field(default=False)


@lru_cache
def get_settings() -> Settings:
    return Settings()
