from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ----------------------------------------------------------------------------
# Settings
# ----------------------------------------------------------------------------
DEFAULT_DATABASE_URL = "sqlite+aiosqlite:///./app.db"


class Settings(BaseSettings):
    """Process configuration, read once at startup and never mutated."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    secret_key: str = Field(default="super-secret-key-change-me", min_length=1)
    algorithm: str = "HS256"
    access_token_expire_minutes: int = Field(default=60 * 24 * 7, gt=0)  # 7 days

    database_url: str = DEFAULT_DATABASE_URL
    echo_sql: bool = False

    cors_origins: str = "*"
    log_level: str = "INFO"
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    @property
    def cors_origins_list(self) -> List[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
