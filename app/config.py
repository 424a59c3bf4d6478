"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="Pairly", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=4000, alias="PORT")

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )
    web_origin: str = Field(default="http://localhost:3000", alias="WEB_ORIGIN")

    jwt_secret: str = Field(
        default="dev-secret-change-in-production", alias="JWT_SECRET"
    )
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    session_ttl_days: int = Field(default=7, alias="SESSION_TTL_DAYS", ge=1, le=90)

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_language: str = Field(default="ru-RU", alias="TMDB_LANGUAGE")
    tmdb_region: str = Field(default="RU", alias="TMDB_REGION")
    tmdb_timeout_seconds: float = Field(default=15.0, alias="TMDB_TIMEOUT", gt=0)
    tmdb_concurrency: int = Field(default=10, alias="TMDB_CONCURRENCY", ge=1, le=50)

    search_cache_seconds: int = Field(default=3_600, alias="SEARCH_CACHE_TTL", ge=1)
    detail_cache_seconds: int = Field(default=86_400, alias="DETAIL_CACHE_TTL", ge=1)
    config_cache_seconds: int = Field(default=604_800, alias="CONFIG_CACHE_TTL", ge=1)
    movie_cache_days: int = Field(default=7, alias="MOVIE_CACHE_DAYS", ge=1)

    apple_client_id: str | None = Field(default=None, alias="APPLE_CLIENT_ID")
    apple_team_id: str | None = Field(default=None, alias="APPLE_TEAM_ID")
    apple_key_id: str | None = Field(default=None, alias="APPLE_KEY_ID")
    apple_redirect_uri: str | None = Field(default=None, alias="APPLE_REDIRECT_URI")
    apple_private_key: str | None = Field(default=None, alias="APPLE_PRIVATE_KEY")

    database_url: str = Field(
        default="sqlite+aiosqlite:///./pairly.db", alias="DATABASE_URL"
    )
    cache_url: str = Field(
        default="memory://",
        alias="CACHE_URL",
        validation_alias=AliasChoices("CACHE_URL", "REDIS_URL"),
    )
    avatars_dir: Path = Field(default=Path("./uploads/avatars"), alias="AVATARS_DIR")

    rate_limit_enabled: bool = Field(default=True, alias="RATE_LIMIT_ENABLED")

    @field_validator("apple_private_key", mode="before")
    @classmethod
    def _expand_key_newlines(cls, value: object) -> object:
        """Private keys pasted into a single env line carry literal ``\\n``."""

        if isinstance(value, str):
            value = value.strip()
            if not value:
                return None
            return value.replace("\\n", "\n")
        return value

    @field_validator("web_origin")
    @classmethod
    def _require_origin(cls, value: str) -> str:
        if not any(part.strip() for part in value.split(",")):
            raise ValueError("WEB_ORIGIN must list at least one origin")
        return value

    @property
    def allowed_origins(self) -> tuple[str, ...]:
        """Return the configured browser origins without trailing slashes."""

        origins: list[str] = []
        for part in self.web_origin.split(","):
            origin = part.strip().rstrip("/")
            if origin and origin not in origins:
                origins.append(origin)
        return tuple(origins)

    @property
    def primary_origin(self) -> str:
        return self.allowed_origins[0]

    @property
    def secure_cookies(self) -> bool:
        return self.environment == "production"

    @property
    def apple_configured(self) -> bool:
        return bool(self.apple_client_id and self.apple_redirect_uri)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
