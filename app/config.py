"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Iterable, Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="CineScope", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=3000, alias="PORT")

    tmdb_api_key: str | None = Field(default=None, alias="TMDB_API_KEY")
    tmdb_api_url: HttpUrl = Field(
        default="https://api.themoviedb.org/3", alias="TMDB_API_URL"
    )
    tmdb_image_url: str = Field(
        default="https://image.tmdb.org/t/p", alias="TMDB_IMAGE_URL"
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./cinescope.db", alias="DATABASE_URL"
    )
    redis_url: str | None = Field(default=None, alias="REDIS_URL")

    trending_cache_seconds: int = Field(
        default=3_600, alias="TRENDING_CACHE_TTL", ge=1
    )
    detail_cache_days: int = Field(default=7, alias="DETAIL_CACHE_DAYS", ge=0)
    browse_timeout_seconds: float = Field(
        default=5.0, alias="BROWSE_TIMEOUT", gt=0
    )
    upsert_concurrency: int = Field(
        default=8, alias="UPSERT_CONCURRENCY", ge=1, le=100
    )

    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")

    firebase_credentials_file: str | None = Field(
        default=None,
        alias="GOOGLE_APPLICATION_CREDENTIALS",
        validation_alias=AliasChoices(
            "GOOGLE_APPLICATION_CREDENTIALS", "FIREBASE_CREDENTIALS_FILE"
        ),
    )
    firebase_project_id: str | None = Field(default=None, alias="FIREBASE_PROJECT_ID")
    firebase_private_key: str | None = Field(
        default=None, alias="FIREBASE_PRIVATE_KEY"
    )
    firebase_client_email: str | None = Field(
        default=None, alias="FIREBASE_CLIENT_EMAIL"
    )
    firebase_client_id: str | None = Field(default=None, alias="FIREBASE_CLIENT_ID")
    firebase_client_cert_url: str | None = Field(
        default=None, alias="FIREBASE_CLIENT_X509_CERT_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def _join_cors_origins(cls, value: object) -> str:
        """Accept either a comma separated string or an iterable of origins."""

        if value is None:
            return "*"
        if isinstance(value, str):
            return value
        if isinstance(value, Iterable):
            return ",".join(str(part).strip() for part in value)
        raise TypeError("CORS_ORIGINS must be a string or iterable of strings")

    @field_validator("tmdb_image_url")
    @classmethod
    def _strip_image_url(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def cors_origin_list(self) -> list[str]:
        """Return configured CORS origins, defaulting to any origin."""

        origins = [part.strip() for part in self.cors_origins.split(",")]
        return [origin for origin in origins if origin] or ["*"]

    @property
    def has_firebase_credentials(self) -> bool:
        """Return whether enough Firebase settings exist to verify tokens."""

        if self.firebase_credentials_file:
            return True
        return bool(
            self.firebase_project_id
            and self.firebase_private_key
            and self.firebase_client_email
        )

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
