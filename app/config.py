"""Application configuration models."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import AliasChoices, Field, HttpUrl, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .utils import coerce_bool


class Settings(BaseSettings):
    """Settings loaded from environment variables or a .env file."""

    app_name: str = Field(default="IMDbStream", alias="APP_NAME")
    server_host: str = Field(default="0.0.0.0", alias="HOST")
    server_port: int = Field(default=7000, alias="PORT")

    metadata_addon_url: HttpUrl = Field(
        default="https://v3-cinemeta.strem.io",
        alias="METADATA_ADDON_URL",
        validation_alias=AliasChoices("METADATA_ADDON_URL", "CINEMETA_BASE"),
    )
    list_site_url: HttpUrl = Field(
        default="https://www.imdb.com", alias="LIST_SITE_URL"
    )
    list_mobile_url: HttpUrl = Field(
        default="https://m.imdb.com", alias="LIST_MOBILE_URL"
    )
    list_proxy_url: HttpUrl | None = Field(
        default="https://r.jina.ai", alias="LIST_PROXY_URL"
    )

    list_pages_max: int = Field(default=1, alias="IMDB_PAGES_MAX", ge=1, le=50)
    list_full_page_size: int = Field(
        default=100, alias="LIST_FULL_PAGE_SIZE", ge=1, le=1_000
    )

    cache_ttl_seconds: int = Field(default=1_800, alias="IMDB_CACHE_TTL_SEC", ge=60)
    stats_ttl_seconds: int = Field(default=43_200, alias="STATS_TTL_SEC", ge=60)
    genres_ttl_seconds: int = Field(default=21_600, alias="GENRES_TTL_SEC", ge=60)
    cache_sweep_threshold: int = Field(
        default=5_000, alias="CACHE_SWEEP_THRESHOLD", ge=10
    )

    classify_concurrency: int = Field(
        default=6, alias="CLASSIFY_CONCURRENCY", ge=1, le=8
    )
    has_type_sample: int = Field(default=120, alias="HAS_TYPE_SAMPLE", ge=1, le=1_000)
    episode_parent_ttl_seconds: int = Field(
        default=86_400, alias="EP_PARENT_TTL_SEC", ge=60
    )
    episode_parent_max: int = Field(
        default=1_000, alias="EP_PARENT_MAX", ge=10, le=100_000
    )
    include_music_video: bool = Field(default=False, alias="INCLUDE_MUSIC_VIDEO")

    catalog_limit_max: int = Field(default=80, alias="CATALOG_LIMIT_MAX", ge=1, le=500)
    catalog_limit_default: int = Field(
        default=50, alias="CATALOG_LIMIT_DEFAULT", ge=1, le=500
    )
    catalog_prefix: str = Field(default="imdb", alias="CATALOG_PREFIX")

    snapshot_refresh_seconds: int = Field(
        default=43_200, alias="SNAPSHOT_REFRESH_SEC", ge=3_600
    )

    database_url: str = Field(
        default="sqlite+aiosqlite:///./imdbstream.db", alias="DATABASE_URL"
    )

    environment: Literal["development", "production"] = Field(
        default="development", alias="ENVIRONMENT"
    )

    @field_validator("list_proxy_url", mode="before")
    @classmethod
    def _blank_proxy_disables(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("include_music_video", mode="before")
    @classmethod
    def _parse_flag(cls, value: object) -> object:
        if value is None:
            return False
        return coerce_bool(value)

    @field_validator("catalog_prefix")
    @classmethod
    def _validate_prefix(cls, value: str) -> str:
        """Catalog ids are dash separated, so the prefix may not contain one."""

        cleaned = value.strip()
        if not cleaned:
            raise ValueError("CATALOG_PREFIX may not be empty")
        if "-" in cleaned:
            raise ValueError("CATALOG_PREFIX may not contain '-'")
        return cleaned

    @property
    def effective_limit_default(self) -> int:
        """Default page size, never above the configured maximum."""

        return min(self.catalog_limit_default, self.catalog_limit_max)

    @property
    def cinemeta_api_url(self) -> HttpUrl:
        """Maintain backwards compatibility with the previous setting name."""

        return self.metadata_addon_url

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()  # type: ignore[call-arg]


settings = get_settings()
