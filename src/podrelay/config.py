"""Configuration loading.

Settings are loaded in priority order (highest first):
  1. Environment variables  (PODRELAY__PROXY__CUSTOM_URL=https://relay.example/raw?url=)
  2. podrelay.yaml          (searched in cwd, then ~/.config/podrelay/)
  3. Hardcoded defaults

The config file is optional; every field has a default.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import platformdirs
from pydantic import BaseModel, ConfigDict, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

_DEFAULT_DATA_DIR = platformdirs.user_data_dir("podrelay")
_DEFAULT_DB_PATH = os.path.join(_DEFAULT_DATA_DIR, "cache.db")

DEFAULT_CORS_PROXY = "https://api.allorigins.win"


def _find_config_file() -> str | None:
    """Return the path of the first podrelay.yaml found, or None."""
    candidates = [
        Path("podrelay.yaml"),
        Path.home() / ".config" / "podrelay" / "podrelay.yaml",
    ]
    for path in candidates:
        if path.exists():
            return str(path)
    return None


class ProxySettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_url: str = DEFAULT_CORS_PROXY
    # Template ("...{url}"), prefix ("...?url=") or bare base URL.
    custom_url: str | None = None
    custom_primary: bool = False

    @field_validator("default_url")
    @classmethod
    def validate_default_url(cls, v: str) -> str:
        v = v.strip().rstrip("/")
        if not v.startswith(("http://", "https://")):
            raise ValueError("default_url must use http or https scheme")
        return v

    @field_validator("custom_url")
    @classmethod
    def normalize_custom_url(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().rstrip("/")
        return v or None


class FetcherSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    direct_timeout_seconds: float = 8.0
    proxy_timeout_seconds: float = 15.0
    json_timeout_seconds: float = 8.0
    user_agent: str = "podrelay/0.4"


class CatalogSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    search_url: str = "https://itunes.apple.com/search"
    lookup_url: str = "https://itunes.apple.com/lookup"
    chart_base_url: str = "https://rss.applemarketingtools.com/api/v2"
    default_country: str = "us"
    search_limit: int = 25
    chart_limit: int = 50
    lookup_chunk_size: int = 50

    @field_validator("chart_limit")
    @classmethod
    def clamp_chart_limit(cls, v: int) -> int:
        return max(1, min(v, 200))

    @field_validator("lookup_chunk_size", "search_limit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be >= 1")
        return v


class CacheSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    db_path: str = _DEFAULT_DB_PATH
    memory_max_entries: int = 512
    chart_ttl_hours: int = 24
    chart_purge_hours: int = 72
    search_ttl_hours: int = 6
    negative_ttl_minutes: int = 10
    feed_ttl_minutes: int = 30
    feed_purge_hours: int = 24
    fetchability_ttl_days: int = 7
    fetchability_purge_days: int = 14
    recommended_ttl_hours: int = 24
    recommended_purge_hours: int = 72
    cleanup_interval_hours: int = 6

    @field_validator("cleanup_interval_hours")
    @classmethod
    def validate_cleanup_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("cleanup_interval_hours must be >= 1")
        return v


class ProbeSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    # Hosts known to serve feeds with permissive CORS. Probed first, never trusted blindly.
    allow_hosts: list[str] = ["feeds.simplecast.com", "feeds.megaphone.fm", "rss.art19.com"]
    block_hosts: list[str] = ["feeds.npr.org"]
    pool_width: int = 3
    # Per-attempt deadline for fetch-and-parse probes.
    timeout_seconds: float = 5.0

    @field_validator("pool_width")
    @classmethod
    def validate_pool_width(cls, v: int) -> int:
        if v < 1:
            raise ValueError("pool_width must be >= 1")
        return v


class RecommendSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    per_category: int = 3
    initial_groups: int = 4
    more_groups: int = 2
    search_fallback: bool = True


class LoggingSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "text"] = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        # Double-underscore separates nesting: PODRELAY__PROXY__CUSTOM_PRIMARY=true
        env_prefix="PODRELAY__",
        env_nested_delimiter="__",
        yaml_file=_find_config_file(),
        yaml_file_encoding="utf-8",
    )

    proxy: ProxySettings = ProxySettings()
    fetcher: FetcherSettings = FetcherSettings()
    catalog: CatalogSettings = CatalogSettings()
    cache: CacheSettings = CacheSettings()
    probe: ProbeSettings = ProbeSettings()
    recommend: RecommendSettings = RecommendSettings()
    logging: LoggingSettings = LoggingSettings()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
        **kwargs: Any,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,  # Constructor args (highest priority)
            env_settings,  # Environment variables
            YamlConfigSettingsSource(settings_cls),  # YAML file
            # dotenv and file secrets intentionally excluded
        )
