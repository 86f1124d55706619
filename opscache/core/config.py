from functools import lru_cache

from fastapi import Depends
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Annotated


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    redis_dsn: str = "redis://localhost:6379/0"
    redis_pool_size: int = 20
    store_timeout_seconds: float = 0.25  # per round trip
    store_connect_timeout_seconds: float = 0.5
    scan_count: int = 500
    pressure_refresh_seconds: int = 5

    bucket_width_seconds: int = 300
    bucket_ttl_seconds: int = 3600
    metric_families: list[str] = ["api", "db", "cache", "job"]
    request_metrics_enabled: bool = True

    tag_index_ttl_seconds: int = 86400
    default_cache_ttl_seconds: int = 120
    cache_version: str = "1.0"

    metrics_retention_seconds: int = 7 * 86400
    tag_retention_seconds: int = 86400
    untimed_entry_max_age_seconds: int = 3600
    untimed_scan_pattern: str = "*"
    sweep_interval_seconds: int = 3600
    sweep_enabled: bool = True

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


SettingsDep = Annotated[Settings, Depends(get_settings)]
