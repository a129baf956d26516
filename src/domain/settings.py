"""Runtime configuration of the offline map cache.

Settings are a flat pydantic model stored as a sectioned TOML file
(see :mod:`domain.toml_sections`).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import tomlkit
from pydantic import BaseModel, Field, field_validator

from domain.models import DownloadConfig
from domain.toml_sections import flat_to_sectioned, sectioned_to_flat
from shared.constants import (
    CONFIG_ENV_VAR,
    DATABASE_FILENAME,
    DOWNLOAD_CONCURRENCY,
    DOWNLOAD_MAX_RETRIES,
    HTTP_USER_AGENT,
    LOG_DIR,
    LOG_MEMORY_EVERY_TILES,
    MAX_TILES_PER_CACHE,
    MIN_FREE_SPACE_MB,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
    STORAGE_DIR,
    THROUGHPUT_SMOOTHING,
    TILE_TIMEOUT_SECONDS,
)

logger = logging.getLogger(__name__)


class OfflineCacheSettings(BaseModel):
    model_config = {
        'extra': 'ignore',  # ignore unknown keys from older config files
    }

    # Root directory of tile files
    storage_path: str = STORAGE_DIR
    # SQLite database; relative paths are resolved against storage_path
    database_path: str = DATABASE_FILENAME
    log_dir: str = LOG_DIR
    # Warn before a session starts when the volume has less free space (MB)
    min_free_space_mb: int = Field(default=MIN_FREE_SPACE_MB, ge=0)

    concurrency: int = Field(default=DOWNLOAD_CONCURRENCY, ge=1, le=64)
    max_retries: int = Field(default=DOWNLOAD_MAX_RETRIES, ge=1, le=20)
    tile_timeout_seconds: float = Field(default=TILE_TIMEOUT_SECONDS, gt=0)
    retry_base_delay_seconds: float = Field(default=RETRY_BASE_DELAY_SECONDS, ge=0)
    retry_max_delay_seconds: float = Field(default=RETRY_MAX_DELAY_SECONDS, ge=0)
    # EWMA smoothing factor for throughput
    throughput_smoothing: float = Field(default=THROUGHPUT_SMOOTHING, gt=0, le=1)
    max_tiles_per_cache: int = Field(default=MAX_TILES_PER_CACHE, ge=1)

    user_agent: str = HTTP_USER_AGENT
    verify_ssl: bool = True

    # None means caches never expire unless an expiry is given explicitly
    default_ttl_days: float | None = None

    log_memory_every_tiles: int = Field(default=LOG_MEMORY_EVERY_TILES, ge=0)
    log_level: str = 'INFO'

    @field_validator('log_level')
    @classmethod
    def _check_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f'unknown log level: {v}')
        return level

    @field_validator('default_ttl_days')
    @classmethod
    def _check_ttl(cls, v: float | None) -> float | None:
        if v is not None and v <= 0:
            raise ValueError('default_ttl_days must be positive')
        return v

    def database_file(self) -> Path:
        path = Path(self.database_path)
        if self.database_path == ':memory:' or path.is_absolute():
            return path
        return Path(self.storage_path) / path

    def download_config(self) -> DownloadConfig:
        return DownloadConfig(
            concurrency=self.concurrency,
            max_retries=self.max_retries,
            tile_timeout_seconds=self.tile_timeout_seconds,
            retry_base_delay_seconds=self.retry_base_delay_seconds,
            retry_max_delay_seconds=self.retry_max_delay_seconds,
        )


def resolve_config_path(path: str | Path | None = None) -> Path | None:
    """Explicit path first, then the environment variable; None if neither."""
    if path:
        return Path(path)
    env = os.getenv(CONFIG_ENV_VAR)
    return Path(env) if env else None


def load_settings(path: str | Path | None = None) -> OfflineCacheSettings:
    """Load settings from a sectioned TOML file, or return the defaults.

    Raises:
        FileNotFoundError: An explicitly configured file does not exist.
    """
    config_path = resolve_config_path(path)
    if config_path is None:
        return OfflineCacheSettings()
    if not config_path.exists():
        msg = f'Config file not found: {config_path}'
        raise FileNotFoundError(msg)
    text = config_path.read_text(encoding='utf-8')
    data = tomlkit.parse(text).unwrap()
    settings = OfflineCacheSettings.model_validate(sectioned_to_flat(data))
    logger.info('Settings loaded from %s', config_path)
    return settings


def save_settings(path: str | Path, settings: OfflineCacheSettings) -> Path:
    """Save settings as a sectioned TOML file."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    text = tomlkit.dumps(flat_to_sectioned(settings.model_dump()))
    target.write_text(text, encoding='utf-8')
    return target
