"""Domain layer - records, status machines, errors and settings."""
from domain.errors import (
    Conflict,
    ConflictError,
    InvalidRequest,
    NotFoundError,
    OfflineMapError,
    StorageError,
)
from domain.models import Cache, CacheRequest, DownloadConfig, DownloadSession, Tile
from domain.settings import OfflineCacheSettings, load_settings, save_settings
from domain.states import CacheStatus, SessionStatus, TileStatus

__all__ = [
    'Cache',
    'CacheRequest',
    'CacheStatus',
    'Conflict',
    'ConflictError',
    'DownloadConfig',
    'DownloadSession',
    'InvalidRequest',
    'NotFoundError',
    'OfflineCacheSettings',
    'OfflineMapError',
    'SessionStatus',
    'StorageError',
    'Tile',
    'TileStatus',
    'load_settings',
    'save_settings',
]
