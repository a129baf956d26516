"""Tile records and storage.

This module provides:
- OfflineMapDatabase: SQLite store for caches, tiles and download sessions
- TileIndex: per-tile status with the atomic claim protocol
- FileTileStorage: tile bytes on disk, written atomically
- HttpTileFetcher: the tile fetch capability over HTTP
"""

from tiles.database import OfflineMapDatabase
from tiles.fetcher import FetchedTile, HttpTileFetcher, TileSource
from tiles.index import TileIndex
from tiles.storage import FileTileStorage

__all__ = [
    'FetchedTile',
    'FileTileStorage',
    'HttpTileFetcher',
    'OfflineMapDatabase',
    'TileIndex',
    'TileSource',
]
