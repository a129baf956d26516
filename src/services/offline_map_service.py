"""Offline map service - single entry point wiring storage, registry and downloads."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from domain.models import (
    BoundingBox,
    Cache,
    CacheFilter,
    CacheRequest,
    CacheStatistics,
    DownloadConfig,
    DownloadSession,
    GlobalStatistics,
    RegionStatistics,
    TilePage,
)
from domain.settings import OfflineCacheSettings
from domain.states import TileStatus
from services.cache_registry import CacheRegistry, parse_request
from services.download_orchestrator import DownloadOrchestrator
from services.statistics import StatisticsAggregator
from tiles.database import OfflineMapDatabase
from tiles.fetcher import HttpTileFetcher, TileSource
from tiles.index import TileIndex
from tiles.storage import FileTileStorage, TileStorage

logger = logging.getLogger(__name__)


class OfflineMapService:
    """Offline tile caches of disaster regions.

    Usage:
        async with OfflineMapService.from_settings(load_settings()) as service:
            cache = await service.create_cache({...}, auto_start=True)
            await service.wait(cache.id)
    """

    def __init__(
        self,
        db: OfflineMapDatabase,
        storage: TileStorage,
        source: TileSource,
        settings: OfflineCacheSettings | None = None,
    ) -> None:
        self.settings = settings or OfflineCacheSettings()
        self.db = db
        self.storage = storage
        self.source = source
        self.index = TileIndex(db, storage)
        self.registry = CacheRegistry(db, self.index, self.settings)
        self.orchestrator = DownloadOrchestrator(self.registry, source, self.settings)
        self.statistics = StatisticsAggregator(db, self.registry)

    @classmethod
    def from_settings(
        cls,
        settings: OfflineCacheSettings,
        source: TileSource | None = None,
    ) -> OfflineMapService:
        """Open the database and tile storage under ``settings.storage_path``."""
        root = Path(settings.storage_path)
        root.mkdir(parents=True, exist_ok=True)
        db = OfflineMapDatabase(settings.database_file())
        if source is None:
            source = HttpTileFetcher(
                timeout=settings.tile_timeout_seconds,
                user_agent=settings.user_agent,
                verify_ssl=settings.verify_ssl,
                concurrency=settings.concurrency,
            )
        service = cls(db, FileTileStorage(root), source, settings)
        recovered = service.orchestrator.recover_interrupted()
        if recovered:
            logger.info('Interrupted downloads paused for caches %s', recovered)
        return service

    # --- Caches

    async def create_cache(
        self, request: CacheRequest | dict[str, Any], *, auto_start: bool | None = None
    ) -> Cache:
        """Create a cache; starts downloading when ``auto_start`` (or the request) asks."""
        req = parse_request(request)
        cache = self.registry.create_cache(req)
        if req.auto_start if auto_start is None else auto_start:
            await self.orchestrator.start(cache.id)
            cache = self.registry.get_cache(cache.id)
        return cache

    def get_cache(self, cache_id: int) -> Cache:
        return self.registry.get_cache(cache_id)

    def list_caches(self, cache_filter: CacheFilter | None = None, **criteria: Any) -> list[Cache]:
        return self.registry.list_caches(cache_filter, **criteria)

    def find_within_bounds(
        self, bbox: BoundingBox | tuple[float, float, float, float]
    ) -> list[Cache]:
        return self.registry.find_within_bounds(bbox)

    def find_containing_point(self, lon: float, lat: float) -> list[Cache]:
        return self.registry.find_containing_point(lon, lat)

    def delete_cache(self, cache_id: int) -> Cache:
        return self.registry.delete_cache(cache_id)

    def set_expiry(self, cache_id: int, expires_at: datetime | None) -> Cache:
        return self.registry.set_expiry(cache_id, expires_at)

    def verify_cache(self, cache_id: int) -> int:
        return self.registry.verify_cache(cache_id)

    async def cleanup_expired(self, now: datetime | None = None) -> list[int]:
        """Expire overdue caches, stopping their downloads, then purge their tiles."""
        now = now or self.registry.clock()
        for cache in self.registry.expired_candidates(now):
            if self.orchestrator.is_running(cache.id):
                await self.orchestrator.cancel(cache.id)
        expired = self.registry.cleanup_expired(now)
        purged = self.registry.purge_expired()
        if expired or purged:
            logger.info('Expiry sweep: %d caches expired, %d purged', len(expired), purged)
        return expired

    # --- Tiles

    def list_tiles(
        self,
        cache_id: int,
        *,
        zoom: int | None = None,
        status: TileStatus | None = None,
        page: int = 0,
        size: int | None = None,
    ) -> TilePage:
        return self.registry.list_tiles(cache_id, zoom=zoom, status=status, page=page, size=size)

    def get_tile_bytes(self, cache_id: int, z: int, x: int, y: int) -> bytes:
        return self.registry.get_tile_bytes(cache_id, z, x, y)

    # --- Downloads

    async def start_download(
        self, cache_id: int, config: DownloadConfig | None = None
    ) -> DownloadSession:
        return await self.orchestrator.start(cache_id, config)

    async def pause_download(self, cache_id: int) -> DownloadSession:
        return await self.orchestrator.pause(cache_id)

    async def resume_download(self, cache_id: int) -> DownloadSession:
        return await self.orchestrator.resume(cache_id)

    async def cancel_download(self, cache_id: int) -> DownloadSession:
        return await self.orchestrator.cancel(cache_id)

    async def wait(self, cache_id: int) -> DownloadSession | None:
        return await self.orchestrator.wait(cache_id)

    def latest_session(self, cache_id: int) -> DownloadSession | None:
        self.registry.get_cache(cache_id)
        return self.registry.sessions.latest(cache_id)

    # --- Statistics

    def global_statistics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        region_id: int | None = None,
    ) -> GlobalStatistics:
        return self.statistics.global_statistics(start, end, region_id)

    def regional_statistics(
        self, start: datetime | None = None, end: datetime | None = None
    ) -> list[RegionStatistics]:
        return self.statistics.regional_statistics(start, end)

    def cache_statistics(self, cache_id: int) -> CacheStatistics:
        return self.statistics.cache_statistics(cache_id)

    # --- Lifecycle

    async def close(self) -> None:
        """Pause running downloads, close the tile source and the database."""
        await self.orchestrator.shutdown()
        close = getattr(self.source, 'close', None)
        if close is not None:
            await close()
        self.db.close()

    async def __aenter__(self) -> OfflineMapService:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
