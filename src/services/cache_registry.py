"""Cache lifecycle: creation with pyramid enumeration, lookup, spatial queries,
deletion and expiry."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import ValidationError

from domain.errors import (
    Busy,
    Conflict,
    InvalidRegion,
    InvalidRequest,
    InvalidZoomRange,
    StorageError,
    UnknownMapType,
    UnknownTileFormat,
)
from domain.models import (
    BoundingBox,
    Cache,
    CacheFilter,
    CacheRequest,
    TilePage,
    TileProgress,
    utc_now,
)
from domain.settings import OfflineCacheSettings
from domain.states import CacheStatus, SessionStatus, TileStatus
from geo.spatial import point_in_ring, rect_intersects_ring, ring_bbox, validate_region
from shared.constants import (
    MERCATOR_MAX_LAT_DEG,
    PRIORITY_RANK,
    CachePriority,
    MapType,
    TileFormat,
    average_tile_size_bytes,
)
from tiles.database import OfflineMapDatabase, to_db_time
from tiles.index import TileIndex
from tiles.pyramid import enumerate_pyramid, normalize_zoom_levels
from tiles.repositories import CacheRepository, SessionRepository

logger = logging.getLogger(__name__)

_URL_PLACEHOLDERS = ('{z}', '{x}', '{y}')


def _parse_enum(enum_cls: type[Enum], value: object, error: type[InvalidRequest]) -> Any:
    if isinstance(value, enum_cls):
        return value
    raw = str(value).strip()
    for candidate in (raw, raw.upper(), raw.lower()):
        try:
            return enum_cls(candidate)
        except ValueError:
            continue
    allowed = ', '.join(m.value for m in enum_cls)  # type: ignore[attr-defined]
    msg = f'Unknown {enum_cls.__name__} {value!r}; expected one of: {allowed}'
    raise error(msg)


def parse_request(data: CacheRequest | dict[str, Any]) -> CacheRequest:
    """Validate raw caller input, mapping pydantic errors to domain errors."""
    if isinstance(data, CacheRequest):
        return data
    try:
        return CacheRequest.model_validate(data)
    except ValidationError as e:
        fields = {str(err['loc'][0]) for err in e.errors() if err.get('loc')}
        if 'bounds' in fields:
            raise InvalidRegion(f'Invalid region bounds: {e}') from e
        if 'zoom_levels' in fields:
            raise InvalidZoomRange(f'Invalid zoom levels: {e}') from e
        raise InvalidRequest(f'Invalid cache request: {e}') from e


class CacheRegistry:
    """Owns Cache records and their tile pyramids.

    All operations are synchronous; the download orchestrator drives status
    changes while a session runs.
    """

    def __init__(
        self,
        db: OfflineMapDatabase,
        index: TileIndex,
        settings: OfflineCacheSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.index = index
        self.settings = settings or OfflineCacheSettings()
        self.clock = clock
        self.caches = CacheRepository(db, clock)
        self.sessions = SessionRepository(db, clock)

    # --- Creation

    def create_cache(self, request: CacheRequest | dict[str, Any]) -> Cache:
        """Validate the request, enumerate the pyramid and persist it PENDING.

        Raises:
            InvalidRegion: Empty, degenerate, self-intersecting or
                antimeridian-crossing bounds, or no tile inside the grid.
            InvalidZoomRange: No zoom levels or a level outside the grid.
            UnknownMapType: Map type not in the catalogue.
            UnknownTileFormat: Unsupported image format.
            TooManyTiles: Pyramid larger than ``max_tiles_per_cache``.
        """
        req = parse_request(request)
        map_type: MapType = _parse_enum(MapType, req.map_type, UnknownMapType)
        tile_format: TileFormat = _parse_enum(TileFormat, req.tile_format, UnknownTileFormat)
        priority: CachePriority = _parse_enum(CachePriority, req.priority, InvalidRequest)
        ring = validate_region(req.bounds)
        zoom_levels = normalize_zoom_levels(req.zoom_levels)
        missing = [p for p in _URL_PLACEHOLDERS if p not in req.tile_source_url]
        if missing:
            msg = f'Tile source URL template lacks placeholders: {", ".join(missing)}'
            raise InvalidRequest(msg)

        cells = enumerate_pyramid(
            ring, zoom_levels, max_tiles=self.settings.max_tiles_per_cache
        )
        total = len(cells)
        if total == 0:
            msg = f'Region lies outside the tile grid (latitude beyond ±{MERCATOR_MAX_LAT_DEG:.2f})'
            raise InvalidRegion(msg)
        now = self.clock()
        expires_at = req.expires_at
        ttl_days = req.ttl_days or self.settings.default_ttl_days
        if expires_at is None and ttl_days:
            expires_at = now + timedelta(days=ttl_days)
        min_lon, min_lat, max_lon, max_lat = ring_bbox(ring)

        with self.db.transaction():
            cache_id = self.caches.insert(
                {
                    'name': req.name,
                    'description': req.description,
                    'region_id': req.region_id,
                    'region_name': req.region_name,
                    'bounds': ring,
                    'min_lon': min_lon,
                    'min_lat': min_lat,
                    'max_lon': max_lon,
                    'max_lat': max_lat,
                    'zoom_levels': zoom_levels,
                    'map_type': map_type,
                    'tile_source_url': req.tile_source_url,
                    'tile_format': tile_format,
                    'status': CacheStatus.PENDING,
                    'priority': priority,
                    'priority_rank': PRIORITY_RANK[priority],
                    'total_tiles': total,
                    'estimated_size_bytes': total
                    * average_tile_size_bytes(map_type, tile_format),
                    'expires_at': expires_at,
                    'is_compressed': req.is_compressed,
                    'compression_ratio': req.compression_ratio,
                    'created_by': req.created_by,
                    'metadata': req.metadata,
                }
            )
            self.index.add_tiles(
                cache_id,
                cells,
                url_template=req.tile_source_url,
                tile_format=tile_format.value,
                is_compressed=req.is_compressed,
            )
        logger.info(
            "Cache %d '%s' created: %d tiles over zooms %s (%s, %s)",
            cache_id,
            req.name,
            total,
            zoom_levels,
            map_type.value,
            tile_format.value,
        )
        return self.caches.get(cache_id)

    # --- Lookup

    def get_cache(self, cache_id: int) -> Cache:
        return self.caches.get(cache_id)

    def list_caches(self, cache_filter: CacheFilter | None = None, **criteria: Any) -> list[Cache]:
        """Caches matching every given criterion; DELETED ones only when asked."""
        if cache_filter is None:
            try:
                cache_filter = CacheFilter(**criteria)
            except ValidationError as e:
                raise InvalidRequest(f'Invalid cache filter: {e}') from e
        return self.caches.search(cache_filter)

    def find_within_bounds(
        self, bbox: BoundingBox | tuple[float, float, float, float]
    ) -> list[Cache]:
        """Non-deleted caches whose region intersects the query rectangle."""
        if not isinstance(bbox, BoundingBox):
            try:
                bbox = BoundingBox(
                    min_lon=bbox[0], min_lat=bbox[1], max_lon=bbox[2], max_lat=bbox[3]
                )
            except (ValidationError, IndexError, TypeError) as e:
                raise InvalidRegion(f'Invalid query rectangle: {bbox!r}') from e
        rect = bbox.as_tuple()
        return [
            c
            for c in self.caches.bbox_candidates(rect)
            if rect_intersects_ring(rect, c.bounds)
        ]

    def find_containing_point(self, lon: float, lat: float) -> list[Cache]:
        """Non-deleted caches whose region strictly contains the point."""
        try:
            point = BoundingBox(min_lon=lon, min_lat=lat, max_lon=lon, max_lat=lat)
        except ValidationError as e:
            raise InvalidRequest(f'Invalid point: ({lon}, {lat})') from e
        return [
            c
            for c in self.caches.bbox_candidates(point.as_tuple())
            if point_in_ring((lon, lat), c.bounds)
        ]

    def list_tiles(
        self,
        cache_id: int,
        *,
        zoom: int | None = None,
        status: TileStatus | None = None,
        page: int = 0,
        size: int | None = None,
    ) -> TilePage:
        self.caches.get(cache_id)
        kwargs: dict[str, Any] = {'zoom': zoom, 'status': status, 'page': page}
        if size is not None:
            kwargs['size'] = size
        return self.index.list_tiles(cache_id, **kwargs)

    def get_tile_bytes(self, cache_id: int, z: int, x: int, y: int) -> bytes:
        """Offline bytes of one tile; records the access on tile and cache."""
        self.caches.get(cache_id)
        data = self.index.read_tile(cache_id, z, x, y)
        self.caches.update(cache_id, last_accessed_at=self.clock())
        return data

    # --- Progress bookkeeping

    def record_progress(self, cache_id: int, progress: TileProgress) -> None:
        """Store aggregate counters derived from tile state."""
        total = progress.total
        self.caches.update(
            cache_id,
            downloaded_tiles=progress.completed,
            failed_tiles=progress.failed,
            cache_size_bytes=progress.completed_bytes,
            download_progress=progress.completed / total if total else 0.0,
        )

    def transition(self, cache_id: int, target: CacheStatus, **fields: Any) -> Cache:
        return self.caches.transition(cache_id, target, **fields)

    # --- Deletion and expiry

    def delete_cache(self, cache_id: int) -> Cache:
        """Remove tiles, sessions and files; the cache row stays as DELETED.

        Raises:
            Busy: A download session is active.
        """
        cache = self.caches.get(cache_id)
        if cache.status == CacheStatus.DELETED:
            return cache
        if self.sessions.active(cache_id) is not None:
            msg = f'Cache {cache_id} has an active download session'
            raise Busy(msg)
        with self.db.transaction():
            self.db.execute('DELETE FROM tiles WHERE cache_id = ?', (cache_id,))
            self.sessions.delete_for_cache(cache_id)
            self.db.execute('DELETE FROM purge_queue WHERE cache_id = ?', (cache_id,))
            cache = self.caches.transition(
                cache_id,
                CacheStatus.DELETED,
                downloaded_tiles=0,
                failed_tiles=0,
                cache_size_bytes=0,
                download_progress=0.0,
            )
        try:
            self.index.storage.delete_cache_dir(cache_id)
        except OSError:
            logger.exception('Cache %d: failed to remove tile files', cache_id)
        logger.info("Cache %d '%s' deleted", cache_id, cache.name)
        return cache

    def set_expiry(self, cache_id: int, expires_at: datetime | None) -> Cache:
        cache = self.caches.get(cache_id)
        if cache.status in (CacheStatus.EXPIRED, CacheStatus.DELETED):
            msg = f'Cache {cache_id} is {cache.status.value}'
            raise Conflict(msg)
        self.caches.update(cache_id, expires_at=expires_at)
        return self.caches.get(cache_id)

    def expired_candidates(self, now: datetime | None = None) -> list[Cache]:
        return self.caches.expired(now or self.clock())

    def cleanup_expired(self, now: datetime | None = None) -> list[int]:
        """Expire caches with ``expires_at < now`` and queue their tiles for removal.

        Sessions still running in another process are cancelled. Running it
        again is a no-op.
        """
        now = now or self.clock()
        expired: list[int] = []
        for cache in self.caches.expired(now):
            with self.db.transaction():
                session = self.sessions.latest(cache.id)
                if session is not None and (
                    session.is_active or session.status == SessionStatus.PAUSED
                ):
                    self.sessions.transition(
                        session, SessionStatus.CANCELLED, error_message='cache expired'
                    )
                self.index.mark_cache_tiles(cache.id, TileStatus.EXPIRED)
                self.caches.transition(cache.id, CacheStatus.EXPIRED)
                self.db.execute(
                    'INSERT OR IGNORE INTO purge_queue (cache_id, reason, scheduled_at) '
                    'VALUES (?, ?, ?)',
                    (cache.id, CacheStatus.EXPIRED.value, to_db_time(now)),
                )
            expired.append(cache.id)
            logger.info(
                "Cache %d '%s' expired (expires_at=%s)", cache.id, cache.name, cache.expires_at
            )
        return expired

    def purge_expired(self) -> int:
        """Physically remove tile rows and files queued by :meth:`cleanup_expired`."""
        rows = self.db.fetch_all('SELECT cache_id FROM purge_queue ORDER BY scheduled_at')
        purged = 0
        for row in rows:
            cache_id = row['cache_id']
            try:
                removed = self.index.purge(cache_id)
            except OSError as e:
                msg = f'Failed to purge tiles of cache {cache_id}: {e}'
                raise StorageError(msg) from e
            self.db.execute('DELETE FROM purge_queue WHERE cache_id = ?', (cache_id,))
            purged += 1
            logger.info('Cache %d: purged %d expired tiles', cache_id, removed)
        return purged

    def pending_purges(self) -> list[int]:
        return [r['cache_id'] for r in self.db.fetch_all('SELECT cache_id FROM purge_queue')]

    # --- Integrity

    def verify_cache(self, cache_id: int) -> int:
        """Re-hash stored tiles; damaged ones become CORRUPTED.

        Returns:
            Number of tiles found corrupted.

        Raises:
            Busy: A download session is active.
        """
        cache = self.caches.get(cache_id)
        if self.sessions.active(cache_id) is not None:
            msg = f'Cache {cache_id} has an active download session'
            raise Busy(msg)
        corrupted = self.index.verify(cache_id)
        if corrupted:
            progress = self.index.progress(cache_id, self.settings.max_retries)
            self.record_progress(cache_id, progress)
            if cache.status == CacheStatus.COMPLETED:
                self.caches.transition(cache_id, CacheStatus.CORRUPTED)
            logger.warning('Cache %d: %d corrupted tiles found', cache_id, corrupted)
        else:
            logger.info('Cache %d: all stored tiles verified', cache_id)
        return corrupted
