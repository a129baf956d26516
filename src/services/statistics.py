"""Read-only rollups over caches, tiles and sessions.

All figures are computed by scanning the record store when asked; nothing is
maintained incrementally.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from domain.errors import InvalidRequest
from domain.models import (
    CacheStatistics,
    GlobalStatistics,
    RegionStatistics,
    StatusBreakdown,
    utc_now,
)
from domain.states import CacheStatus
from services.cache_registry import CacheRegistry
from shared.constants import STATISTICS_DEFAULT_WINDOW_DAYS
from tiles.database import OfflineMapDatabase, to_db_time

logger = logging.getLogger(__name__)

_DELETED = CacheStatus.DELETED.value

_TOTALS_SQL = (
    'COUNT(*) AS total_caches, '
    'COALESCE(SUM(cache_size_bytes), 0) AS total_size_bytes, '
    'COALESCE(AVG(download_progress), 0) AS average_progress, '
    'COALESCE(SUM(total_tiles), 0) AS total_tiles, '
    'COALESCE(SUM(downloaded_tiles), 0) AS downloaded_tiles, '
    'COALESCE(SUM(failed_tiles), 0) AS failed_tiles'
)


def _breakdown(totals: dict[str, Any], status_rows: list[Any]) -> dict[str, Any]:
    return {
        'total_caches': int(totals['total_caches'] or 0),
        'total_size_bytes': int(totals['total_size_bytes'] or 0),
        'average_progress': round(float(totals['average_progress'] or 0.0), 4),
        'total_tiles': int(totals['total_tiles'] or 0),
        'downloaded_tiles': int(totals['downloaded_tiles'] or 0),
        'failed_tiles': int(totals['failed_tiles'] or 0),
        'by_status': {CacheStatus(r['status']): int(r['n']) for r in status_rows},
    }


class StatisticsAggregator:
    """Global, regional and per-cache statistics.

    The time window applies to cache creation time; DELETED caches are
    left out of global and regional figures.
    """

    def __init__(
        self,
        db: OfflineMapDatabase,
        registry: CacheRegistry,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.registry = registry
        self.index = registry.index
        self.clock = clock

    def _window(
        self, start: datetime | None, end: datetime | None
    ) -> tuple[datetime, datetime]:
        end = end or self.clock()
        start = start or end - timedelta(days=STATISTICS_DEFAULT_WINDOW_DAYS)
        if start > end:
            msg = f'Statistics window starts after it ends: {start} > {end}'
            raise InvalidRequest(msg)
        return start, end

    def global_statistics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        region_id: int | None = None,
    ) -> GlobalStatistics:
        """Counts by status, total bytes and average progress of caches created in the window.

        Args:
            start: Window start; defaults to ``end`` minus 30 days.
            end: Window end (inclusive); defaults to now.
            region_id: Restrict to the caches of one region.
        """
        start, end = self._window(start, end)
        where = 'created_at >= ? AND created_at <= ? AND status != ?'
        params: list[Any] = [to_db_time(start), to_db_time(end), _DELETED]
        if region_id is not None:
            where += ' AND region_id = ?'
            params.append(region_id)

        totals = self.db.fetch_one(f'SELECT {_TOTALS_SQL} FROM caches WHERE {where}', params)
        status_rows = self.db.fetch_all(
            f'SELECT status, COUNT(*) AS n FROM caches WHERE {where} GROUP BY status',
            params,
        )
        stats = GlobalStatistics(
            window_start=start,
            window_end=end,
            region_id=region_id,
            **_breakdown(dict(totals) if totals is not None else {}, status_rows),
        )
        logger.debug(
            'Global statistics %s..%s: %d caches, %d bytes',
            start.isoformat(),
            end.isoformat(),
            stats.total_caches,
            stats.total_size_bytes,
        )
        return stats

    def regional_statistics(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[RegionStatistics]:
        """Same rollup as :meth:`global_statistics`, one entry per region.

        Entries are ordered by total size, largest first. Caches without a
        region are grouped under ``region_id=None``.
        """
        start, end = self._window(start, end)
        where = 'created_at >= ? AND created_at <= ? AND status != ?'
        params = [to_db_time(start), to_db_time(end), _DELETED]

        groups = self.db.fetch_all(
            f'SELECT region_id, MAX(region_name) AS region_name, {_TOTALS_SQL} '
            f'FROM caches WHERE {where} GROUP BY region_id '
            'ORDER BY total_size_bytes DESC, region_id',
            params,
        )
        status_rows = self.db.fetch_all(
            'SELECT region_id, status, COUNT(*) AS n FROM caches '
            f'WHERE {where} GROUP BY region_id, status',
            params,
        )
        by_region: dict[int | None, list[Any]] = {}
        for row in status_rows:
            by_region.setdefault(row['region_id'], []).append(row)

        return [
            RegionStatistics(
                region_id=g['region_id'],
                region_name=g['region_name'],
                **_breakdown(dict(g), by_region.get(g['region_id'], [])),
            )
            for g in groups
        ]

    def status_breakdown(self) -> StatusBreakdown:
        """All-time rollup, DELETED excluded."""
        totals = self.db.fetch_one(
            f'SELECT {_TOTALS_SQL} FROM caches WHERE status != ?', (_DELETED,)
        )
        status_rows = self.db.fetch_all(
            'SELECT status, COUNT(*) AS n FROM caches WHERE status != ? GROUP BY status',
            (_DELETED,),
        )
        return StatusBreakdown(
            **_breakdown(dict(totals) if totals is not None else {}, status_rows)
        )

    def cache_statistics(self, cache_id: int) -> CacheStatistics:
        """Tile counts by status and zoom, compressed tiles and latest session telemetry.

        Raises:
            CacheNotFound: Unknown id.
        """
        cache = self.registry.get_cache(cache_id)
        return CacheStatistics(
            cache_id=cache.id,
            status=cache.status,
            total_tiles=cache.total_tiles,
            tiles_by_status=self.index.status_counts(cache.id),
            by_zoom=self.index.zoom_statistics(cache.id),
            compressed_tiles=self.index.compressed_count(cache.id),
            cache_size_bytes=cache.cache_size_bytes,
            download_progress=cache.download_progress,
            latest_session=self.registry.sessions.latest(cache.id),
        )
