"""Cache and download-session records on top of :class:`OfflineMapDatabase`."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any

from domain.errors import CacheNotFound, Conflict, SessionNotFound
from domain.models import Cache, CacheFilter, DownloadConfig, DownloadSession, utc_now
from domain.states import ACTIVE_SESSION_STATUSES, CacheStatus, SessionStatus, ensure_transition
from tiles.database import (
    OfflineMapDatabase,
    from_db_time,
    from_json,
    to_db_time,
    to_json,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

_CACHE_TIME_FIELDS = (
    'download_started_at',
    'download_completed_at',
    'last_accessed_at',
    'expires_at',
    'created_at',
    'updated_at',
)
_CACHE_UPDATABLE = frozenset(
    {
        'name',
        'description',
        'status',
        'total_tiles',
        'downloaded_tiles',
        'failed_tiles',
        'cache_size_bytes',
        'download_progress',
        'download_started_at',
        'download_completed_at',
        'last_accessed_at',
        'expires_at',
        'metadata',
    }
)

_SESSION_TIME_FIELDS = (
    'estimated_completion_time',
    'started_at',
    'completed_at',
    'created_at',
    'updated_at',
)
_SESSION_UPDATABLE = frozenset(
    {
        'status',
        'downloaded_tiles',
        'failed_tiles',
        'progress_percentage',
        'download_speed_bytes_per_sec',
        'estimated_completion_time',
        'started_at',
        'completed_at',
        'error_message',
        'retry_count',
        'metadata',
    }
)

_ACTIVE_SQL = ', '.join(f"'{s.value}'" for s in ACTIVE_SESSION_STATUSES)


def _db_value(name: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return to_db_time(value)
    if name == 'metadata':
        return to_json(value or {})
    if hasattr(value, 'value'):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def cache_from_row(row: sqlite3.Row) -> Cache:
    data = dict(row)
    data['bounds'] = [tuple(p) for p in from_json(data['bounds'], [])]
    data['zoom_levels'] = from_json(data['zoom_levels'], [])
    data['metadata'] = from_json(data['metadata'], {})
    data['is_compressed'] = bool(data['is_compressed'])
    for name in _CACHE_TIME_FIELDS:
        data[name] = from_db_time(data[name])
    return Cache.model_validate(data)


def session_from_row(row: sqlite3.Row) -> DownloadSession:
    data = dict(row)
    data['download_config'] = from_json(data['download_config'], {})
    data['metadata'] = from_json(data['metadata'], {})
    for name in _SESSION_TIME_FIELDS:
        data[name] = from_db_time(data[name])
    return DownloadSession.model_validate(data)


class CacheRepository:
    def __init__(self, db: OfflineMapDatabase, clock: Clock = utc_now) -> None:
        self.db = db
        self.clock = clock

    def insert(self, values: dict[str, Any]) -> int:
        now = self.clock()
        record = {'created_at': now, 'updated_at': now, **values}
        record['bounds'] = to_json([list(p) for p in record['bounds']])
        record['zoom_levels'] = to_json(list(record['zoom_levels']))
        columns = list(record)
        params = [_db_value(name, record[name]) for name in columns]
        placeholders = ', '.join('?' for _ in columns)
        return self.db.insert(
            f'INSERT INTO caches ({", ".join(columns)}) VALUES ({placeholders})',
            params,
        )

    def find(self, cache_id: int) -> Cache | None:
        row = self.db.fetch_one('SELECT * FROM caches WHERE id = ?', (cache_id,))
        return None if row is None else cache_from_row(row)

    def get(self, cache_id: int) -> Cache:
        cache = self.find(cache_id)
        if cache is None:
            raise CacheNotFound(f'Offline map cache not found: {cache_id}')
        return cache

    def update(
        self,
        cache_id: int,
        *,
        expected_status: CacheStatus | None = None,
        **fields: Any,
    ) -> bool:
        """Update columns; with ``expected_status`` only if the status still matches."""
        unknown = set(fields) - _CACHE_UPDATABLE
        if unknown:
            msg = f'Not updatable cache fields: {sorted(unknown)}'
            raise ValueError(msg)
        fields['updated_at'] = self.clock()
        assignments = ', '.join(f'{name} = ?' for name in fields)
        params = [_db_value(name, value) for name, value in fields.items()]
        sql = f'UPDATE caches SET {assignments} WHERE id = ?'
        params.append(cache_id)
        if expected_status is not None:
            sql += ' AND status = ?'
            params.append(expected_status.value)
        return self.db.execute(sql, params) == 1

    def transition(self, cache_id: int, target: CacheStatus, **fields: Any) -> Cache:
        """Validated status change, compare-and-set against the stored status."""
        cache = self.get(cache_id)
        ensure_transition(f'cache {cache_id}', cache.status, target)
        if not self.update(cache_id, expected_status=cache.status, status=target, **fields):
            msg = f'Cache {cache_id} changed status concurrently'
            raise Conflict(msg)
        logger.debug('Cache %d: %s -> %s', cache_id, cache.status.value, target.value)
        return self.get(cache_id)

    def search(self, cache_filter: CacheFilter | None = None) -> list[Cache]:
        """Filtered listing by priority (most urgent first), then newest first."""
        f = cache_filter or CacheFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if f.status is not None:
            clauses.append('status = ?')
            params.append(f.status.value)
        elif not f.include_deleted:
            clauses.append('status != ?')
            params.append(CacheStatus.DELETED.value)
        if f.region_id is not None:
            clauses.append('region_id = ?')
            params.append(f.region_id)
        if f.map_type is not None:
            clauses.append('map_type = ?')
            params.append(f.map_type.value)
        if f.priority is not None:
            clauses.append('priority = ?')
            params.append(f.priority.value)
        if f.created_by is not None:
            clauses.append('created_by = ?')
            params.append(f.created_by)
        if f.name_contains:
            clauses.append("LOWER(name) LIKE ? ESCAPE '\\'")
            params.append(_like(f.name_contains))
        if f.region_name_contains:
            clauses.append("LOWER(region_name) LIKE ? ESCAPE '\\'")
            params.append(_like(f.region_name_contains))
        where = f'WHERE {" AND ".join(clauses)}' if clauses else ''
        rows = self.db.fetch_all(
            f'SELECT * FROM caches {where} '
            'ORDER BY priority_rank ASC, created_at DESC, id DESC',
            params,
        )
        return [cache_from_row(r) for r in rows]

    def bbox_candidates(self, rect: tuple[float, float, float, float]) -> list[Cache]:
        """Non-deleted caches whose stored bbox touches ``rect``."""
        min_lon, min_lat, max_lon, max_lat = rect
        rows = self.db.fetch_all(
            'SELECT * FROM caches WHERE status != ? '
            'AND min_lon <= ? AND max_lon >= ? AND min_lat <= ? AND max_lat >= ? '
            'ORDER BY priority_rank ASC, created_at DESC, id DESC',
            (CacheStatus.DELETED.value, max_lon, min_lon, max_lat, min_lat),
        )
        return [cache_from_row(r) for r in rows]

    def expired(self, now: datetime) -> list[Cache]:
        rows = self.db.fetch_all(
            'SELECT * FROM caches WHERE expires_at IS NOT NULL AND expires_at < ? '
            'AND status NOT IN (?, ?) ORDER BY id',
            (to_db_time(now), CacheStatus.DELETED.value, CacheStatus.EXPIRED.value),
        )
        return [cache_from_row(r) for r in rows]


def _like(text: str) -> str:
    escaped = text.lower().replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f'%{escaped}%'


class SessionRepository:
    def __init__(self, db: OfflineMapDatabase, clock: Clock = utc_now) -> None:
        self.db = db
        self.clock = clock

    def create(
        self,
        cache_id: int,
        *,
        total_tiles: int,
        config: DownloadConfig,
        downloaded_tiles: int = 0,
        failed_tiles: int = 0,
        metadata: dict[str, Any] | None = None,
    ) -> DownloadSession:
        """Insert a PENDING session.

        Raises:
            Conflict: The cache already has an active session.
        """
        now = self.clock()
        try:
            session_id = self.db.insert(
                'INSERT INTO download_sessions (cache_id, download_id, status, '
                'total_tiles, downloaded_tiles, failed_tiles, progress_percentage, '
                'started_at, max_retries, download_config, metadata, created_at, '
                'updated_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
                (
                    cache_id,
                    uuid.uuid4().hex,
                    SessionStatus.PENDING.value,
                    total_tiles,
                    downloaded_tiles,
                    failed_tiles,
                    progress_percentage(downloaded_tiles, total_tiles),
                    to_db_time(now),
                    config.max_retries,
                    to_json(config.model_dump()),
                    to_json(metadata or {}),
                    to_db_time(now),
                    to_db_time(now),
                ),
            )
        except sqlite3.IntegrityError as e:
            msg = f'Cache {cache_id} already has an active download session'
            raise Conflict(msg) from e
        return self.get(session_id)

    def get(self, session_id: int) -> DownloadSession:
        row = self.db.fetch_one(
            'SELECT * FROM download_sessions WHERE id = ?', (session_id,)
        )
        if row is None:
            raise SessionNotFound(f'Download session not found: {session_id}')
        return session_from_row(row)

    def latest(self, cache_id: int) -> DownloadSession | None:
        row = self.db.fetch_one(
            'SELECT * FROM download_sessions WHERE cache_id = ? ORDER BY id DESC LIMIT 1',
            (cache_id,),
        )
        return None if row is None else session_from_row(row)

    def active(self, cache_id: int) -> DownloadSession | None:
        row = self.db.fetch_one(
            f'SELECT * FROM download_sessions WHERE cache_id = ? '
            f'AND status IN ({_ACTIVE_SQL})',
            (cache_id,),
        )
        return None if row is None else session_from_row(row)

    def list_active(self) -> list[DownloadSession]:
        rows = self.db.fetch_all(
            f'SELECT * FROM download_sessions WHERE status IN ({_ACTIVE_SQL}) ORDER BY id'
        )
        return [session_from_row(r) for r in rows]

    def list_for_cache(self, cache_id: int) -> list[DownloadSession]:
        rows = self.db.fetch_all(
            'SELECT * FROM download_sessions WHERE cache_id = ? ORDER BY id',
            (cache_id,),
        )
        return [session_from_row(r) for r in rows]

    def update(
        self,
        session_id: int,
        *,
        expected_status: SessionStatus | None = None,
        **fields: Any,
    ) -> bool:
        unknown = set(fields) - _SESSION_UPDATABLE
        if unknown:
            msg = f'Not updatable session fields: {sorted(unknown)}'
            raise ValueError(msg)
        fields['updated_at'] = self.clock()
        assignments = ', '.join(f'{name} = ?' for name in fields)
        params = [_db_value(name, value) for name, value in fields.items()]
        sql = f'UPDATE download_sessions SET {assignments} WHERE id = ?'
        params.append(session_id)
        if expected_status is not None:
            sql += ' AND status = ?'
            params.append(expected_status.value)
        try:
            return self.db.execute(sql, params) == 1
        except sqlite3.IntegrityError as e:
            msg = f'Download session {session_id} conflicts with another active session'
            raise Conflict(msg) from e

    def transition(
        self, session: DownloadSession, target: SessionStatus, **fields: Any
    ) -> DownloadSession:
        """Validated status change, compare-and-set against the stored status."""
        current = self.get(session.id)
        ensure_transition(f'session {current.download_id}', current.status, target)
        if target.is_terminal:
            fields.setdefault('completed_at', self.clock())
        if not self.update(current.id, expected_status=current.status, status=target, **fields):
            msg = f'Download session {current.download_id} changed status concurrently'
            raise Conflict(msg)
        logger.debug(
            'Session %s: %s -> %s', current.download_id, current.status.value, target.value
        )
        return self.get(current.id)

    def delete_for_cache(self, cache_id: int) -> int:
        return self.db.execute('DELETE FROM download_sessions WHERE cache_id = ?', (cache_id,))


def progress_percentage(done: int, total: int) -> float:
    """Session progress on a 0..100 scale."""
    return round(100.0 * done / total, 2) if total > 0 else 0.0
