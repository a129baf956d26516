"""SQLite record store for caches, tiles and download sessions.

One database file holds all three record types. Connections run in WAL mode
with foreign keys enabled, so deleting a cache row cascades to its tiles and
sessions. Status changes that must be atomic across workers (and processes)
are single conditional UPDATE statements; multi-statement changes go through
:meth:`OfflineMapDatabase.transaction`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

logger = logging.getLogger(__name__)

SCHEMA = '''
    CREATE TABLE IF NOT EXISTS caches (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT NOT NULL,
        description TEXT,
        region_id INTEGER,
        region_name TEXT,
        bounds TEXT NOT NULL,
        min_lon REAL NOT NULL,
        min_lat REAL NOT NULL,
        max_lon REAL NOT NULL,
        max_lat REAL NOT NULL,
        zoom_levels TEXT NOT NULL,
        map_type TEXT NOT NULL,
        tile_source_url TEXT NOT NULL,
        tile_format TEXT NOT NULL,
        status TEXT NOT NULL,
        priority TEXT NOT NULL,
        priority_rank INTEGER NOT NULL,
        total_tiles INTEGER NOT NULL DEFAULT 0,
        downloaded_tiles INTEGER NOT NULL DEFAULT 0,
        failed_tiles INTEGER NOT NULL DEFAULT 0,
        cache_size_bytes INTEGER NOT NULL DEFAULT 0,
        estimated_size_bytes INTEGER NOT NULL DEFAULT 0,
        download_progress REAL NOT NULL DEFAULT 0,
        download_started_at TEXT,
        download_completed_at TEXT,
        last_accessed_at TEXT,
        expires_at TEXT,
        is_compressed INTEGER NOT NULL DEFAULT 0,
        compression_ratio REAL,
        created_by INTEGER,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (downloaded_tiles + failed_tiles <= total_tiles),
        CHECK (download_progress >= 0 AND download_progress <= 1)
    );

    CREATE INDEX IF NOT EXISTS idx_caches_region ON caches(region_id);
    CREATE INDEX IF NOT EXISTS idx_caches_status ON caches(status);
    CREATE INDEX IF NOT EXISTS idx_caches_expires ON caches(expires_at);
    CREATE INDEX IF NOT EXISTS idx_caches_created ON caches(created_at);
    CREATE INDEX IF NOT EXISTS idx_caches_bbox
        ON caches(min_lon, max_lon, min_lat, max_lat);

    CREATE TABLE IF NOT EXISTS tiles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        cache_id INTEGER NOT NULL REFERENCES caches(id) ON DELETE CASCADE,
        z INTEGER NOT NULL,
        x INTEGER NOT NULL,
        y INTEGER NOT NULL,
        tile_key TEXT NOT NULL,
        tile_url TEXT NOT NULL,
        file_path TEXT,
        file_size_bytes INTEGER,
        status TEXT NOT NULL,
        previous_status TEXT,
        claim_token TEXT,
        download_attempts INTEGER NOT NULL DEFAULT 0,
        last_download_attempt TEXT,
        last_accessed_at TEXT,
        checksum TEXT,
        last_error TEXT,
        is_compressed INTEGER NOT NULL DEFAULT 0,
        compression_ratio REAL,
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (cache_id, tile_key)
    );

    CREATE INDEX IF NOT EXISTS idx_tiles_cache_status ON tiles(cache_id, status);
    CREATE INDEX IF NOT EXISTS idx_tiles_cache_zoom ON tiles(cache_id, z);

    CREATE TABLE IF NOT EXISTS download_sessions (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        cache_id INTEGER NOT NULL REFERENCES caches(id) ON DELETE CASCADE,
        download_id TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL,
        total_tiles INTEGER NOT NULL DEFAULT 0,
        downloaded_tiles INTEGER NOT NULL DEFAULT 0,
        failed_tiles INTEGER NOT NULL DEFAULT 0,
        progress_percentage REAL NOT NULL DEFAULT 0,
        download_speed_bytes_per_sec INTEGER NOT NULL DEFAULT 0,
        estimated_completion_time TEXT,
        started_at TEXT,
        completed_at TEXT,
        error_message TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        max_retries INTEGER NOT NULL,
        download_config TEXT NOT NULL DEFAULT '{}',
        metadata TEXT NOT NULL DEFAULT '{}',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        CHECK (retry_count <= max_retries),
        CHECK (downloaded_tiles + failed_tiles <= total_tiles)
    );

    CREATE INDEX IF NOT EXISTS idx_sessions_cache ON download_sessions(cache_id);
    -- At most one PENDING/RUNNING/RETRYING session per cache
    CREATE UNIQUE INDEX IF NOT EXISTS ux_sessions_active
        ON download_sessions(cache_id)
        WHERE status IN ('PENDING', 'RUNNING', 'RETRYING');

    -- Caches whose tile rows and files are waiting for physical removal
    CREATE TABLE IF NOT EXISTS purge_queue (
        cache_id INTEGER PRIMARY KEY,
        reason TEXT NOT NULL,
        scheduled_at TEXT NOT NULL
    );
'''


def to_db_time(value: datetime | None) -> str | None:
    """Serialise a timestamp as sortable UTC ISO-8601 text."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec='microseconds')


def from_db_time(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def to_json(value: Any) -> str:
    return json.dumps(value, separators=(',', ':'), default=str)


def from_json(value: str | None, default: Any = None) -> Any:
    if not value:
        return default
    return json.loads(value)


class OfflineMapDatabase:
    """Thread-safe wrapper around one SQLite connection.

    Usage:
        db = OfflineMapDatabase('offline_maps.db')
        with db.transaction() as conn:
            conn.execute('UPDATE caches SET ...')
        db.close()
    """

    def __init__(self, db_path: str | Path = ':memory:') -> None:
        """Open (and create if needed) the database.

        Args:
            db_path: Database file, or ``':memory:'`` for a private in-memory
                database.
        """
        self.db_path = str(db_path)
        if self.db_path != ':memory:':
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode; explicit transactions are opened by transaction()
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._conn.execute('PRAGMA journal_mode=WAL')
        self._conn.execute('PRAGMA synchronous=NORMAL')
        self._conn.execute('PRAGMA foreign_keys=ON')
        self._conn.execute('PRAGMA busy_timeout=5000')
        self._conn.executescript(SCHEMA)
        logger.info('Offline map database opened at %s', self.db_path)

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block of statements atomically; nested blocks join the outer one."""
        with self._lock:
            outermost = self._depth == 0
            if outermost:
                self._conn.execute('BEGIN IMMEDIATE')
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if outermost:
                    self._conn.execute('ROLLBACK')
                raise
            self._depth -= 1
            if outermost:
                self._conn.execute('COMMIT')

    def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute one write statement; returns the affected row count."""
        with self._lock:
            return self._conn.execute(sql, params).rowcount

    def insert(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Execute an INSERT; returns the new row id."""
        with self._lock:
            cursor = self._conn.execute(sql, params)
            return int(cursor.lastrowid or 0)

    def executemany(self, sql: str, rows: Iterable[Sequence[Any]]) -> int:
        with self._lock:
            return self._conn.executemany(sql, rows).rowcount

    def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Row | None:
        with self._lock:
            return self._conn.execute(sql, params).fetchone()

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, params).fetchall()

    def scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = self.fetch_one(sql, params)
        return None if row is None else row[0]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug('Offline map database closed: %s', self.db_path)

    def __enter__(self) -> OfflineMapDatabase:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()
