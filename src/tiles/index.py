"""Per-tile identity, status and integrity metadata.

The tile status column is the only resource several workers write to. A
worker owns a tile between a successful :meth:`TileIndex.claim` and the
matching complete/fail/release call; ownership is a random claim token stored
with the row, so a stale worker can never settle a tile it lost.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterable
from datetime import datetime

from domain.errors import AlreadyClaimed, StorageError, TileNotFound
from domain.models import (
    Tile,
    TileClaim,
    TilePage,
    TileProgress,
    ZoomStatistics,
    utc_now,
)
from domain.states import TileStatus, ensure_transition
from shared.constants import TILE_PAGE_SIZE_DEFAULT, TILE_PAGE_SIZE_MAX
from tiles.database import OfflineMapDatabase, from_db_time, from_json, to_db_time
from tiles.pyramid import TileCell, build_tile_url
from tiles.storage import TileStorage, compute_checksum

logger = logging.getLogger(__name__)

_PENDING = TileStatus.PENDING.value
_DOWNLOADING = TileStatus.DOWNLOADING.value
_COMPLETED = TileStatus.COMPLETED.value
_FAILED = TileStatus.FAILED.value
_CORRUPTED = TileStatus.CORRUPTED.value

# PENDING, or FAILED/CORRUPTED with attempts left (bound: max_retries)
_CLAIMABLE_SQL = (
    f"(status = '{_PENDING}' OR "
    f"(status IN ('{_FAILED}', '{_CORRUPTED}') AND download_attempts < ?))"
)

_TIME_FIELDS = ('last_download_attempt', 'last_accessed_at', 'created_at', 'updated_at')


def tile_from_row(row: sqlite3.Row) -> Tile:
    data = dict(row)
    data['metadata'] = from_json(data['metadata'], {})
    data['is_compressed'] = bool(data['is_compressed'])
    for name in _TIME_FIELDS:
        data[name] = from_db_time(data[name])
    return Tile.model_validate(data)


class TileIndex:
    """Tile records of all caches plus their bytes in tile storage.

    Usage:
        index = TileIndex(db, FileTileStorage(root))
        claim = index.claim(tile_id, max_retries=3)
        tile = await index.complete(claim, data, compute_checksum(data))
    """

    def __init__(
        self,
        db: OfflineMapDatabase,
        storage: TileStorage,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.storage = storage
        self.clock = clock

    def _now(self) -> str | None:
        return to_db_time(self.clock())

    # --- Creation and lookup

    def add_tiles(
        self,
        cache_id: int,
        cells: Iterable[TileCell],
        *,
        url_template: str,
        tile_format: str,
        is_compressed: bool = False,
    ) -> int:
        """Insert one PENDING tile per grid cell; returns the number inserted."""
        now = self._now()
        rows = (
            (
                cache_id,
                c.z,
                c.x,
                c.y,
                c.key,
                build_tile_url(url_template, c.z, c.x, c.y),
                self.storage.tile_path(cache_id, c.z, c.x, c.y, tile_format),
                _PENDING,
                int(is_compressed),
                now,
                now,
            )
            for c in cells
        )
        return self.db.executemany(
            'INSERT INTO tiles (cache_id, z, x, y, tile_key, tile_url, file_path, '
            'status, is_compressed, created_at, updated_at) '
            'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)',
            rows,
        )

    def get(self, tile_id: int) -> Tile:
        row = self.db.fetch_one('SELECT * FROM tiles WHERE id = ?', (tile_id,))
        if row is None:
            raise TileNotFound(f'Tile not found: {tile_id}')
        return tile_from_row(row)

    def find(self, cache_id: int, z: int, x: int, y: int) -> Tile | None:
        row = self.db.fetch_one(
            'SELECT * FROM tiles WHERE cache_id = ? AND z = ? AND x = ? AND y = ?',
            (cache_id, z, x, y),
        )
        return None if row is None else tile_from_row(row)

    def list_tiles(
        self,
        cache_id: int,
        *,
        zoom: int | None = None,
        status: TileStatus | None = None,
        page: int = 0,
        size: int = TILE_PAGE_SIZE_DEFAULT,
    ) -> TilePage:
        """One page of a cache's tiles ordered by z, y, x."""
        page = max(0, page)
        size = max(1, min(size, TILE_PAGE_SIZE_MAX))
        clauses = ['cache_id = ?']
        params: list[object] = [cache_id]
        if zoom is not None:
            clauses.append('z = ?')
            params.append(zoom)
        if status is not None:
            clauses.append('status = ?')
            params.append(status.value)
        where = ' AND '.join(clauses)
        total = self.db.scalar(f'SELECT COUNT(*) FROM tiles WHERE {where}', params)
        rows = self.db.fetch_all(
            f'SELECT * FROM tiles WHERE {where} ORDER BY z, y, x LIMIT ? OFFSET ?',
            [*params, size, page * size],
        )
        return TilePage(
            items=[tile_from_row(r) for r in rows],
            page=page,
            size=size,
            total=int(total or 0),
        )

    def claimable(self, cache_id: int, max_retries: int) -> list[tuple[int, int, int, int]]:
        """(id, z, x, y) of tiles a worker may claim right now."""
        rows = self.db.fetch_all(
            f'SELECT id, z, x, y FROM tiles WHERE cache_id = ? AND {_CLAIMABLE_SQL}',
            (cache_id, max_retries),
        )
        return [(r['id'], r['z'], r['x'], r['y']) for r in rows]

    # --- Claim protocol

    def claim(self, tile_id: int, max_retries: int) -> TileClaim:
        """Atomically move a claimable tile to DOWNLOADING.

        Raises:
            AlreadyClaimed: The tile is not claimable any more (another worker
                won the race, it completed, or its attempts are exhausted).
        """
        token = uuid.uuid4().hex
        now = self._now()
        claimed = self.db.execute(
            f"UPDATE tiles SET previous_status = status, status = '{_DOWNLOADING}', "
            'claim_token = ?, last_download_attempt = ?, updated_at = ? '
            f'WHERE id = ? AND {_CLAIMABLE_SQL}',
            (token, now, now, tile_id, max_retries),
        )
        if claimed != 1:
            raise AlreadyClaimed(f'Tile {tile_id} is not claimable')
        tile = self.get(tile_id)
        return TileClaim(
            tile=tile,
            token=token,
            previous_status=tile.previous_status or TileStatus.PENDING,
        )

    def _settle(self, claim: TileClaim, assignments: str, params: Iterable[object]) -> Tile:
        settled = self.db.execute(
            f'UPDATE tiles SET {assignments}, previous_status = NULL, claim_token = NULL, '
            f"updated_at = ? WHERE id = ? AND status = '{_DOWNLOADING}' AND claim_token = ?",
            (*params, self._now(), claim.tile.id, claim.token),
        )
        if settled != 1:
            raise AlreadyClaimed(f'Claim on tile {claim.tile.tile_key} is no longer held')
        return self.get(claim.tile.id)

    async def complete(self, claim: TileClaim, data: bytes, content_hash: str) -> Tile:
        """Store the bytes and verify them against ``content_hash``.

        A match leaves the tile COMPLETED; a mismatch leaves it CORRUPTED with
        one more attempt counted and removes the stored file.

        Raises:
            StorageError: The bytes could not be written or read back.
            AlreadyClaimed: The claim was released or superseded meanwhile.
        """
        tile = claim.tile
        path = tile.file_path
        if not path:
            msg = f'Tile {tile.tile_key} has no storage path'
            raise StorageError(msg)
        try:
            await asyncio.to_thread(self.storage.write, path, data)
            written = await asyncio.to_thread(self.storage.read, path)
        except OSError as e:
            msg = f'Failed to store tile {tile.tile_key}: {e}'
            raise StorageError(msg) from e

        checksum = compute_checksum(written)
        if checksum == content_hash.lower():
            ensure_transition(f'tile {tile.tile_key}', TileStatus.DOWNLOADING, TileStatus.COMPLETED)
            return self._settle(
                claim,
                f"status = '{_COMPLETED}', file_path = ?, file_size_bytes = ?, "
                'checksum = ?, last_error = NULL',
                (path, len(written), checksum),
            )

        ensure_transition(f'tile {tile.tile_key}', TileStatus.DOWNLOADING, TileStatus.CORRUPTED)
        try:
            await asyncio.to_thread(self.storage.delete, path)
        except OSError:
            logger.warning('Could not remove corrupted tile file %s', path)
        logger.warning(
            'Tile %s checksum mismatch: expected %s, got %s',
            tile.tile_key,
            content_hash,
            checksum,
        )
        return self._settle(
            claim,
            f"status = '{_CORRUPTED}', download_attempts = download_attempts + 1, "
            'file_size_bytes = NULL, checksum = NULL, last_error = ?',
            (f'checksum mismatch: expected {content_hash}, got {checksum}',),
        )

    def fail(
        self,
        claim: TileClaim,
        reason: str,
        *,
        max_retries: int,
        permanent: bool = False,
    ) -> Tile:
        """Record a failed attempt; ``permanent`` exhausts the retry budget at once."""
        ensure_transition(f'tile {claim.tile.tile_key}', TileStatus.DOWNLOADING, TileStatus.FAILED)
        if permanent:
            attempts_sql = 'MAX(download_attempts + 1, ?)'
            params: tuple[object, ...] = (max_retries,)
        else:
            attempts_sql = 'download_attempts + 1'
            params = ()
        return self._settle(
            claim,
            f"status = '{_FAILED}', download_attempts = {attempts_sql}, "
            'last_download_attempt = ?, last_error = ?',
            (*params, self._now(), reason[:500]),
        )

    def release(self, claim: TileClaim) -> bool:
        """Give the tile back in its pre-claim status without counting an attempt."""
        released = self.db.execute(
            f"UPDATE tiles SET status = COALESCE(previous_status, '{_PENDING}'), "
            'previous_status = NULL, claim_token = NULL, updated_at = ? '
            f"WHERE id = ? AND status = '{_DOWNLOADING}' AND claim_token = ?",
            (self._now(), claim.tile.id, claim.token),
        )
        return released == 1

    def release_stale_claims(self, cache_id: int) -> int:
        """Revert every DOWNLOADING tile of a cache, e.g. after a crash."""
        released = self.db.execute(
            f"UPDATE tiles SET status = COALESCE(previous_status, '{_PENDING}'), "
            'previous_status = NULL, claim_token = NULL, updated_at = ? '
            f"WHERE cache_id = ? AND status = '{_DOWNLOADING}'",
            (self._now(), cache_id),
        )
        if released:
            logger.info('Cache %d: released %d stale tile claims', cache_id, released)
        return released

    def reset_attempts(self, cache_id: int) -> int:
        """Give unfinished tiles a fresh retry budget."""
        return self.db.execute(
            f"UPDATE tiles SET download_attempts = 0, updated_at = ? "
            f"WHERE cache_id = ? AND status IN ('{_FAILED}', '{_CORRUPTED}')",
            (self._now(), cache_id),
        )

    # --- Aggregates

    def progress(self, cache_id: int, max_retries: int) -> TileProgress:
        row = self.db.fetch_one(
            'SELECT COUNT(*) AS total, '
            f"COALESCE(SUM(status = '{_COMPLETED}'), 0) AS completed, "
            f"COALESCE(SUM(status IN ('{_FAILED}', '{_CORRUPTED}') "
            'AND download_attempts >= ?), 0) AS failed, '
            f"COALESCE(SUM(status = '{_CORRUPTED}' AND download_attempts >= ?), 0) "
            'AS corrupted, '
            f"COALESCE(SUM(CASE WHEN status = '{_COMPLETED}' THEN file_size_bytes END), 0) "
            'AS completed_bytes '
            'FROM tiles WHERE cache_id = ?',
            (max_retries, max_retries, cache_id),
        )
        return TileProgress(**dict(row)) if row is not None else TileProgress()

    def status_counts(self, cache_id: int) -> dict[TileStatus, int]:
        rows = self.db.fetch_all(
            'SELECT status, COUNT(*) AS n FROM tiles WHERE cache_id = ? GROUP BY status',
            (cache_id,),
        )
        return {TileStatus(r['status']): r['n'] for r in rows}

    def zoom_statistics(self, cache_id: int) -> list[ZoomStatistics]:
        rows = self.db.fetch_all(
            'SELECT z, COUNT(*) AS tile_count, '
            f"COALESCE(SUM(status = '{_COMPLETED}'), 0) AS completed_tiles, "
            f"COALESCE(SUM(CASE WHEN status = '{_COMPLETED}' THEN file_size_bytes END), 0) "
            'AS total_size_bytes, '
            f"COALESCE(AVG(CASE WHEN status = '{_COMPLETED}' THEN file_size_bytes END), 0) "
            'AS average_size_bytes '
            'FROM tiles WHERE cache_id = ? GROUP BY z ORDER BY z',
            (cache_id,),
        )
        return [
            ZoomStatistics(
                zoom=r['z'],
                tile_count=r['tile_count'],
                completed_tiles=r['completed_tiles'],
                total_size_bytes=r['total_size_bytes'],
                average_size_bytes=float(r['average_size_bytes']),
            )
            for r in rows
        ]

    def compressed_count(self, cache_id: int) -> int:
        return int(
            self.db.scalar(
                'SELECT COUNT(*) FROM tiles WHERE cache_id = ? AND is_compressed = 1',
                (cache_id,),
            )
            or 0
        )

    def count(self, cache_id: int) -> int:
        return int(self.db.scalar('SELECT COUNT(*) FROM tiles WHERE cache_id = ?', (cache_id,)) or 0)

    # --- Access and integrity

    def read_tile(self, cache_id: int, z: int, x: int, y: int) -> bytes:
        """Bytes of a COMPLETED tile; records the access time.

        A COMPLETED tile whose file has vanished is marked CORRUPTED.

        Raises:
            TileNotFound: No such tile, or it has not been downloaded.
        """
        tile = self.find(cache_id, z, x, y)
        if tile is None or tile.status != TileStatus.COMPLETED or not tile.file_path:
            msg = f'Tile {z}/{x}/{y} of cache {cache_id} is not available offline'
            raise TileNotFound(msg)
        try:
            data = self.storage.read(tile.file_path)
        except FileNotFoundError as e:
            self._mark_corrupted(tile, 'file missing')
            msg = f'Tile {tile.tile_key} of cache {cache_id} is missing from storage'
            raise TileNotFound(msg) from e
        self.db.execute(
            'UPDATE tiles SET last_accessed_at = ? WHERE id = ?', (self._now(), tile.id)
        )
        return data

    def _mark_corrupted(self, tile: Tile, reason: str) -> bool:
        ensure_transition(f'tile {tile.tile_key}', tile.status, TileStatus.CORRUPTED)
        marked = self.db.execute(
            f"UPDATE tiles SET status = '{_CORRUPTED}', file_size_bytes = NULL, "
            'checksum = NULL, last_error = ?, updated_at = ? '
            f"WHERE id = ? AND status = '{_COMPLETED}'",
            (reason, self._now(), tile.id),
        )
        if marked:
            logger.warning('Tile %s of cache %d marked corrupted: %s', tile.tile_key, tile.cache_id, reason)
        return marked == 1

    def verify(self, cache_id: int) -> int:
        """Re-hash stored files of COMPLETED tiles; returns how many were corrupted."""
        rows = self.db.fetch_all(
            f"SELECT * FROM tiles WHERE cache_id = ? AND status = '{_COMPLETED}'",
            (cache_id,),
        )
        corrupted = 0
        for row in rows:
            tile = tile_from_row(row)
            try:
                data = self.storage.read(tile.file_path or '')
            except FileNotFoundError:
                reason = 'file missing'
            else:
                if compute_checksum(data) == tile.checksum:
                    continue
                reason = 'checksum mismatch on verification'
            if self._mark_corrupted(tile, reason):
                corrupted += 1
        return corrupted

    # --- Bulk removal

    def mark_cache_tiles(self, cache_id: int, status: TileStatus) -> int:
        """Move all tiles of a cache to EXPIRED or DELETED."""
        return self.db.execute(
            'UPDATE tiles SET status = ?, previous_status = NULL, claim_token = NULL, '
            'updated_at = ? WHERE cache_id = ? AND status != ?',
            (status.value, self._now(), cache_id, status.value),
        )

    def purge(self, cache_id: int) -> int:
        """Delete tile rows and files of a cache; returns the number of rows removed."""
        removed = self.db.execute('DELETE FROM tiles WHERE cache_id = ?', (cache_id,))
        self.storage.delete_cache_dir(cache_id)
        logger.debug('Cache %d: purged %d tile rows', cache_id, removed)
        return removed
