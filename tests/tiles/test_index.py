"""Tests for TileIndex: claim protocol, settlement and integrity."""

from concurrent.futures import ThreadPoolExecutor
from unittest.mock import patch

import pytest
from conftest import make_request

from domain.errors import AlreadyClaimed, StorageError, TileNotFound
from domain.states import TileStatus
from services.cache_registry import CacheRegistry
from tiles.database import OfflineMapDatabase
from tiles.index import TileIndex
from tiles.storage import compute_checksum


@pytest.fixture
def cache(registry):
    return registry.create_cache(make_request())


def _first_tile(index, cache):
    return index.list_tiles(cache.id, size=1).items[0]


class TestTileListing:
    def test_tiles_created_pending(self, index, cache):
        """Tiles should be created PENDING with URL and path."""
        page = index.list_tiles(cache.id)
        assert page.total == 5
        assert all(t.status == TileStatus.PENDING for t in page.items)
        assert page.items[0].tile_key == '0/0/0'
        assert page.items[0].tile_url == 'https://tiles.example.org/0/0/0.png'
        assert page.items[0].file_path == f'{cache.id}/0/0/0.png'

    def test_filters_and_pages(self, index, cache):
        """Listing should filter by zoom and paginate."""
        page = index.list_tiles(cache.id, zoom=1, size=3, page=1)
        assert page.total == 4
        assert page.pages == 2
        assert len(page.items) == 1
        assert all(t.z == 1 for t in page.items)

    def test_status_filter(self, index, cache):
        """Listing should filter by status."""
        assert index.list_tiles(cache.id, status=TileStatus.COMPLETED).total == 0

    def test_find_and_get(self, index, cache):
        """Tiles should be found by key and id."""
        tile = index.find(cache.id, 1, 1, 0)
        assert tile is not None
        assert index.get(tile.id).tile_key == '1/1/0'
        assert index.find(cache.id, 5, 0, 0) is None
        with pytest.raises(TileNotFound):
            index.get(99999)


class TestClaim:
    def test_claim_moves_to_downloading(self, index, cache):
        """Claim should move the tile to DOWNLOADING once."""
        tile = _first_tile(index, cache)
        claim = index.claim(tile.id, max_retries=3)
        assert claim.tile.status == TileStatus.DOWNLOADING
        assert claim.previous_status == TileStatus.PENDING
        with pytest.raises(AlreadyClaimed):
            index.claim(tile.id, max_retries=3)

    def test_exactly_once_under_concurrent_claimers(self, index, cache):
        """Concurrent claimers should win exactly once."""
        tile = _first_tile(index, cache)

        def attempt(_):
            try:
                index.claim(tile.id, max_retries=3)
            except AlreadyClaimed:
                return False
            return True

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(32)))
        assert results.count(True) == 1

    def test_exactly_once_across_connections(self, tmp_path, index, cache, storage):
        """Claims should hold across connections."""
        other = TileIndex(OfflineMapDatabase(index.db.db_path), storage)
        try:
            tile = _first_tile(index, cache)
            index.claim(tile.id, max_retries=3)
            with pytest.raises(AlreadyClaimed):
                other.claim(tile.id, max_retries=3)
        finally:
            other.db.close()

    def test_release_restores_previous_status(self, index, cache):
        """Release should restore the pre-claim status."""
        tile = _first_tile(index, cache)
        claim = index.claim(tile.id, max_retries=3)
        failed = index.fail(claim, 'HTTP 503', max_retries=3)
        claim = index.claim(failed.id, max_retries=3)
        assert claim.previous_status == TileStatus.FAILED
        assert index.release(claim) is True
        released = index.get(tile.id)
        assert released.status == TileStatus.FAILED
        assert released.download_attempts == 1
        assert index.release(claim) is False

    def test_stale_claim_cannot_settle(self, index, cache):
        """A released claim should not settle."""
        tile = _first_tile(index, cache)
        claim = index.claim(tile.id, max_retries=3)
        index.release_stale_claims(cache.id)
        with pytest.raises(AlreadyClaimed):
            index.fail(claim, 'late', max_retries=3)

    def test_exhausted_tile_not_claimable(self, index, cache):
        """Exhausted tiles should not be claimable."""
        tile = _first_tile(index, cache)
        claim = index.claim(tile.id, max_retries=3)
        index.fail(claim, 'HTTP 404', max_retries=3, permanent=True)
        assert index.get(tile.id).download_attempts == 3
        with pytest.raises(AlreadyClaimed):
            index.claim(tile.id, max_retries=3)
        assert tile.id not in [e[0] for e in index.claimable(cache.id, 3)]

    def test_reset_attempts_restores_budget(self, index, cache):
        """Resetting attempts should make tiles claimable again."""
        tile = _first_tile(index, cache)
        claim = index.claim(tile.id, max_retries=3)
        index.fail(claim, 'HTTP 404', max_retries=3, permanent=True)
        assert index.reset_attempts(cache.id) == 1
        assert index.claim(tile.id, max_retries=3).previous_status == TileStatus.FAILED


class TestComplete:
    @pytest.mark.asyncio
    async def test_matching_checksum_completes(self, index, cache, storage):
        """Matching checksum should complete the tile."""
        tile = _first_tile(index, cache)
        claim = index.claim(tile.id, max_retries=3)
        data = b'png-bytes'
        done = await index.complete(claim, data, compute_checksum(data))
        assert done.status == TileStatus.COMPLETED
        assert done.file_size_bytes == len(data)
        assert done.checksum == compute_checksum(data)
        assert storage.read(done.file_path) == data

    @pytest.mark.asyncio
    async def test_mismatch_marks_corrupted(self, index, cache, storage):
        """Mismatch should mark the tile CORRUPTED."""
        tile = _first_tile(index, cache)
        claim = index.claim(tile.id, max_retries=3)
        corrupted = await index.complete(claim, b'truncated', compute_checksum(b'full'))
        assert corrupted.status == TileStatus.CORRUPTED
        assert corrupted.download_attempts == 1
        assert 'checksum mismatch' in corrupted.last_error
        assert not storage.exists(tile.file_path)

    @pytest.mark.asyncio
    async def test_write_failure_raises_storage_error(self, index, cache):
        """Write failure should raise StorageError."""
        tile = _first_tile(index, cache)
        claim = index.claim(tile.id, max_retries=3)
        with patch.object(index.storage, 'write', side_effect=OSError('disk full')):
            with pytest.raises(StorageError, match='disk full'):
                await index.complete(claim, b'x', compute_checksum(b'x'))
        assert index.get(tile.id).status == TileStatus.DOWNLOADING


class TestProgressAndAccess:
    @pytest.mark.asyncio
    async def test_progress_counts(self, index, cache):
        """Progress should count completed and exhausted tiles."""
        tiles = index.list_tiles(cache.id).items
        claim = index.claim(tiles[0].id, max_retries=2)
        await index.complete(claim, b'abc', compute_checksum(b'abc'))
        claim = index.claim(tiles[1].id, max_retries=2)
        index.fail(claim, 'HTTP 404', max_retries=2, permanent=True)
        claim = index.claim(tiles[2].id, max_retries=2)
        index.fail(claim, 'HTTP 503', max_retries=2)

        progress = index.progress(cache.id, max_retries=2)
        assert progress.total == 5
        assert progress.completed == 1
        # Third tile still has an attempt left
        assert progress.failed == 1
        assert progress.completed_bytes == 3
        assert progress.unfinished == 4

    @pytest.mark.asyncio
    async def test_read_tile(self, index, cache):
        """Reading should return bytes and record access."""
        tile = index.find(cache.id, 1, 0, 1)
        claim = index.claim(tile.id, max_retries=3)
        await index.complete(claim, b'tile', compute_checksum(b'tile'))
        assert index.read_tile(cache.id, 1, 0, 1) == b'tile'
        assert index.get(tile.id).last_accessed_at is not None

    def test_read_missing_tile(self, index, cache):
        """Undownloaded tiles should raise TileNotFound."""
        with pytest.raises(TileNotFound):
            index.read_tile(cache.id, 1, 0, 1)
        with pytest.raises(TileNotFound):
            index.read_tile(cache.id, 9, 0, 0)

    @pytest.mark.asyncio
    async def test_vanished_file_marks_corrupted(self, index, cache, storage):
        """A missing file should mark the tile CORRUPTED."""
        tile = index.find(cache.id, 0, 0, 0)
        claim = index.claim(tile.id, max_retries=3)
        await index.complete(claim, b'tile', compute_checksum(b'tile'))
        storage.delete(tile.file_path)
        with pytest.raises(TileNotFound):
            index.read_tile(cache.id, 0, 0, 0)
        assert index.get(tile.id).status == TileStatus.CORRUPTED

    @pytest.mark.asyncio
    async def test_verify_detects_tampering(self, index, cache, storage):
        """Verification should catch changed files."""
        tile = index.find(cache.id, 0, 0, 0)
        claim = index.claim(tile.id, max_retries=3)
        await index.complete(claim, b'tile', compute_checksum(b'tile'))
        assert index.verify(cache.id) == 0
        storage.write(tile.file_path, b'tampered')
        assert index.verify(cache.id) == 1
        assert index.get(tile.id).status == TileStatus.CORRUPTED

    def test_zoom_statistics(self, index, cache):
        """Zoom statistics should count tiles per level."""
        stats = index.zoom_statistics(cache.id)
        assert [(s.zoom, s.tile_count) for s in stats] == [(0, 1), (1, 4)]
        assert index.status_counts(cache.id) == {TileStatus.PENDING: 5}
        assert index.count(cache.id) == 5


class _MemoryTileStorage:
    """Dict-backed tile storage."""

    def __init__(self, root):
        self.root = root
        self.files: dict[str, bytes] = {}
        self.dropped: list[int] = []

    def tile_path(self, cache_id, z, x, y, tile_format):
        return f'mem/{cache_id}/{z}-{x}-{y}.{tile_format}'

    def write(self, path, data):
        self.files[path] = data

    def read(self, path):
        try:
            return self.files[path]
        except KeyError:
            raise FileNotFoundError(path) from None

    def exists(self, path):
        return path in self.files

    def delete(self, path):
        return self.files.pop(path, None) is not None

    def delete_cache_dir(self, cache_id):
        prefix = f'mem/{cache_id}/'
        for path in [p for p in self.files if p.startswith(prefix)]:
            del self.files[path]
        self.dropped.append(cache_id)


class TestStorageSeam:
    @pytest.mark.asyncio
    async def test_index_runs_on_any_tile_storage(self, tmp_path, db, settings):
        """TileIndex only relies on the TileStorage protocol."""
        memory = _MemoryTileStorage(tmp_path)
        index = TileIndex(db, memory)
        cache = CacheRegistry(db, index, settings).create_cache(make_request())

        tile = index.find(cache.id, 0, 0, 0)
        assert tile.file_path == f'mem/{cache.id}/0-0-0.png'
        claim = index.claim(tile.id, max_retries=3)
        await index.complete(claim, b'tile', compute_checksum(b'tile'))
        assert index.read_tile(cache.id, 0, 0, 0) == b'tile'

        assert index.purge(cache.id) == 5
        assert memory.files == {}
        assert memory.dropped == [cache.id]
