"""Tests for DownloadOrchestrator: sessions, retries, pause/resume and cancellation."""

from __future__ import annotations

import asyncio
from unittest.mock import patch

import pytest
from conftest import TILE_URL, make_request, tile_bytes

from domain.errors import Conflict, PermanentFetchError, TransientFetchError
from domain.models import DownloadConfig, utc_now
from domain.states import CacheStatus, SessionStatus, TileStatus
from tiles.fetcher import FetchedTile
from tiles.pyramid import build_tile_url
from tiles.storage import compute_checksum

# 2 x 5 tiles at zoom 3
TEN_TILE_BOUNDS = [(-1.0, -50.0), (1.0, 70.0)]


def _config(**overrides) -> DownloadConfig:
    values = {
        'concurrency': 4,
        'max_retries': 3,
        'tile_timeout_seconds': 2.0,
        'retry_base_delay_seconds': 0.0,
        'retry_max_delay_seconds': 0.0,
    }
    values.update(overrides)
    return DownloadConfig(**values)


async def _until(predicate, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            msg = 'condition not reached in time'
            raise AssertionError(msg)
        await asyncio.sleep(0.005)


def _assert_no_claims(index, cache_id):
    assert TileStatus.DOWNLOADING not in index.status_counts(cache_id)


def _assert_counters(registry, cache_id):
    cache = registry.get_cache(cache_id)
    assert cache.downloaded_tiles + cache.failed_tiles <= cache.total_tiles
    session = registry.sessions.latest(cache_id)
    if session is not None:
        assert session.downloaded_tiles + session.failed_tiles <= session.total_tiles


class TestFullDownload:
    """A healthy source fills the whole pyramid."""

    @pytest.mark.asyncio
    async def test_download_completes(self, registry, orchestrator, source, index):
        """Healthy source should complete every tile."""
        cache = registry.create_cache(make_request())
        session = await orchestrator.start(cache.id)
        assert session.status == SessionStatus.RUNNING
        assert registry.get_cache(cache.id).status == CacheStatus.DOWNLOADING

        session = await orchestrator.wait(cache.id)
        assert session.status == SessionStatus.COMPLETED
        assert session.downloaded_tiles == 5
        assert session.failed_tiles == 0
        assert session.progress_percentage == 100.0
        assert session.completed_at is not None

        cache = registry.get_cache(cache.id)
        assert cache.status == CacheStatus.COMPLETED
        assert cache.downloaded_tiles == 5
        assert cache.download_progress == 1.0
        assert cache.download_started_at is not None
        assert cache.download_completed_at is not None
        expected_bytes = sum(len(tile_bytes(url)) for url in source.calls)
        assert cache.cache_size_bytes == expected_bytes

        for tile in index.list_tiles(cache.id).items:
            assert tile.status == TileStatus.COMPLETED
            assert index.storage.read(tile.file_path) == tile_bytes(tile.tile_url)
            assert tile.checksum == compute_checksum(tile_bytes(tile.tile_url))
        assert not orchestrator.is_running(cache.id)

    @pytest.mark.asyncio
    async def test_each_tile_fetched_once(self, registry, orchestrator, source):
        """Each tile should be fetched once."""
        cache = registry.create_cache(make_request(bounds=TEN_TILE_BOUNDS, zoom_levels=[3]))
        await orchestrator.start(cache.id)
        await orchestrator.wait(cache.id)
        assert len(source.calls) == 10
        assert len(set(source.calls)) == 10

    @pytest.mark.asyncio
    async def test_lower_zoom_first(self, registry, orchestrator, source):
        """Lower zoom tiles should be fetched first."""
        cache = registry.create_cache(make_request())
        await orchestrator.start(cache.id, _config(concurrency=1))
        await orchestrator.wait(cache.id)
        assert source.calls[0] == build_tile_url(TILE_URL, 0, 0, 0)

    @pytest.mark.asyncio
    async def test_concurrency_bound(self, registry, orchestrator, source):
        """In-flight fetches should not exceed concurrency."""
        source.delay = 0.01
        cache = registry.create_cache(make_request(bounds=TEN_TILE_BOUNDS, zoom_levels=[3]))
        await orchestrator.start(cache.id, _config(concurrency=3))
        await orchestrator.wait(cache.id)
        assert 1 <= source.max_in_flight <= 3

    @pytest.mark.asyncio
    async def test_start_completed_cache_conflicts(self, registry, orchestrator):
        """Starting a completed cache should raise Conflict."""
        cache = registry.create_cache(make_request())
        await orchestrator.start(cache.id)
        await orchestrator.wait(cache.id)
        with pytest.raises(Conflict):
            await orchestrator.start(cache.id)

    @pytest.mark.asyncio
    async def test_second_start_conflicts(self, registry, orchestrator, source):
        """Starting twice should raise Conflict."""
        source.gate = asyncio.Event()
        cache = registry.create_cache(make_request())
        await orchestrator.start(cache.id)
        with pytest.raises(Conflict):
            await orchestrator.start(cache.id)
        source.gate.set()
        assert (await orchestrator.wait(cache.id)).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_deleted_cache_conflicts(self, registry, orchestrator):
        """Starting a deleted cache should raise Conflict."""
        cache = registry.create_cache(make_request())
        registry.delete_cache(cache.id)
        with pytest.raises(Conflict):
            await orchestrator.start(cache.id)


class TestFailures:
    """Permanent, transient and storage failures."""

    @pytest.mark.asyncio
    async def test_permanent_failures_fail_session(self, registry, orchestrator, source, index):
        """Permanent failures should fail the session without retries."""
        cache = registry.create_cache(make_request(bounds=TEN_TILE_BOUNDS, zoom_levels=[3]))
        broken = [t.tile_url for t in index.list_tiles(cache.id, size=2).items]
        for url in broken:
            source.script(url, PermanentFetchError('HTTP 404', status=404))

        await orchestrator.start(cache.id)
        session = await orchestrator.wait(cache.id)

        assert session.status == SessionStatus.FAILED
        assert session.downloaded_tiles == 8
        assert session.failed_tiles == 2
        assert session.error_message == '2 of 10 tiles failed to download'
        cache = registry.get_cache(cache.id)
        assert cache.status == CacheStatus.FAILED
        assert cache.downloaded_tiles == 8
        assert cache.failed_tiles == 2
        # Permanent errors are not retried
        assert all(source.calls_for(url) == 1 for url in broken)
        _assert_counters(registry, cache.id)
        _assert_no_claims(index, cache.id)

    @pytest.mark.asyncio
    async def test_transient_failure_retried(self, registry, orchestrator, source, index):
        """Transient failure should be retried."""
        cache = registry.create_cache(make_request())
        url = build_tile_url(TILE_URL, 1, 1, 1)
        source.script(url, TransientFetchError('HTTP 503', status=503), tile_bytes(url))

        await orchestrator.start(cache.id)
        session = await orchestrator.wait(cache.id)

        assert session.status == SessionStatus.COMPLETED
        assert session.retry_count == 1
        assert source.calls_for(url) == 2
        tile = index.find(cache.id, 1, 1, 1)
        assert tile.status == TileStatus.COMPLETED
        assert tile.download_attempts == 1

    @pytest.mark.asyncio
    async def test_retry_budget_exhausted(self, registry, orchestrator, source, index):
        """Tile should fail once the retry budget is spent."""
        cache = registry.create_cache(make_request())
        url = build_tile_url(TILE_URL, 1, 0, 0)
        source.script(url, TransientFetchError('HTTP 500', status=500))

        await orchestrator.start(cache.id)
        session = await orchestrator.wait(cache.id)

        assert source.calls_for(url) == 3
        assert session.status == SessionStatus.FAILED
        assert session.failed_tiles == 1
        assert session.retry_count == 2
        tile = index.find(cache.id, 1, 0, 0)
        assert tile.status == TileStatus.FAILED
        assert tile.download_attempts == 3
        assert 'HTTP 500' in tile.last_error

    @pytest.mark.asyncio
    async def test_unexpected_fetch_error_confined_to_tile(
        self, registry, orchestrator, source, index
    ):
        """An unforeseen source exception fails one tile, not the session."""
        cache = registry.create_cache(make_request())
        url = build_tile_url(TILE_URL, 1, 0, 0)
        source.script(url, ValueError('decoder blew up'))

        await orchestrator.start(cache.id)
        session = await orchestrator.wait(cache.id)

        assert source.calls_for(url) == 3
        assert session.status == SessionStatus.FAILED
        assert session.downloaded_tiles == 4
        assert session.failed_tiles == 1
        assert session.error_message == '1 of 5 tiles failed to download'
        tile = index.find(cache.id, 1, 0, 0)
        assert tile.status == TileStatus.FAILED
        assert 'ValueError: decoder blew up' in tile.last_error
        assert registry.get_cache(cache.id).status == CacheStatus.FAILED
        _assert_no_claims(index, cache.id)

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self, registry, orchestrator, source, index):
        """Timeout should count as a failed attempt."""
        source.delay = 0.5
        cache = registry.create_cache(make_request(zoom_levels=[0]))
        await orchestrator.start(cache.id, _config(tile_timeout_seconds=0.02, max_retries=2))
        session = await orchestrator.wait(cache.id)

        assert session.status == SessionStatus.FAILED
        assert len(source.calls) == 2
        tile = index.find(cache.id, 0, 0, 0)
        assert tile.status == TileStatus.FAILED
        assert 'TimeoutError' in tile.last_error

    @pytest.mark.asyncio
    async def test_checksum_mismatch_redownloaded(self, registry, orchestrator, source, index):
        """Corrupted tile should be downloaded again."""
        cache = registry.create_cache(make_request())
        url = build_tile_url(TILE_URL, 0, 0, 0)
        good = tile_bytes(url)
        source.script(
            url,
            FetchedTile(data=good[:-1], checksum=compute_checksum(good)),
            FetchedTile(data=good, checksum=compute_checksum(good)),
        )

        await orchestrator.start(cache.id)
        session = await orchestrator.wait(cache.id)

        assert session.status == SessionStatus.COMPLETED
        tile = index.find(cache.id, 0, 0, 0)
        assert tile.status == TileStatus.COMPLETED
        assert tile.checksum == compute_checksum(good)
        assert index.storage.read(tile.file_path) == good

    @pytest.mark.asyncio
    async def test_persistent_corruption_marks_cache_corrupted(
        self, registry, orchestrator, source
    ):
        """Persistent corruption should mark the cache CORRUPTED."""
        cache = registry.create_cache(make_request())
        url = build_tile_url(TILE_URL, 1, 0, 1)
        source.script(url, FetchedTile(data=b'short', checksum='0' * 64))

        await orchestrator.start(cache.id)
        session = await orchestrator.wait(cache.id)

        assert session.status == SessionStatus.FAILED
        assert registry.get_cache(cache.id).status == CacheStatus.CORRUPTED

    @pytest.mark.asyncio
    async def test_storage_failure_aborts_session(self, registry, orchestrator, index):
        """Storage failure should abort the session."""
        cache = registry.create_cache(make_request())
        with patch.object(index.storage, 'write', side_effect=OSError('disk full')):
            await orchestrator.start(cache.id)
            session = await orchestrator.wait(cache.id)

        assert session.status == SessionStatus.FAILED
        assert session.error_message.startswith('Download aborted: StorageError')
        assert 'disk full' in session.error_message
        assert registry.get_cache(cache.id).status == CacheStatus.FAILED
        _assert_no_claims(index, cache.id)

    @pytest.mark.asyncio
    async def test_restart_after_failure(self, registry, orchestrator, source, index):
        """A new start should finish a failed cache."""
        cache = registry.create_cache(make_request())
        url = build_tile_url(TILE_URL, 1, 1, 0)
        source.script(url, PermanentFetchError('HTTP 404', status=404), tile_bytes(url))
        await orchestrator.start(cache.id)
        assert (await orchestrator.wait(cache.id)).status == SessionStatus.FAILED

        # A new session gives unfinished tiles a fresh budget
        second = await orchestrator.start(cache.id)
        assert second.downloaded_tiles == 4
        session = await orchestrator.wait(cache.id)
        assert session.id == second.id
        assert session.status == SessionStatus.COMPLETED
        assert len(registry.sessions.list_for_cache(cache.id)) == 2


class TestProgressTelemetry:
    """Counters and throughput published while a session runs."""

    @pytest.mark.asyncio
    async def test_progress_never_decreases(self, registry, orchestrator, source, index):
        """Observed progress only grows and counters never exceed the total."""
        source.delay = 0.01
        cache = registry.create_cache(make_request(bounds=TEN_TILE_BOUNDS, zoom_levels=[3]))
        broken = index.list_tiles(cache.id, size=1).items[0].tile_url
        source.script(broken, PermanentFetchError('HTTP 404', status=404))
        samples = []

        def observe():
            c = registry.get_cache(cache.id)
            s = registry.sessions.latest(cache.id)
            samples.append((c, s))

        await orchestrator.start(cache.id, _config(concurrency=2))
        while orchestrator.is_running(cache.id):
            observe()
            await asyncio.sleep(0.002)
        await orchestrator.wait(cache.id)
        observe()

        assert len(samples) >= 3
        progress = [c.download_progress for c, _ in samples]
        assert progress == sorted(progress)
        assert all(0.0 <= p <= 1.0 for p in progress)
        percentages = [s.progress_percentage for _, s in samples]
        assert percentages == sorted(percentages)
        for c, s in samples:
            assert c.downloaded_tiles + c.failed_tiles <= c.total_tiles
            assert s.downloaded_tiles + s.failed_tiles <= s.total_tiles
        final_cache, final_session = samples[-1]
        assert final_cache.downloaded_tiles == 9
        assert final_cache.failed_tiles == 1
        assert final_session.status == SessionStatus.FAILED

    @pytest.mark.asyncio
    async def test_speed_and_eta_published(self, registry, orchestrator, source):
        """No ETA without throughput; speed and ETA once tiles arrive."""
        source.gate = asyncio.Event()
        cache = registry.create_cache(make_request(bounds=TEN_TILE_BOUNDS, zoom_levels=[3]))
        before = utc_now()
        await orchestrator.start(cache.id, _config(concurrency=1))
        await _until(lambda: source.in_flight == 1)

        idle = registry.sessions.latest(cache.id)
        assert idle.download_speed_bytes_per_sec == 0
        assert idle.estimated_completion_time is None

        source.delay = 0.02
        source.gate.set()
        snapshot = {}

        def partly_done():
            s = registry.sessions.latest(cache.id)
            if 3 <= s.downloaded_tiles < 10:
                snapshot['session'] = s
                return True
            return False

        await _until(partly_done)
        running = snapshot['session']
        assert running.download_speed_bytes_per_sec > 0
        assert running.estimated_completion_time is not None
        assert running.estimated_completion_time > before

        done = await orchestrator.wait(cache.id)
        assert done.status == SessionStatus.COMPLETED
        assert done.estimated_completion_time is None


class TestPauseResume:
    """Pause, resume and cancel keep tile state consistent."""

    @pytest.mark.asyncio
    async def test_pause_and_resume_reach_same_coverage(
        self, registry, orchestrator, source, index
    ):
        """Pause and resume should reach full coverage."""
        source.delay = 0.02
        cache = registry.create_cache(make_request(bounds=TEN_TILE_BOUNDS, zoom_levels=[3]))
        await orchestrator.start(cache.id, _config(concurrency=2))
        await _until(lambda: index.progress(cache.id, 3).completed >= 2)

        paused = await orchestrator.pause(cache.id)
        assert paused.status == SessionStatus.PAUSED
        assert registry.get_cache(cache.id).status == CacheStatus.PAUSED
        assert not orchestrator.is_running(cache.id)
        _assert_no_claims(index, cache.id)
        done_before = index.progress(cache.id, 3).completed
        assert 2 <= done_before < 10
        calls_before = len(source.calls)
        await asyncio.sleep(0.05)
        assert len(source.calls) == calls_before

        resumed = await orchestrator.resume(cache.id)
        assert resumed.id == paused.id
        assert resumed.status == SessionStatus.RUNNING
        session = await orchestrator.wait(cache.id)

        assert session.status == SessionStatus.COMPLETED
        assert session.downloaded_tiles == 10
        assert registry.get_cache(cache.id).status == CacheStatus.COMPLETED
        for tile in index.list_tiles(cache.id).items:
            assert index.storage.read(tile.file_path) == tile_bytes(tile.tile_url)
        # Tiles stored before the pause are not fetched again
        assert len(source.calls) - calls_before == 10 - done_before

    @pytest.mark.asyncio
    async def test_pause_releases_in_flight_claims(self, registry, orchestrator, source, index):
        """Pause should release in-flight claims."""
        source.gate = asyncio.Event()
        cache = registry.create_cache(make_request())
        await orchestrator.start(cache.id)
        await _until(lambda: source.in_flight == 4)

        await orchestrator.pause(cache.id)
        assert index.status_counts(cache.id) == {TileStatus.PENDING: 5}
        assert all(t.download_attempts == 0 for t in index.list_tiles(cache.id).items)

        source.gate.set()
        await orchestrator.resume(cache.id)
        assert (await orchestrator.wait(cache.id)).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_pause_without_session(self, registry, orchestrator):
        """Controls without a session should raise Conflict."""
        cache = registry.create_cache(make_request())
        with pytest.raises(Conflict):
            await orchestrator.pause(cache.id)
        with pytest.raises(Conflict):
            await orchestrator.resume(cache.id)
        with pytest.raises(Conflict):
            await orchestrator.cancel(cache.id)

    @pytest.mark.asyncio
    async def test_cancel_keeps_stored_tiles(self, registry, orchestrator, source, index):
        """Cancel should keep stored tiles."""
        source.gate = asyncio.Event()
        cache = registry.create_cache(make_request())
        await orchestrator.start(cache.id)
        await _until(lambda: source.in_flight > 0)

        cancelled = await orchestrator.cancel(cache.id)
        assert cancelled.status == SessionStatus.CANCELLED
        assert cancelled.completed_at is not None
        assert registry.get_cache(cache.id).status == CacheStatus.PAUSED
        _assert_no_claims(index, cache.id)
        with pytest.raises(Conflict):
            await orchestrator.resume(cache.id)

        source.gate.set()
        fresh = await orchestrator.start(cache.id)
        assert fresh.id != cancelled.id
        assert (await orchestrator.wait(cache.id)).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_start_supersedes_paused_session(self, registry, orchestrator, source):
        """Start should supersede a paused session."""
        source.gate = asyncio.Event()
        cache = registry.create_cache(make_request())
        first = await orchestrator.start(cache.id)
        await orchestrator.pause(cache.id)
        source.gate.set()

        second = await orchestrator.start(cache.id)
        await orchestrator.wait(cache.id)
        old = registry.sessions.get(first.id)
        assert old.status == SessionStatus.CANCELLED
        assert old.error_message == 'superseded by a new session'
        assert registry.sessions.get(second.id).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_shutdown_pauses_running_jobs(self, registry, orchestrator, source):
        """Shutdown should pause running jobs."""
        source.gate = asyncio.Event()
        cache = registry.create_cache(make_request())
        await orchestrator.start(cache.id)
        await orchestrator.shutdown()
        assert registry.sessions.latest(cache.id).status == SessionStatus.PAUSED
        assert not orchestrator.is_running(cache.id)


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recover_interrupted_session(self, registry, orchestrator, index):
        """Interrupted sessions should be paused and resumable."""
        cache = registry.create_cache(make_request())
        # Leftovers of a process that died mid-download
        session = registry.sessions.create(cache.id, total_tiles=5, config=_config())
        registry.sessions.transition(session, SessionStatus.RUNNING)
        registry.transition(cache.id, CacheStatus.DOWNLOADING)
        tile = index.list_tiles(cache.id, size=1).items[0]
        index.claim(tile.id, max_retries=3)

        assert orchestrator.recover_interrupted() == [cache.id]
        assert registry.sessions.get(session.id).status == SessionStatus.PAUSED
        assert registry.get_cache(cache.id).status == CacheStatus.PAUSED
        assert index.get(tile.id).status == TileStatus.PENDING
        assert orchestrator.recover_interrupted() == []

        await orchestrator.resume(cache.id)
        assert (await orchestrator.wait(cache.id)).status == SessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_external_cancel_stops_job(self, registry, orchestrator, source, index):
        """Cancelling the session elsewhere should stop the job."""
        cache = registry.create_cache(make_request())
        url = build_tile_url(TILE_URL, 0, 0, 0)
        source.script(url, TransientFetchError('HTTP 503', status=503), tile_bytes(url))
        source.delay = 0.02
        config = _config(retry_base_delay_seconds=0.5, retry_max_delay_seconds=0.5)
        await orchestrator.start(cache.id, config)
        await _until(
            lambda: registry.sessions.latest(cache.id).status == SessionStatus.RETRYING
        )
        # Another process closes the session while a retry is pending
        registry.sessions.transition(
            registry.sessions.latest(cache.id), SessionStatus.CANCELLED
        )
        await asyncio.wait_for(orchestrator.wait(cache.id), timeout=5)
        assert registry.sessions.latest(cache.id).status == SessionStatus.CANCELLED
        _assert_no_claims(index, cache.id)
