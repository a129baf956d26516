"""Concurrent, resumable tile downloads.

One :class:`_DownloadJob` runs per active session: a fixed pool of asyncio
workers drains a queue of tile ids, claims each tile through the Tile Index,
fetches it with a per-attempt timeout and stores it. Failed tiles come back
to the queue after a capped exponential backoff until their attempt budget
is spent. Every outcome is followed by one synchronous aggregation step that
recomputes the counters from tile state, so there is a single writer for
cache and session counters.

The job objects are only handles to running tasks; everything needed to
resume lives in the database.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timedelta

import aiohttp

from domain.errors import (
    AlreadyClaimed,
    Conflict,
    ConflictError,
    OfflineMapError,
    PermanentFetchError,
    StorageError,
    TransientFetchError,
)
from domain.models import Cache, DownloadConfig, DownloadSession, TileClaim, TileProgress, utc_now
from domain.settings import OfflineCacheSettings
from domain.states import CacheStatus, SessionStatus, TileStatus
from geo.spatial import ring_centroid
from services.cache_registry import CacheRegistry
from shared.diagnostics import has_free_space, log_memory_usage, log_storage_usage
from shared.progress import ThroughputMeter
from tiles.fetcher import FetchedTile, TileSource
from tiles.pyramid import download_order_key
from tiles.repositories import progress_percentage
from tiles.storage import compute_checksum

logger = logging.getLogger(__name__)


def _describe(error: BaseException) -> str:
    text = str(error)
    return f'{error.__class__.__name__}: {text}' if text else error.__class__.__name__


class _DownloadJob:
    """Worker pool of one running download session."""

    def __init__(
        self,
        orchestrator: DownloadOrchestrator,
        cache: Cache,
        session: DownloadSession,
    ) -> None:
        self.orchestrator = orchestrator
        self.index = orchestrator.index
        self.registry = orchestrator.registry
        self.sessions = orchestrator.registry.sessions
        self.cache_id = cache.id
        self.session = session
        self.config: DownloadConfig = session.download_config
        self.centroid = ring_centroid(cache.bounds)
        self.status = session.status
        self.retry_round = session.retry_count
        self.meter = ThroughputMeter(orchestrator.settings.throughput_smoothing)
        self.queue: asyncio.Queue[int | None] = asyncio.Queue()
        # Tiles queued, in flight or waiting for a retry
        self.outstanding = 0
        self.worker_count = 0
        self.fetches: set[asyncio.Future[FetchedTile]] = set()
        self.backoffs: set[asyncio.Task[None]] = set()
        self.stop_reason: SessionStatus | None = None
        self.error: BaseException | None = None
        self.stored_tiles = 0
        self.task: asyncio.Task[None] | None = None

    # --- Lifecycle

    def start(self) -> None:
        self.task = asyncio.create_task(
            self.run(), name=f'offline-cache-{self.cache_id}-{self.session.download_id}'
        )

    async def wait(self) -> None:
        if self.task is not None:
            await asyncio.shield(self.task)

    def halt(self, reason: SessionStatus) -> None:
        """Stop claiming, abort in-flight fetches and pending retries."""
        if self.stop_reason is not None:
            return
        self.stop_reason = reason
        while not self.queue.empty():
            self.queue.get_nowait()
        for fetch in list(self.fetches):
            fetch.cancel()
        for backoff in list(self.backoffs):
            backoff.cancel()
        for _ in range(self.worker_count):
            self.queue.put_nowait(None)

    def abort(self, error: BaseException) -> None:
        if self.error is None:
            self.error = error
        self.halt(SessionStatus.FAILED)

    async def run(self) -> None:
        try:
            await self._run()
        except Exception as e:
            logger.exception('Session %s: download job crashed', self.session.download_id)
            self._fail_session(e)
        finally:
            self.orchestrator._forget(self)

    async def _run(self) -> None:
        if self.stop_reason is not None:
            # Halted before the first tile was queued
            self._publish()
            return
        max_retries = self.config.max_retries
        entries = self.index.claimable(self.cache_id, max_retries)
        entries.sort(key=lambda e: download_order_key(e[1], e[2], e[3], self.centroid))
        for tile_id, _z, _x, _y in entries:
            self.queue.put_nowait(tile_id)
        self.outstanding = len(entries)
        self.worker_count = min(self.config.concurrency, self.outstanding)
        logger.info(
            'Session %s: %d tiles queued for cache %d, %d workers',
            self.session.download_id,
            self.outstanding,
            self.cache_id,
            self.worker_count,
        )
        self._publish()
        if self.worker_count:
            workers = [
                asyncio.create_task(self._worker(n)) for n in range(self.worker_count)
            ]
            await asyncio.gather(*workers)
        for backoff in list(self.backoffs):
            backoff.cancel()

        if self.error is not None:
            self._fail_session(self.error)
        elif self.stop_reason is None:
            self._finish()
        else:
            self._publish()
            logger.info(
                'Session %s: workers stopped (%s)',
                self.session.download_id,
                self.stop_reason.value,
            )

    # --- Workers

    async def _worker(self, n: int) -> None:
        while True:
            tile_id = await self.queue.get()
            if tile_id is None:
                logger.debug('Session %s: worker %d done', self.session.download_id, n)
                return
            if self.stop_reason is not None:
                continue
            try:
                await self._process(tile_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(
                    'Session %s: unexpected error on tile %d', self.session.download_id, tile_id
                )
                self.abort(e)

    async def _process(self, tile_id: int) -> None:
        try:
            claim = self.index.claim(tile_id, self.config.max_retries)
        except AlreadyClaimed:
            # Lost the race or nothing left to do; move on
            logger.debug('Tile %d already claimed, skipping', tile_id)
            self._settled()
            return
        try:
            await self._download(claim)
        except BaseException:
            self.index.release(claim)
            raise

    async def _download(self, claim: TileClaim) -> None:
        tile = claim.tile
        fetch = asyncio.ensure_future(
            asyncio.wait_for(
                self.orchestrator.source.fetch(tile.tile_url),
                timeout=self.config.tile_timeout_seconds,
            )
        )
        self.fetches.add(fetch)
        try:
            fetched = await fetch
        except asyncio.CancelledError:
            self.index.release(claim)
            current = asyncio.current_task()
            if self.stop_reason is None or (current is not None and current.cancelling()):
                raise
            return
        except PermanentFetchError as e:
            self._failed(claim, _describe(e), permanent=True)
            return
        except (TransientFetchError, TimeoutError, aiohttp.ClientError, OSError) as e:
            self._failed(claim, _describe(e))
            return
        except Exception as e:
            # Unexpected source errors stay confined to the tile
            logger.warning(
                'Tile %s: unexpected fetch error: %s', tile.tile_key, _describe(e), exc_info=True
            )
            self._failed(claim, _describe(e))
            return
        finally:
            self.fetches.discard(fetch)

        if self.stop_reason is not None:
            self.index.release(claim)
            return

        checksum = fetched.checksum or compute_checksum(fetched.data)
        try:
            stored = await self.index.complete(claim, fetched.data, checksum)
        except StorageError as e:
            self.index.release(claim)
            logger.exception(
                'Session %s: storage failure on tile %s', self.session.download_id, tile.tile_key
            )
            self.abort(e)
            return
        except AlreadyClaimed:
            self._settled()
            return

        if stored.status == TileStatus.COMPLETED:
            self._succeeded(stored.file_size_bytes or 0, tile.tile_key)
        else:
            self._after_failure(stored.id, stored.download_attempts, tile.tile_key)

    # --- Outcomes

    def _failed(self, claim: TileClaim, reason: str, *, permanent: bool = False) -> None:
        try:
            tile = self.index.fail(
                claim, reason, max_retries=self.config.max_retries, permanent=permanent
            )
        except AlreadyClaimed:
            self._settled()
            return
        logger.warning(
            'Tile %s of cache %d failed (attempt %d/%d%s): %s',
            tile.tile_key,
            self.cache_id,
            min(tile.download_attempts, self.config.max_retries),
            self.config.max_retries,
            ', permanent' if permanent else '',
            reason,
        )
        self._after_failure(tile.id, tile.download_attempts, tile.tile_key)

    def _after_failure(self, tile_id: int, attempts: int, key: str) -> None:
        if attempts < self.config.max_retries and self.stop_reason is None:
            delay = self.config.backoff_delay(attempts)
            logger.debug('Tile %s retry %d in %.2fs', key, attempts, delay)
            self._schedule_retry(tile_id, attempts, delay)
        else:
            self._settled()
        self._publish()

    def _succeeded(self, nbytes: int, key: str) -> None:
        self.meter.record(nbytes)
        self.stored_tiles += 1
        logger.debug('Tile %s of cache %d stored (%d bytes)', key, self.cache_id, nbytes)
        every = self.orchestrator.settings.log_memory_every_tiles
        if every and self.stored_tiles % every == 0:
            log_memory_usage(f'cache {self.cache_id}: {self.stored_tiles} tiles stored')
        self._settled()
        self._publish()

    def _settled(self) -> None:
        self.outstanding -= 1
        if self.outstanding <= 0 and self.stop_reason is None:
            for _ in range(self.worker_count):
                self.queue.put_nowait(None)

    # --- Retries

    def _schedule_retry(self, tile_id: int, attempts: int, delay: float) -> None:
        self._set_status(SessionStatus.RETRYING)
        task = asyncio.create_task(self._requeue_after(tile_id, attempts, delay))
        self.backoffs.add(task)
        task.add_done_callback(self.backoffs.discard)

    async def _requeue_after(self, tile_id: int, attempts: int, delay: float) -> None:
        await asyncio.sleep(delay)
        if self.stop_reason is not None:
            return
        self.queue.put_nowait(tile_id)
        if attempts > self.retry_round:
            self.retry_round = attempts
            self.sessions.update(self.session.id, retry_count=self.retry_round)
        current = asyncio.current_task()
        if not any(t is not current and not t.done() for t in self.backoffs):
            self._set_status(SessionStatus.RUNNING)

    def _set_status(self, target: SessionStatus) -> None:
        if self.stop_reason is not None or self.status == target:
            return
        try:
            self.session = self.sessions.transition(self.session, target)
        except ConflictError as e:
            # Session closed from outside (e.g. expiry sweep)
            logger.warning('Session %s: %s; stopping', self.session.download_id, e)
            self.halt(SessionStatus.CANCELLED)
            return
        self.status = target

    # --- Aggregation

    def _publish(self) -> TileProgress:
        """Recompute cache and session counters from tile state."""
        progress = self.index.progress(self.cache_id, self.config.max_retries)
        self.registry.record_progress(self.cache_id, progress)
        remaining = max(0, progress.total - progress.completed - progress.failed)
        eta = self.meter.eta_seconds(remaining)
        now = self.orchestrator.clock()
        self.sessions.update(
            self.session.id,
            downloaded_tiles=progress.completed,
            failed_tiles=progress.failed,
            progress_percentage=progress_percentage(progress.completed, progress.total),
            download_speed_bytes_per_sec=int(self.meter.bytes_per_second),
            estimated_completion_time=(
                now + timedelta(seconds=eta) if eta is not None and remaining else None
            ),
        )
        return progress

    def _finish(self) -> None:
        progress = self._publish()
        download_id = self.session.download_id
        try:
            self.registry.transition(self.cache_id, CacheStatus.UPDATING)
            if progress.unfinished == 0:
                self.sessions.transition(self.session, SessionStatus.COMPLETED)
                self.registry.transition(
                    self.cache_id,
                    CacheStatus.COMPLETED,
                    download_completed_at=self.orchestrator.clock(),
                    cache_size_bytes=progress.completed_bytes,
                )
                logger.info(
                    'Session %s completed: %d tiles, %d bytes',
                    download_id,
                    progress.completed,
                    progress.completed_bytes,
                )
                return
            message = f'{progress.failed} of {progress.total} tiles failed to download'
            skipped = progress.unfinished - progress.failed
            if skipped > 0:
                message += f'; {skipped} not downloaded'
            all_corrupted = progress.failed > 0 and progress.corrupted == progress.failed
            self.sessions.transition(self.session, SessionStatus.FAILED, error_message=message)
            self.registry.transition(
                self.cache_id,
                CacheStatus.CORRUPTED if all_corrupted and not skipped else CacheStatus.FAILED,
            )
            logger.warning('Session %s failed: %s', download_id, message)
        except ConflictError as e:
            logger.warning('Session %s: could not finalise: %s', download_id, e)

    def _fail_session(self, error: BaseException) -> None:
        message = f'Download aborted: {_describe(error)}'
        try:
            self._publish()
            session = self.sessions.get(self.session.id)
            if not session.status.is_terminal:
                self.sessions.transition(session, SessionStatus.FAILED, error_message=message)
            cache = self.registry.get_cache(self.cache_id)
            if cache.status.can_transition_to(CacheStatus.FAILED):
                self.registry.transition(self.cache_id, CacheStatus.FAILED)
        except OfflineMapError:
            logger.exception('Session %s: could not record failure', self.session.download_id)
        logger.error('Session %s: %s', self.session.download_id, message)


class DownloadOrchestrator:
    """Starts, pauses, resumes and cancels download sessions.

    Usage:
        orchestrator = DownloadOrchestrator(registry, HttpTileFetcher(), settings)
        await orchestrator.start(cache.id)
        session = await orchestrator.wait(cache.id)
    """

    def __init__(
        self,
        registry: CacheRegistry,
        source: TileSource,
        settings: OfflineCacheSettings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.registry = registry
        self.index = registry.index
        self.sessions = registry.sessions
        self.source = source
        self.settings = settings or registry.settings
        self.clock = clock
        self._jobs: dict[int, _DownloadJob] = {}

    def is_running(self, cache_id: int) -> bool:
        job = self._jobs.get(cache_id)
        return job is not None and job.task is not None and not job.task.done()

    def _launch(self, cache: Cache, session: DownloadSession) -> _DownloadJob:
        job = _DownloadJob(self, cache, session)
        self._jobs[cache.id] = job
        job.start()
        return job

    def _forget(self, job: _DownloadJob) -> None:
        if self._jobs.get(job.cache_id) is job:
            del self._jobs[job.cache_id]

    async def _settle_previous(self, cache_id: int) -> None:
        """Wait for a stopping job of the cache to release its claims."""
        job = self._jobs.get(cache_id)
        if job is not None and job.stop_reason is not None:
            await job.wait()

    def _check_storage(self, cache: Cache, progress: TileProgress) -> None:
        root = self.index.storage.root
        remaining = max(0, cache.total_tiles - progress.completed)
        needed = cache.estimated_size_bytes * remaining // max(1, cache.total_tiles)
        if not has_free_space(root, self.settings.min_free_space_mb, needed):
            logger.warning(
                'Cache %d: storage at %s may run out of space (~%d bytes needed)',
                cache.id,
                root,
                needed,
            )
        log_storage_usage(root, f'cache {cache.id}')

    async def start(self, cache_id: int, config: DownloadConfig | None = None) -> DownloadSession:
        """Start a new download session for the cache.

        Unfinished tiles get a fresh attempt budget; completed tiles are kept.

        Raises:
            Conflict: The cache has an active session, is already COMPLETED,
                or is EXPIRED/DELETED.
        """
        await self._settle_previous(cache_id)
        cache = self.registry.get_cache(cache_id)
        if cache.status == CacheStatus.COMPLETED:
            msg = f'Cache {cache_id} is already completed'
            raise Conflict(msg)
        if not cache.status.can_transition_to(CacheStatus.DOWNLOADING):
            msg = f'Cache {cache_id} cannot be downloaded while {cache.status.value}'
            raise Conflict(msg)
        if self.sessions.active(cache_id) is not None:
            msg = f'Cache {cache_id} already has an active download session'
            raise Conflict(msg)

        latest = self.sessions.latest(cache_id)
        if latest is not None and latest.status == SessionStatus.PAUSED:
            self.sessions.transition(
                latest, SessionStatus.CANCELLED, error_message='superseded by a new session'
            )
        config = config or self.settings.download_config()
        self.index.release_stale_claims(cache_id)
        self.index.reset_attempts(cache_id)
        progress = self.index.progress(cache_id, config.max_retries)
        self.registry.record_progress(cache_id, progress)

        session = self.sessions.create(
            cache_id,
            total_tiles=cache.total_tiles,
            config=config,
            downloaded_tiles=progress.completed,
            failed_tiles=progress.failed,
        )
        try:
            self._check_storage(cache, progress)
            cache = self.registry.transition(
                cache_id, CacheStatus.DOWNLOADING, download_started_at=self.clock()
            )
            session = self.sessions.transition(session, SessionStatus.RUNNING)
        except OfflineMapError as e:
            self.sessions.transition(session, SessionStatus.FAILED, error_message=_describe(e))
            raise
        logger.info(
            "Session %s started for cache %d '%s' (%d/%d tiles present)",
            session.download_id,
            cache_id,
            cache.name,
            progress.completed,
            cache.total_tiles,
        )
        self._launch(cache, session)
        return session

    async def pause(self, cache_id: int) -> DownloadSession:
        """Pause the active session; in-flight tiles revert to their previous status.

        Raises:
            Conflict: No active session.
        """
        session = self.sessions.active(cache_id)
        if session is None:
            msg = f'Cache {cache_id} has no active download session'
            raise Conflict(msg)
        session = self.sessions.transition(session, SessionStatus.PAUSED)
        cache = self.registry.get_cache(cache_id)
        if cache.status == CacheStatus.DOWNLOADING:
            self.registry.transition(cache_id, CacheStatus.PAUSED)
        await self._stop_job(cache_id, SessionStatus.PAUSED)
        logger.info('Session %s paused', session.download_id)
        return self.sessions.get(session.id)

    async def resume(self, cache_id: int) -> DownloadSession:
        """Continue the paused session with its counters and attempt budgets.

        Raises:
            Conflict: The latest session is not PAUSED.
        """
        await self._settle_previous(cache_id)
        session = self.sessions.latest(cache_id)
        if session is None or session.status != SessionStatus.PAUSED:
            msg = f'Cache {cache_id} has no paused download session'
            raise Conflict(msg)
        cache = self.registry.get_cache(cache_id)
        if cache.status != CacheStatus.DOWNLOADING and not cache.status.can_transition_to(
            CacheStatus.DOWNLOADING
        ):
            msg = f'Cache {cache_id} cannot be resumed while {cache.status.value}'
            raise Conflict(msg)
        self.index.release_stale_claims(cache_id)
        session = self.sessions.transition(session, SessionStatus.RUNNING)
        if cache.status != CacheStatus.DOWNLOADING:
            cache = self.registry.transition(cache_id, CacheStatus.DOWNLOADING)
        logger.info('Session %s resumed', session.download_id)
        self._launch(cache, session)
        return session

    async def cancel(self, cache_id: int) -> DownloadSession:
        """Stop the session for good; stored tiles are kept for a later start.

        Raises:
            Conflict: No active or paused session.
        """
        session = self.sessions.latest(cache_id)
        if session is None or not (session.is_active or session.status == SessionStatus.PAUSED):
            msg = f'Cache {cache_id} has no download session to cancel'
            raise Conflict(msg)
        session = self.sessions.transition(session, SessionStatus.CANCELLED)
        cache = self.registry.get_cache(cache_id)
        if cache.status == CacheStatus.DOWNLOADING:
            self.registry.transition(cache_id, CacheStatus.PAUSED)
        await self._stop_job(cache_id, SessionStatus.CANCELLED)
        logger.info('Session %s cancelled', session.download_id)
        return self.sessions.get(session.id)

    async def _stop_job(self, cache_id: int, reason: SessionStatus) -> None:
        job = self._jobs.get(cache_id)
        if job is not None:
            job.halt(reason)
            await job.wait()
        else:
            self.index.release_stale_claims(cache_id)

    async def wait(self, cache_id: int) -> DownloadSession | None:
        """Wait until the cache's running job stops; returns its latest session."""
        job = self._jobs.get(cache_id)
        if job is not None:
            await job.wait()
        return self.sessions.latest(cache_id)

    def recover_interrupted(self) -> list[int]:
        """Pause sessions left active by a process that is gone.

        Returns:
            Ids of the caches whose sessions were recovered.
        """
        recovered: list[int] = []
        for session in self.sessions.list_active():
            if session.cache_id in self._jobs:
                continue
            self.sessions.transition(session, SessionStatus.PAUSED)
            cache = self.registry.get_cache(session.cache_id)
            if cache.status == CacheStatus.DOWNLOADING:
                self.registry.transition(cache.id, CacheStatus.PAUSED)
            self.index.release_stale_claims(cache.id)
            recovered.append(cache.id)
            logger.info(
                'Session %s of cache %d recovered as PAUSED', session.download_id, cache.id
            )
        return recovered

    async def shutdown(self) -> None:
        """Pause every running session so it can be resumed later."""
        for cache_id in list(self._jobs):
            try:
                await self.pause(cache_id)
            except ConflictError:
                job = self._jobs.get(cache_id)
                if job is not None:
                    await job.wait()
