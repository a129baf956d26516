"""Pytest configuration and fixtures for offline map cache tests."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

# Add src directory to path for imports
src_path = Path(__file__).parent.parent / 'src'
sys.path.insert(0, str(src_path))

from domain.settings import OfflineCacheSettings  # noqa: E402
from services.cache_registry import CacheRegistry  # noqa: E402
from services.download_orchestrator import DownloadOrchestrator  # noqa: E402
from tiles.database import OfflineMapDatabase  # noqa: E402
from tiles.fetcher import FetchedTile  # noqa: E402
from tiles.index import TileIndex  # noqa: E402
from tiles.storage import FileTileStorage  # noqa: E402

TILE_URL = 'https://tiles.example.org/{z}/{x}/{y}.png'


def tile_bytes(url: str) -> bytes:
    """Deterministic payload served by FakeTileSource for ``url``."""
    return f'tile:{url}'.encode()


class FakeTileSource:
    """Fetch capability with scripted per-URL outcomes.

    An outcome is bytes, a FetchedTile or an exception instance. Outcomes of
    a URL are consumed in order; the last one repeats. URLs without a script
    succeed with :func:`tile_bytes`.
    """

    def __init__(self) -> None:
        self.outcomes: dict[str, list[object]] = {}
        self.calls: list[str] = []
        self.delay = 0.0
        self.gate: asyncio.Event | None = None
        self.in_flight = 0
        self.max_in_flight = 0

    def script(self, url: str, *outcomes: object) -> None:
        self.outcomes[url] = list(outcomes)

    def calls_for(self, url: str) -> int:
        return self.calls.count(url)

    async def fetch(self, url: str) -> FetchedTile:
        self.calls.append(url)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            queue = self.outcomes.get(url)
            if queue:
                outcome = queue.pop(0) if len(queue) > 1 else queue[0]
            else:
                outcome = tile_bytes(url)
        finally:
            self.in_flight -= 1
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, FetchedTile):
            return outcome
        return FetchedTile(data=outcome)  # type: ignore[arg-type]


def make_request(**overrides) -> dict:
    """Valid cache request: bbox (-1, -1)..(1, 1) at zooms 0 and 1 (5 tiles)."""
    request = {
        'name': 'Flood area',
        'region_id': 7,
        'region_name': 'Delta',
        'bounds': [(-1.0, -1.0), (1.0, 1.0)],
        'zoom_levels': [0, 1],
        'tile_source_url': TILE_URL,
        'map_type': 'SATELLITE',
        'tile_format': 'png',
        'priority': 'HIGH',
    }
    request.update(overrides)
    return request


@pytest.fixture
def settings(tmp_path):
    """Settings with instant retries and no periodic diagnostics."""
    return OfflineCacheSettings(
        storage_path=str(tmp_path / 'store'),
        log_dir=str(tmp_path / 'log'),
        concurrency=4,
        max_retries=3,
        tile_timeout_seconds=2.0,
        retry_base_delay_seconds=0.0,
        retry_max_delay_seconds=0.0,
        log_memory_every_tiles=0,
        min_free_space_mb=0,
    )


@pytest.fixture
def db(tmp_path):
    """File-backed SQLite record store."""
    database = OfflineMapDatabase(tmp_path / 'offline_maps.db')
    yield database
    database.close()


@pytest.fixture
def storage(tmp_path):
    return FileTileStorage(tmp_path / 'tiles')


@pytest.fixture
def index(db, storage):
    return TileIndex(db, storage)


@pytest.fixture
def registry(db, index, settings):
    return CacheRegistry(db, index, settings)


@pytest.fixture
def source():
    return FakeTileSource()


@pytest.fixture
def orchestrator(registry, source, settings):
    return DownloadOrchestrator(registry, source, settings)
