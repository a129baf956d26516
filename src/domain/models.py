from __future__ import annotations

import math
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from domain.states import (
    ACTIVE_SESSION_STATUSES,
    CacheStatus,
    SessionStatus,
    TileStatus,
)
from shared.constants import (
    DOWNLOAD_CONCURRENCY,
    DOWNLOAD_MAX_RETRIES,
    RETRY_BASE_DELAY_SECONDS,
    RETRY_MAX_DELAY_SECONDS,
    TILE_TIMEOUT_SECONDS,
    WORLD_LAT_MAX_DEG,
    WORLD_LNG_HALF_SPAN_DEG,
    CachePriority,
    MapType,
    TileFormat,
    default_map_type,
)

# (longitude, latitude) in WGS84 degrees
LonLat = tuple[float, float]


def utc_now() -> datetime:
    """Default clock of the cache: timezone-aware UTC."""
    return datetime.now(UTC)


def tile_key(z: int, x: int, y: int) -> str:
    return f'{z}/{x}/{y}'


class BoundingBox(BaseModel):
    """Axis-aligned lon/lat rectangle; never wraps across the antimeridian."""

    min_lon: float
    min_lat: float
    max_lon: float
    max_lat: float

    @field_validator('min_lon', 'max_lon')
    @classmethod
    def _check_lon(cls, v: float) -> float:
        if not math.isfinite(v) or abs(v) > WORLD_LNG_HALF_SPAN_DEG:
            raise ValueError(f'longitude out of range: {v}')
        return v

    @field_validator('min_lat', 'max_lat')
    @classmethod
    def _check_lat(cls, v: float) -> float:
        if not math.isfinite(v) or abs(v) > WORLD_LAT_MAX_DEG:
            raise ValueError(f'latitude out of range: {v}')
        return v

    @model_validator(mode='after')
    def _check_order(self) -> BoundingBox:
        if self.min_lon > self.max_lon or self.min_lat > self.max_lat:
            raise ValueError('bounding box minimum exceeds maximum')
        return self

    @classmethod
    def from_corners(cls, a: LonLat, b: LonLat) -> BoundingBox:
        return cls(
            min_lon=min(a[0], b[0]),
            min_lat=min(a[1], b[1]),
            max_lon=max(a[0], b[0]),
            max_lat=max(a[1], b[1]),
        )

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.min_lon, self.min_lat, self.max_lon, self.max_lat)

    def to_ring(self) -> list[LonLat]:
        """Counter-clockwise ring without the closing vertex."""
        return [
            (self.min_lon, self.min_lat),
            (self.max_lon, self.min_lat),
            (self.max_lon, self.max_lat),
            (self.min_lon, self.max_lat),
        ]


class DownloadConfig(BaseModel):
    """Download parameters snapshotted into every session."""

    concurrency: int = Field(default=DOWNLOAD_CONCURRENCY, ge=1, le=64)
    max_retries: int = Field(default=DOWNLOAD_MAX_RETRIES, ge=1, le=20)
    tile_timeout_seconds: float = Field(default=TILE_TIMEOUT_SECONDS, gt=0)
    retry_base_delay_seconds: float = Field(default=RETRY_BASE_DELAY_SECONDS, ge=0)
    retry_max_delay_seconds: float = Field(default=RETRY_MAX_DELAY_SECONDS, ge=0)

    def backoff_delay(self, attempts: int) -> float:
        """Delay before the retry that follows the given number of attempts."""
        if attempts <= 0:
            return 0.0
        delay = self.retry_base_delay_seconds * (2 ** (attempts - 1))
        return min(delay, self.retry_max_delay_seconds)


class CacheRequest(BaseModel):
    """Caller input for a new cache.

    Enum-valued fields are kept as raw strings here so the registry can
    report unknown values with the dedicated domain errors.
    """

    model_config = {'extra': 'ignore'}

    name: str
    description: str | None = None
    region_id: int | None = None
    region_name: str | None = None
    # Polygon ring, two opposite corners, or a BoundingBox
    bounds: list[LonLat] | BoundingBox
    zoom_levels: list[int]
    map_type: str = default_map_type().value
    tile_source_url: str
    tile_format: str = TileFormat.PNG.value
    priority: str = CachePriority.MEDIUM.value
    is_compressed: bool = False
    compression_ratio: float | None = None
    created_by: int | None = None
    expires_at: datetime | None = None
    ttl_days: float | None = Field(default=None, gt=0)
    metadata: dict[str, Any] = Field(default_factory=dict)
    auto_start: bool = False

    @field_validator('name')
    @classmethod
    def _check_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError('cache name must not be empty')
        return v


class Cache(BaseModel):
    model_config = {'extra': 'ignore'}

    id: int
    name: str
    description: str | None = None
    region_id: int | None = None
    region_name: str | None = None
    bounds: list[LonLat]
    zoom_levels: list[int]
    map_type: MapType
    tile_source_url: str
    tile_format: TileFormat
    status: CacheStatus
    priority: CachePriority
    total_tiles: int = 0
    downloaded_tiles: int = 0
    failed_tiles: int = 0
    cache_size_bytes: int = 0
    estimated_size_bytes: int = 0
    download_progress: float = 0.0
    download_started_at: datetime | None = None
    download_completed_at: datetime | None = None
    last_accessed_at: datetime | None = None
    expires_at: datetime | None = None
    is_compressed: bool = False
    compression_ratio: float | None = None
    created_by: int | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class Tile(BaseModel):
    model_config = {'extra': 'ignore'}

    id: int
    cache_id: int
    z: int
    x: int
    y: int
    tile_key: str
    tile_url: str
    file_path: str | None = None
    file_size_bytes: int | None = None
    status: TileStatus
    previous_status: TileStatus | None = None
    download_attempts: int = 0
    last_download_attempt: datetime | None = None
    last_accessed_at: datetime | None = None
    checksum: str | None = None
    last_error: str | None = None
    is_compressed: bool = False
    compression_ratio: float | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime


class TileClaim(BaseModel):
    """Proof of a successful claim; required to settle the tile."""

    tile: Tile
    token: str
    previous_status: TileStatus


class TilePage(BaseModel):
    items: list[Tile]
    page: int
    size: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.size) if self.size else 0


class TileProgress(BaseModel):
    """Tile counts of one cache as seen by the download orchestrator."""

    total: int = 0
    completed: int = 0
    # FAILED/CORRUPTED with the attempt budget exhausted
    failed: int = 0
    corrupted: int = 0
    completed_bytes: int = 0

    @property
    def unfinished(self) -> int:
        return self.total - self.completed


class DownloadSession(BaseModel):
    model_config = {'extra': 'ignore'}

    id: int
    cache_id: int
    download_id: str
    status: SessionStatus
    total_tiles: int = 0
    downloaded_tiles: int = 0
    failed_tiles: int = 0
    # 0..100
    progress_percentage: float = 0.0
    download_speed_bytes_per_sec: int = 0
    estimated_completion_time: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = DOWNLOAD_MAX_RETRIES
    download_config: DownloadConfig = Field(default_factory=DownloadConfig)
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    updated_at: datetime

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_SESSION_STATUSES


class CacheFilter(BaseModel):
    """Conjunctive cache listing filter; unset fields match everything."""

    region_id: int | None = None
    status: CacheStatus | None = None
    map_type: MapType | None = None
    priority: CachePriority | None = None
    created_by: int | None = None
    name_contains: str | None = None
    region_name_contains: str | None = None
    include_deleted: bool = False


# --- Statistics


class StatusBreakdown(BaseModel):
    total_caches: int = 0
    by_status: dict[CacheStatus, int] = Field(default_factory=dict)
    total_size_bytes: int = 0
    average_progress: float = 0.0
    total_tiles: int = 0
    downloaded_tiles: int = 0
    failed_tiles: int = 0

    def count(self, status: CacheStatus) -> int:
        return self.by_status.get(status, 0)


class GlobalStatistics(StatusBreakdown):
    window_start: datetime
    window_end: datetime
    region_id: int | None = None


class RegionStatistics(StatusBreakdown):
    region_id: int | None = None
    region_name: str | None = None


class ZoomStatistics(BaseModel):
    zoom: int
    tile_count: int = 0
    completed_tiles: int = 0
    total_size_bytes: int = 0
    average_size_bytes: float = 0.0


class CacheStatistics(BaseModel):
    cache_id: int
    status: CacheStatus
    total_tiles: int
    tiles_by_status: dict[TileStatus, int] = Field(default_factory=dict)
    by_zoom: list[ZoomStatistics] = Field(default_factory=list)
    compressed_tiles: int = 0
    cache_size_bytes: int = 0
    download_progress: float = 0.0
    latest_session: DownloadSession | None = None
