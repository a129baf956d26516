from enum import Enum

# --- Web Mercator / XYZ tile grid
# Base tile size of the Web Mercator grid (px)
TILE_SIZE = 256
# Valid zoom range of the global tile grid
MIN_ZOOM = 0
MAX_ZOOM = 22
# Latitude limit of the Web Mercator projection (degrees)
MERCATOR_MAX_LAT_DEG = 85.0511287798066
WORLD_LNG_SPAN_DEG = 360.0
WORLD_LNG_HALF_SPAN_DEG = 180.0
WORLD_LAT_MAX_DEG = 90.0
# Small epsilon for computations on tile boundaries
XY_EPSILON = 1e-9
# Mean Earth radius for great-circle distances (metres)
EARTH_MEAN_RADIUS_M = 6371008.8
# Minimum absolute ring area (square degrees) for a region to be non-degenerate
MIN_REGION_AREA_DEG2 = 1e-12


class MapType(str, Enum):
    SATELLITE = 'SATELLITE'
    STREET_MAP = 'STREET_MAP'
    TERRAIN = 'TERRAIN'
    HYBRID = 'HYBRID'
    TOPOGRAPHIC = 'TOPOGRAPHIC'
    AERIAL = 'AERIAL'
    NIGHT = 'NIGHT'
    TRAFFIC = 'TRAFFIC'
    WEATHER = 'WEATHER'
    DISASTER_OVERLAY = 'DISASTER_OVERLAY'


class CachePriority(str, Enum):
    CRITICAL = 'CRITICAL'
    HIGH = 'HIGH'
    MEDIUM = 'MEDIUM'
    LOW = 'LOW'
    BACKGROUND = 'BACKGROUND'


class TileFormat(str, Enum):
    PNG = 'png'
    JPG = 'jpg'
    JPEG = 'jpeg'
    WEBP = 'webp'


# Listing order: lower rank first
PRIORITY_RANK: dict[CachePriority, int] = {
    CachePriority.CRITICAL: 0,
    CachePriority.HIGH: 1,
    CachePriority.MEDIUM: 2,
    CachePriority.LOW: 3,
    CachePriority.BACKGROUND: 4,
}

# Average size of one 256px PNG tile per map type (bytes), used for size estimates
AVERAGE_TILE_SIZE_BY_TYPE: dict[MapType, int] = {
    MapType.SATELLITE: 35_000,
    MapType.AERIAL: 38_000,
    MapType.HYBRID: 42_000,
    MapType.STREET_MAP: 15_000,
    MapType.TERRAIN: 20_000,
    MapType.TOPOGRAPHIC: 18_000,
    MapType.NIGHT: 10_000,
    MapType.TRAFFIC: 12_000,
    MapType.WEATHER: 8_000,
    MapType.DISASTER_OVERLAY: 6_000,
}

# Size multiplier of each image format relative to PNG
TILE_FORMAT_SIZE_FACTOR: dict[TileFormat, float] = {
    TileFormat.PNG: 1.0,
    TileFormat.JPG: 0.6,
    TileFormat.JPEG: 0.6,
    TileFormat.WEBP: 0.45,
}


def default_map_type() -> MapType:
    return MapType.SATELLITE


def average_tile_size_bytes(map_type: MapType, tile_format: TileFormat) -> int:
    """Returns the expected size of one tile for the given map type and format."""
    base = AVERAGE_TILE_SIZE_BY_TYPE[map_type]
    return round(base * TILE_FORMAT_SIZE_FACTOR[tile_format])


# --- Download defaults
# Parallel tile fetches per download session
DOWNLOAD_CONCURRENCY = 5
# Attempts per tile before it is left permanently failed
DOWNLOAD_MAX_RETRIES = 3
# Per-attempt fetch timeout (seconds)
TILE_TIMEOUT_SECONDS = 30.0
# Backoff before a retry: base * 2**(attempt - 1), capped
RETRY_BASE_DELAY_SECONDS = 0.5
RETRY_MAX_DELAY_SECONDS = 30.0
# Smoothing factor of the throughput moving average (0 < alpha <= 1)
THROUGHPUT_SMOOTHING = 0.3
# Upper bound on the pyramid size of a single cache
MAX_TILES_PER_CACHE = 250_000
# Log process memory every N completed tiles
LOG_MEMORY_EVERY_TILES = 50
# Warn when the storage volume has less free space than this (MB)
MIN_FREE_SPACE_MB = 100

# --- Storage
STORAGE_DIR = '.cache/offline-maps'
DATABASE_FILENAME = 'offline_maps.db'
LOG_DIR = '.cache/offline-maps/log'
LOG_FILENAME = 'offline_maps.log'
CONFIG_ENV_VAR = 'OFFLINE_MAPS_CONFIG'
# Suffix of partially written tile files
TILE_TEMP_SUFFIX = '.part'

# --- HTTP
HTTP_OK = 200
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403
HTTP_NOT_FOUND = 404
HTTP_GONE = 410
HTTP_TOO_MANY_REQUESTS = 429
HTTP_5XX_MIN = 500
HTTP_5XX_MAX = 600
HTTP_USER_AGENT = 'relief-offline-maps/1.0'
# Optional response header carrying the SHA-256 of the tile body
TILE_CHECKSUM_HEADER = 'X-Content-SHA256'

# --- Queries
STATISTICS_DEFAULT_WINDOW_DAYS = 30
TILE_PAGE_SIZE_DEFAULT = 100
TILE_PAGE_SIZE_MAX = 1000
