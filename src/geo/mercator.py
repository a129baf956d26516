"""Web Mercator (EPSG:3857) XYZ tile grid math."""

from __future__ import annotations

import math

from shared.constants import (
    MAX_ZOOM,
    MERCATOR_MAX_LAT_DEG,
    MIN_ZOOM,
    TILE_SIZE,
    WORLD_LAT_MAX_DEG,
    WORLD_LNG_HALF_SPAN_DEG,
    WORLD_LNG_SPAN_DEG,
    XY_EPSILON,
)


def clamp_lat(lat_deg: float) -> float:
    return min(max(lat_deg, -MERCATOR_MAX_LAT_DEG), MERCATOR_MAX_LAT_DEG)


def tiles_per_axis(zoom: int) -> int:
    return 1 << zoom


def is_valid_zoom(zoom: object) -> bool:
    return (
        isinstance(zoom, int)
        and not isinstance(zoom, bool)
        and MIN_ZOOM <= zoom <= MAX_ZOOM
    )


def latlng_to_pixel_xy(lat_deg: float, lng_deg: float, zoom: int) -> tuple[float, float]:
    """WGS84 (lat, lng) to Web Mercator world pixels at ``zoom``."""
    siny = math.sin(math.radians(clamp_lat(lat_deg)))
    world_size = TILE_SIZE * tiles_per_axis(zoom)
    x = (lng_deg + WORLD_LNG_HALF_SPAN_DEG) / WORLD_LNG_SPAN_DEG * world_size
    y = (0.5 - math.log((1 + siny) / (1 - siny)) / (4 * math.pi)) * world_size
    return x, y


def pixel_xy_to_latlng(x: float, y: float, zoom: int) -> tuple[float, float]:
    """Inverse of :func:`latlng_to_pixel_xy`."""
    world_size = TILE_SIZE * tiles_per_axis(zoom)
    lng = (x / world_size) * WORLD_LNG_SPAN_DEG - WORLD_LNG_HALF_SPAN_DEG
    merc_y = 0.5 - (y / world_size)
    lat = (
        WORLD_LAT_MAX_DEG
        - WORLD_LNG_SPAN_DEG * math.atan(math.exp(-merc_y * 2 * math.pi)) / math.pi
    )
    return lat, lng


def tile_bounds(z: int, x: int, y: int) -> tuple[float, float, float, float]:
    """Lon/lat rectangle of a tile: (min_lon, min_lat, max_lon, max_lat)."""
    north, west = pixel_xy_to_latlng(x * TILE_SIZE, y * TILE_SIZE, z)
    south, east = pixel_xy_to_latlng((x + 1) * TILE_SIZE, (y + 1) * TILE_SIZE, z)
    return west, south, east, north


def tile_center(z: int, x: int, y: int) -> tuple[float, float]:
    """Centre of a tile as (lon, lat)."""
    lat, lng = pixel_xy_to_latlng((x + 0.5) * TILE_SIZE, (y + 0.5) * TILE_SIZE, z)
    return lng, lat


def tile_range(
    bbox: tuple[float, float, float, float], zoom: int
) -> tuple[int, int, int, int]:
    """Inclusive tile index range (x_min, y_min, x_max, y_max) covering ``bbox``.

    A bbox edge lying exactly on a tile boundary does not pull in the
    neighbouring tile.
    """
    min_lon, min_lat, max_lon, max_lat = bbox
    t = tiles_per_axis(zoom)
    # North edge gives the smallest y
    x0_world, y0_world = latlng_to_pixel_xy(max_lat, min_lon, zoom)
    x1_world, y1_world = latlng_to_pixel_xy(min_lat, max_lon, zoom)

    x_min = math.floor(x0_world / float(TILE_SIZE))
    y_min = math.floor(y0_world / float(TILE_SIZE))
    x_max = math.floor((x1_world - XY_EPSILON) / float(TILE_SIZE))
    y_max = math.floor((y1_world - XY_EPSILON) / float(TILE_SIZE))

    x_min = max(0, min(t - 1, x_min))
    y_min = max(0, min(t - 1, y_min))
    x_max = max(x_min, min(t - 1, x_max))
    y_max = max(y_min, min(t - 1, y_max))
    return x_min, y_min, x_max, y_max
