"""Enumeration of the tile pyramid covering a region."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass

from domain.errors import InvalidZoomRange, TooManyTiles
from domain.models import LonLat, tile_key
from geo.mercator import is_valid_zoom, tile_bounds, tile_center, tile_range
from geo.spatial import (
    haversine_m,
    is_axis_aligned_rectangle,
    rect_intersects_ring,
    ring_bbox,
)
from shared.constants import MAX_ZOOM, MERCATOR_MAX_LAT_DEG, MIN_ZOOM

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TileCell:
    z: int
    x: int
    y: int

    @property
    def key(self) -> str:
        return tile_key(self.z, self.x, self.y)


def normalize_zoom_levels(zoom_levels: Iterable[object]) -> list[int]:
    """Sorted distinct zoom levels.

    Raises:
        InvalidZoomRange: Empty set, non-integer or out-of-grid level.
    """
    levels = list(zoom_levels or [])
    if not levels:
        raise InvalidZoomRange('at least one zoom level is required')
    for z in levels:
        if not is_valid_zoom(z):
            raise InvalidZoomRange(
                f'zoom level {z!r} outside the grid range {MIN_ZOOM}..{MAX_ZOOM}'
            )
    return sorted(set(levels))  # type: ignore[arg-type]


def upper_bound_tile_count(ring: Sequence[LonLat], zoom_levels: Sequence[int]) -> int:
    """Tile count of the region's bounding box; never less than the exact count."""
    bbox = grid_bbox(ring)
    if bbox is None:
        return 0
    total = 0
    for z in zoom_levels:
        x_min, y_min, x_max, y_max = tile_range(bbox, z)
        total += (x_max - x_min + 1) * (y_max - y_min + 1)
    return total


def grid_bbox(ring: Sequence[LonLat]) -> tuple[float, float, float, float] | None:
    """Region bbox clipped to the Web Mercator latitude band; None when nothing is left."""
    min_lon, min_lat, max_lon, max_lat = ring_bbox(ring)
    min_lat = max(min_lat, -MERCATOR_MAX_LAT_DEG)
    max_lat = min(max_lat, MERCATOR_MAX_LAT_DEG)
    if min_lat >= max_lat:
        return None
    return min_lon, min_lat, max_lon, max_lat


def iter_zoom_cells(ring: Sequence[LonLat], zoom: int) -> Iterator[TileCell]:
    """Grid cells of one zoom level sharing interior area with the region."""
    bbox = grid_bbox(ring)
    if bbox is None:
        return
    x_min, y_min, x_max, y_max = tile_range(bbox, zoom)
    rectangle = is_axis_aligned_rectangle(ring)
    for y in range(y_min, y_max + 1):
        for x in range(x_min, x_max + 1):
            if rectangle or rect_intersects_ring(tile_bounds(zoom, x, y), ring, strict=True):
                yield TileCell(zoom, x, y)


def enumerate_pyramid(
    ring: Sequence[LonLat],
    zoom_levels: Sequence[int],
    *,
    max_tiles: int | None = None,
) -> list[TileCell]:
    """All grid cells intersecting the region over the given zoom levels.

    Raises:
        TooManyTiles: The pyramid exceeds ``max_tiles``.
    """
    if max_tiles is not None:
        bound = upper_bound_tile_count(ring, zoom_levels)
        if bound > max_tiles:
            # The bbox bound is loose for non-rectangular regions; count exactly
            exact = sum(1 for z in zoom_levels for _ in iter_zoom_cells(ring, z))
            if exact > max_tiles:
                raise TooManyTiles(
                    f'region needs {exact} tiles, limit is {max_tiles}; '
                    'reduce the zoom levels or the region'
                )
    cells: list[TileCell] = []
    for z in zoom_levels:
        before = len(cells)
        cells.extend(iter_zoom_cells(ring, z))
        logger.debug('Zoom %d: %d tiles', z, len(cells) - before)
    return cells


def download_order_key(z: int, x: int, y: int, centroid: LonLat) -> tuple[int, float]:
    """Zoom ascending, then distance of the tile centre from the region centroid."""
    lon, lat = tile_center(z, x, y)
    return z, haversine_m(lat, lon, centroid[1], centroid[0])


def build_tile_url(template: str, z: int, x: int, y: int) -> str:
    """Substitute ``{z}``, ``{x}`` and ``{y}`` in a tile source template."""
    return (
        template.replace('{z}', str(z)).replace('{x}', str(x)).replace('{y}', str(y))
    )
