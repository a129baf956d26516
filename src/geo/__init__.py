"""Geo module - web mercator tile math and region geometry."""

from .mercator import tile_bounds, tile_range
from .spatial import point_in_ring, rect_intersects_ring, validate_region

__all__ = [
    'point_in_ring',
    'rect_intersects_ring',
    'tile_bounds',
    'tile_range',
    'validate_region',
]
