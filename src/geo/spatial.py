"""Planar geometry on WGS84 lon/lat for region polygons.

Regions are simple polygons given as a single ring of (lon, lat) vertices;
edges are straight lines in lon/lat space. Regions crossing the antimeridian
are rejected rather than wrapped.
"""

from __future__ import annotations

import math
from collections.abc import Sequence

from domain.errors import AntimeridianUnsupported, InvalidRegion
from domain.models import BoundingBox, LonLat
from shared.constants import (
    EARTH_MEAN_RADIUS_M,
    MIN_REGION_AREA_DEG2,
    WORLD_LAT_MAX_DEG,
    WORLD_LNG_HALF_SPAN_DEG,
)

Rect = tuple[float, float, float, float]

_EPS = 1e-12


def _cross(o: LonLat, a: LonLat, b: LonLat) -> float:
    return (a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0])


def _sign(v: float) -> int:
    if v > _EPS:
        return 1
    if v < -_EPS:
        return -1
    return 0


def _within_box(p: LonLat, a: LonLat, b: LonLat) -> bool:
    return (
        min(a[0], b[0]) - _EPS <= p[0] <= max(a[0], b[0]) + _EPS
        and min(a[1], b[1]) - _EPS <= p[1] <= max(a[1], b[1]) + _EPS
    )


def point_on_segment(p: LonLat, a: LonLat, b: LonLat) -> bool:
    return _sign(_cross(a, b, p)) == 0 and _within_box(p, a, b)


def segments_intersect(p1: LonLat, p2: LonLat, q1: LonLat, q2: LonLat) -> bool:
    """True when the closed segments share at least one point."""
    d1 = _sign(_cross(q1, q2, p1))
    d2 = _sign(_cross(q1, q2, p2))
    d3 = _sign(_cross(p1, p2, q1))
    d4 = _sign(_cross(p1, p2, q2))
    if d1 * d2 < 0 and d3 * d4 < 0:
        return True
    return (
        (d1 == 0 and _within_box(p1, q1, q2))
        or (d2 == 0 and _within_box(p2, q1, q2))
        or (d3 == 0 and _within_box(q1, p1, p2))
        or (d4 == 0 and _within_box(q2, p1, p2))
    )


def segments_cross(p1: LonLat, p2: LonLat, q1: LonLat, q2: LonLat) -> bool:
    """True only for a proper crossing at a single interior point of both."""
    d1 = _sign(_cross(q1, q2, p1))
    d2 = _sign(_cross(q1, q2, p2))
    d3 = _sign(_cross(p1, p2, q1))
    d4 = _sign(_cross(p1, p2, q2))
    return d1 * d2 < 0 and d3 * d4 < 0


def ring_edges(ring: Sequence[LonLat]) -> list[tuple[LonLat, LonLat]]:
    n = len(ring)
    return [(ring[i], ring[(i + 1) % n]) for i in range(n)]


def signed_area(ring: Sequence[LonLat]) -> float:
    """Shoelace area in square degrees; positive for counter-clockwise rings."""
    total = 0.0
    for a, b in ring_edges(ring):
        total += a[0] * b[1] - b[0] * a[1]
    return total / 2.0


def ring_centroid(ring: Sequence[LonLat]) -> LonLat:
    area = signed_area(ring)
    if abs(area) < MIN_REGION_AREA_DEG2:
        n = len(ring)
        return (sum(p[0] for p in ring) / n, sum(p[1] for p in ring) / n)
    cx = cy = 0.0
    for a, b in ring_edges(ring):
        f = a[0] * b[1] - b[0] * a[1]
        cx += (a[0] + b[0]) * f
        cy += (a[1] + b[1]) * f
    return (cx / (6.0 * area), cy / (6.0 * area))


def ring_bbox(ring: Sequence[LonLat]) -> Rect:
    lons = [p[0] for p in ring]
    lats = [p[1] for p in ring]
    return (min(lons), min(lats), max(lons), max(lats))


def is_simple(ring: Sequence[LonLat]) -> bool:
    """No two non-adjacent edges touch and no edge folds back onto its neighbour."""
    edges = ring_edges(ring)
    n = len(edges)
    for i in range(n):
        a, b = edges[i]
        _, c = edges[(i + 1) % n]
        # Spike: consecutive collinear edges pointing back
        if _sign(_cross(a, b, c)) == 0:
            dot = (b[0] - a[0]) * (c[0] - b[0]) + (b[1] - a[1]) * (c[1] - b[1])
            if dot < 0:
                return False
    for i in range(n):
        for j in range(i + 1, n):
            if j == i + 1 or (i == 0 and j == n - 1):
                continue
            if segments_intersect(edges[i][0], edges[i][1], edges[j][0], edges[j][1]):
                return False
    return True


def _normalize_points(points: Sequence[Sequence[float]]) -> list[LonLat]:
    ring: list[LonLat] = []
    for point in points:
        if len(point) != 2:
            raise InvalidRegion(f'vertex must be a (lon, lat) pair: {point!r}')
        lon, lat = float(point[0]), float(point[1])
        if not (math.isfinite(lon) and math.isfinite(lat)):
            raise InvalidRegion(f'vertex is not finite: {point!r}')
        if abs(lon) > WORLD_LNG_HALF_SPAN_DEG or abs(lat) > WORLD_LAT_MAX_DEG:
            raise InvalidRegion(f'vertex out of range: ({lon}, {lat})')
        if ring and ring[-1] == (lon, lat):
            continue
        ring.append((lon, lat))
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring.pop()
    return ring


def corners_to_ring(a: LonLat, b: LonLat) -> list[LonLat]:
    min_lon, max_lon = sorted((a[0], b[0]))
    min_lat, max_lat = sorted((a[1], b[1]))
    return [
        (min_lon, min_lat),
        (max_lon, min_lat),
        (max_lon, max_lat),
        (min_lon, max_lat),
    ]


def validate_region(bounds: BoundingBox | Sequence[Sequence[float]]) -> list[LonLat]:
    """Normalise region bounds to a validated, open, simple ring.

    Two points are read as opposite corners of a bounding box. A closing
    vertex equal to the first one is dropped.

    Raises:
        InvalidRegion: Empty, degenerate or self-intersecting bounds.
        AntimeridianUnsupported: An edge spans more than 180 degrees of
            longitude, i.e. the region wraps across the antimeridian.
    """
    if isinstance(bounds, BoundingBox):
        points: Sequence[Sequence[float]] = bounds.to_ring()
    else:
        points = list(bounds or [])
    if not points:
        raise InvalidRegion('region bounds are empty')
    ring = _normalize_points(points)
    if len(ring) == 2:
        ring = corners_to_ring(ring[0], ring[1])
    if len(set(ring)) < 3:
        raise InvalidRegion('region needs at least 3 distinct vertices')
    for a, b in ring_edges(ring):
        if abs(b[0] - a[0]) > WORLD_LNG_HALF_SPAN_DEG:
            raise AntimeridianUnsupported(
                'regions crossing the antimeridian are not supported; '
                'split the region into two caches'
            )
    if abs(signed_area(ring)) < MIN_REGION_AREA_DEG2:
        raise InvalidRegion('region has zero area')
    if not is_simple(ring):
        raise InvalidRegion('region polygon is self-intersecting')
    return ring


def point_in_ring(
    point: LonLat, ring: Sequence[LonLat], *, include_boundary: bool = False
) -> bool:
    """Even-odd ray casting; boundary points follow ``include_boundary``."""
    for a, b in ring_edges(ring):
        if point_on_segment(point, a, b):
            return include_boundary
    x, y = point
    inside = False
    for a, b in ring_edges(ring):
        if (a[1] > y) != (b[1] > y):
            x_cross = a[0] + (y - a[1]) * (b[0] - a[0]) / (b[1] - a[1])
            if x < x_cross:
                inside = not inside
    return inside


def rects_intersect(a: Rect, b: Rect, *, strict: bool = False) -> bool:
    if strict:
        return a[0] < b[2] and b[0] < a[2] and a[1] < b[3] and b[1] < a[3]
    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]


def _point_in_rect(p: LonLat, rect: Rect, *, strict: bool) -> bool:
    if strict:
        return rect[0] < p[0] < rect[2] and rect[1] < p[1] < rect[3]
    return rect[0] <= p[0] <= rect[2] and rect[1] <= p[1] <= rect[3]


def rect_intersects_ring(rect: Rect, ring: Sequence[LonLat], *, strict: bool = False) -> bool:
    """Rectangle ∩ polygon test.

    With ``strict`` the shapes must share interior area (used for grid cells,
    so a region edge lying on a cell boundary does not select the cell);
    otherwise touching counts as intersecting.
    """
    if not rects_intersect(rect, ring_bbox(ring), strict=strict):
        return False
    for p in ring:
        if _point_in_rect(p, rect, strict=strict):
            return True
    min_lon, min_lat, max_lon, max_lat = rect
    corners = [(min_lon, min_lat), (max_lon, min_lat), (max_lon, max_lat), (min_lon, max_lat)]
    centre = ((min_lon + max_lon) / 2.0, (min_lat + max_lat) / 2.0)
    for p in (*corners, centre):
        if point_in_ring(p, ring, include_boundary=not strict):
            return True
    rect_edges = ring_edges(corners)
    for a, b in ring_edges(ring):
        if strict:
            mid = ((a[0] + b[0]) / 2.0, (a[1] + b[1]) / 2.0)
            if _point_in_rect(mid, rect, strict=True):
                return True
        for c, d in rect_edges:
            if strict and segments_cross(a, b, c, d):
                return True
            if not strict and segments_intersect(a, b, c, d):
                return True
    return False


def is_axis_aligned_rectangle(ring: Sequence[LonLat]) -> bool:
    if len(ring) != 4:
        return False
    lons = {p[0] for p in ring}
    lats = {p[1] for p in ring}
    if len(lons) != 2 or len(lats) != 2:
        return False
    return all(a[0] == b[0] or a[1] == b[1] for a, b in ring_edges(ring))


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine great-circle distance on a spherical Earth."""
    p1 = math.radians(lat1)
    p2 = math.radians(lat2)
    dphi = p2 - p1
    dl = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2.0) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2.0) ** 2
    return 2 * EARTH_MEAN_RADIUS_M * math.asin(math.sqrt(a))
