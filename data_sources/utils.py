"""
Shared geometry utilities for ParkTrack
Distances, polygon area and centroid, point-in-polygon and path crossing.

Rings are sequences of (lon, lat) pairs, the order GeoJSON and Overpass
geometries use. Route paths are sequences of (lat, lon) pairs, the order
polyline decoding yields.
"""

import math
from typing import Iterable, Optional, Sequence, Tuple

Point = Tuple[float, float]
BBox = Tuple[float, float, float, float]

# Metres per degree used for the planar area projection
METERS_PER_DEG_LON = 111320
METERS_PER_DEG_LAT = 110540

EARTH_RADIUS_M = 6371000


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate distance between two points in meters using the Haversine formula.

    Args:
        lat1, lon1: First point coordinates
        lat2, lon2: Second point coordinates

    Returns:
        Distance in meters
    """
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = math.sin(delta_phi/2)**2 + math.cos(phi1) * \
        math.cos(phi2) * math.sin(delta_lambda/2)**2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1-a))

    return EARTH_RADIUS_M * c


def polygon_area(ring: Sequence[Point]) -> float:
    """
    Approximate area of a (lon, lat) ring in square meters.

    Each vertex is projected with a per-latitude scale and the shoelace sum is
    taken over the projected plane. The result does not depend on winding
    direction or on which vertex the ring starts at.

    Args:
        ring: (lon, lat) vertices, closed or open

    Returns:
        Area in square meters (0 for fewer than 3 vertices)
    """
    coords = list(ring)
    if len(coords) < 3:
        return 0.0

    projected = [
        (lon * METERS_PER_DEG_LON * math.cos(math.radians(lat)), lat * METERS_PER_DEG_LAT)
        for lon, lat in coords
    ]

    area = 0.0
    n = len(projected)
    for i in range(n):
        x1, y1 = projected[i]
        x2, y2 = projected[(i + 1) % n]
        area += x1 * y2 - x2 * y1

    return abs(area) / 2


def ring_bbox(ring: Iterable[Point]) -> BBox:
    """Bounding box of a (lon, lat) ring as (min_lon, min_lat, max_lon, max_lat)."""
    coords = list(ring)
    if not coords:
        raise ValueError("cannot take the bounding box of an empty ring")
    lons = [c[0] for c in coords]
    lats = [c[1] for c in coords]
    return min(lons), min(lats), max(lons), max(lats)


def path_bbox(path: Iterable[Point]) -> BBox:
    """Bounding box of a (lat, lon) path, in the same (min_lon, min_lat, max_lon, max_lat) order as ring_bbox."""
    return ring_bbox((lon, lat) for lat, lon in path)


def bboxes_intersect(a: BBox, b: BBox) -> bool:
    return a[0] <= b[2] and b[0] <= a[2] and a[1] <= b[3] and b[1] <= a[3]


def polygon_centroid(ring: Sequence[Point]) -> Tuple[float, float]:
    """
    Bounding-box midpoint of a (lon, lat) ring.

    This is an approximation: for L-shaped or crescent boundaries the point can
    fall outside the polygon. Distances from a site to a candidate are measured
    to this point.

    Returns:
        (lat, lon) of the midpoint
    """
    min_lon, min_lat, max_lon, max_lat = ring_bbox(ring)
    return (min_lat + max_lat) / 2, (min_lon + max_lon) / 2


def point_in_polygon(point: Point, ring: Sequence[Point]) -> bool:
    """
    Even-odd ray casting test.

    The point and the ring must use the same axis order. Edges are half-open:
    a point exactly on a left or bottom edge counts as inside, on a right or
    top edge as outside.

    Args:
        point: (x, y)
        ring: (x, y) vertices, closed or open

    Returns:
        True if the point is inside the ring
    """
    x, y = point
    coords = list(ring)
    inside = False

    j = len(coords) - 1
    for i in range(len(coords)):
        xi, yi = coords[i]
        xj, yj = coords[j]
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i

    return inside


def path_crosses_polygon(path: Sequence[Point], ring: Sequence[Point]) -> bool:
    """
    True if any vertex of a (lat, lon) path lies inside a (lon, lat) ring.

    Only vertices are sampled: a segment that clips the polygon between two
    outside vertices is not detected.
    """
    coords = list(ring)
    for lat, lon in path:
        if point_in_polygon((lon, lat), coords):
            return True
    return False


def polygon_overlap_score(ring_a: Sequence[Point], ring_b: Sequence[Point]) -> float:
    """
    Duplicate heuristic based on the distance between bbox centroids.

    Returns:
        1.0 under 10 m, 0.8 under 50 m, 0.5 under 100 m, otherwise 0.0
    """
    lat_a, lon_a = polygon_centroid(ring_a)
    lat_b, lon_b = polygon_centroid(ring_b)
    distance = haversine_distance(lat_a, lon_a, lat_b, lon_b)

    if distance < 10:
        return 1.0
    if distance < 50:
        return 0.8
    if distance < 100:
        return 0.5
    return 0.0


def min_distance_to_path(lat: float, lon: float, path: Sequence[Point]) -> Optional[float]:
    """Smallest haversine distance from a point to any (lat, lon) path vertex, or None for an empty path."""
    best = None
    for p_lat, p_lon in path:
        d = haversine_distance(lat, lon, p_lat, p_lon)
        if best is None or d < best:
            best = d
    return best
