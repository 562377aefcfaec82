"""
Core data model for site matching
Sites, boundary candidates and the polygon variants accepted at ingestion.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple, Union

from data_sources.error_handling import MalformedGeometryError
from data_sources.utils import polygon_area, polygon_centroid

# Match status values
UNRESOLVED = "unresolved"
MATCHED = "matched"
AMBIGUOUS = "ambiguous"
NO_MATCH = "no_match"
REJECTED = "rejected"
MANUAL_REVIEW = "manual_review"
VERIFIED = "verified"
VERIFIED_ALTERNATIVE = "verified_alternative"

MATCH_STATUSES = (
    UNRESOLVED, MATCHED, AMBIGUOUS, NO_MATCH, REJECTED,
    MANUAL_REVIEW, VERIFIED, VERIFIED_ALTERNATIVE,
)

# Statuses that require a polygon
POLYGON_STATUSES = (MATCHED, VERIFIED, VERIFIED_ALTERNATIVE)

OSM_IMPORT_REF = "OSM_IMPORT"


@dataclass(frozen=True)
class Ring:
    """A single closed boundary as (lon, lat) vertices, without the repeated closing vertex."""
    points: Tuple[Tuple[float, float], ...]

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self):
        return iter(self.points)

    def __getitem__(self, index):
        return self.points[index]

    def to_list(self) -> List[List[float]]:
        return [[lon, lat] for lon, lat in self.points]


@dataclass(frozen=True)
class StructuredPolygon:
    """A polygon with an outer ring followed by zero or more holes."""
    rings: Tuple[Ring, ...]

    @property
    def outer(self) -> Ring:
        return self.rings[0]


PolygonShape = Union[Ring, StructuredPolygon]


def _coerce_point(raw: Any) -> Tuple[float, float]:
    if not isinstance(raw, (list, tuple)) or len(raw) < 2:
        raise MalformedGeometryError(f"coordinate {raw!r} is not a pair")
    try:
        lon, lat = float(raw[0]), float(raw[1])
    except (TypeError, ValueError) as e:
        raise MalformedGeometryError(f"coordinate {raw!r} is not numeric") from e
    if not (math.isfinite(lon) and math.isfinite(lat)):
        raise MalformedGeometryError(f"coordinate {raw!r} is not finite")
    if not (-180 <= lon <= 180 and -90 <= lat <= 90):
        raise MalformedGeometryError(f"coordinate {raw!r} is out of range")
    return lon, lat


def _build_ring(raw: Any) -> Ring:
    if not isinstance(raw, (list, tuple)):
        raise MalformedGeometryError(f"ring must be a list of coordinates, got {type(raw).__name__}")
    points = [_coerce_point(p) for p in raw]
    if len(points) > 1 and points[0] == points[-1]:
        points = points[:-1]
    if len(points) < 3:
        raise MalformedGeometryError(f"ring has {len(points)} distinct points, need at least 3")
    return Ring(tuple(points))


def _is_ring_list(raw: Any) -> bool:
    """True when raw looks like [[ [lon, lat], ... ], ...] rather than [[lon, lat], ...]."""
    return (
        isinstance(raw, (list, tuple)) and len(raw) > 0
        and isinstance(raw[0], (list, tuple)) and len(raw[0]) > 0
        and isinstance(raw[0][0], (list, tuple))
    )


def parse_polygon_shape(raw: Any) -> PolygonShape:
    """
    Parse any accepted polygon encoding into a Ring or StructuredPolygon.

    Accepted: Ring, StructuredPolygon, a flat list of [lon, lat] pairs, a list
    of rings, or a GeoJSON Polygon / MultiPolygon / Feature dict. For a
    MultiPolygon only the first polygon is kept.

    Raises:
        MalformedGeometryError: if the input cannot be parsed or a ring has
            fewer than 3 distinct points
    """
    if isinstance(raw, (Ring, StructuredPolygon)):
        return raw

    if isinstance(raw, dict):
        geo_type = raw.get("type")
        if geo_type == "Feature":
            return parse_polygon_shape(raw.get("geometry"))
        coords = raw.get("coordinates")
        if coords is None:
            raise MalformedGeometryError(f"GeoJSON object of type {geo_type!r} has no coordinates")
        if geo_type == "Polygon":
            return StructuredPolygon(tuple(_build_ring(r) for r in coords))
        if geo_type == "MultiPolygon":
            if not coords:
                raise MalformedGeometryError("empty MultiPolygon")
            return StructuredPolygon(tuple(_build_ring(r) for r in coords[0]))
        raise MalformedGeometryError(f"unsupported geometry type {geo_type!r}")

    if _is_ring_list(raw):
        return StructuredPolygon(tuple(_build_ring(r) for r in raw))

    return _build_ring(raw)


def normalize_polygon(raw: Any) -> Optional[Ring]:
    """
    Reduce any accepted polygon encoding to its outer Ring.

    Returns:
        None for None input, otherwise the outer ring

    Raises:
        MalformedGeometryError: see parse_polygon_shape
    """
    if raw is None:
        return None
    shape = parse_polygon_shape(raw)
    if isinstance(shape, StructuredPolygon):
        if not shape.rings:
            raise MalformedGeometryError("polygon has no rings")
        return shape.outer
    return shape


@dataclass
class BoundaryCandidate:
    """An external boundary polygon that may correspond to a site."""
    osm_id: str
    name: str
    type: str
    ring: Ring
    tags: Dict[str, str] = field(default_factory=dict)
    area: float = 0.0
    center: Tuple[float, float] = (0.0, 0.0)  # (lat, lon)
    distance: Optional[float] = None
    name_score: Optional[float] = None

    @classmethod
    def from_ring(cls, osm_id: str, name: str, type: str, ring: Ring,
                  tags: Optional[Dict[str, str]] = None) -> "BoundaryCandidate":
        return cls(
            osm_id=osm_id,
            name=name,
            type=type,
            ring=ring,
            tags=dict(tags or {}),
            area=polygon_area(ring),
            center=polygon_centroid(ring),
        )

    def to_summary(self) -> Dict[str, Any]:
        """JSON-friendly form stored in Site.alternatives and sent to arbitration."""
        return {
            "osm_id": self.osm_id,
            "name": self.name,
            "type": self.type,
            "distance": round(self.distance, 1) if self.distance is not None else None,
            "area": round(self.area, 1),
            "name_score": round(self.name_score, 3) if self.name_score is not None else None,
            "tags": dict(self.tags),
            "polygon": self.ring.to_list(),
        }


@dataclass
class Site:
    """A named park-like place the user may visit."""
    name: str
    id: Optional[int] = None
    borough: Optional[str] = None
    site_type: Optional[str] = None
    open_to_public: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    polygon: Optional[Ring] = None
    alternatives: List[Dict[str, Any]] = field(default_factory=list)
    match_status: str = UNRESOLVED
    match_score: Optional[float] = None
    osm_id: Optional[str] = None
    wikidata_id: Optional[str] = None
    wikidata_verified: bool = False
    wikidata_score: Optional[float] = None
    review_notes: Optional[str] = None
    context_notes: Optional[str] = None
    site_ref: Optional[str] = None
    completed: bool = False
    completed_date: Optional[datetime] = None

    @property
    def has_location(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def set_polygon(self, raw: Any) -> None:
        """Normalize and assign a polygon. Raises MalformedGeometryError."""
        self.polygon = normalize_polygon(raw)

    def clear_match(self) -> None:
        self.polygon = None
        self.osm_id = None
