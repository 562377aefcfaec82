import math

import pytest

from data_sources.site_store import SiteStore
from matching.models import BoundaryCandidate, Ring

METERS_PER_DEG = 111195


def offset(lat, lon, north_m=0.0, east_m=0.0):
    """Point moved north/east by the given distances."""
    return (
        lat + north_m / METERS_PER_DEG,
        lon + east_m / (METERS_PER_DEG * math.cos(math.radians(lat))),
    )


def square(lat, lon, half_m):
    """Square (lon, lat) ring centred on a point."""
    d_lat = half_m / METERS_PER_DEG
    d_lon = half_m / (METERS_PER_DEG * math.cos(math.radians(lat)))
    return Ring((
        (lon - d_lon, lat - d_lat),
        (lon - d_lon, lat + d_lat),
        (lon + d_lon, lat + d_lat),
        (lon + d_lon, lat - d_lat),
    ))


def candidate(osm_id, name, lat, lon, half_m=50, type="park", tags=None):
    return BoundaryCandidate.from_ring(osm_id, name, type, square(lat, lon, half_m), tags or {"name": name})


@pytest.fixture
def store(tmp_path):
    s = SiteStore(tmp_path / "sites.sqlite")
    yield s
    s.close()
