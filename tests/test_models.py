import pytest

from data_sources.error_handling import MalformedGeometryError
from matching.models import (
    BoundaryCandidate, Ring, Site, StructuredPolygon, normalize_polygon, parse_polygon_shape,
)

SQUARE = [[-0.1, 51.5], [-0.1, 51.501], [-0.099, 51.501], [-0.099, 51.5]]


def test_flat_ring_drops_closing_vertex():
    ring = normalize_polygon(SQUARE + [SQUARE[0]])
    assert isinstance(ring, Ring)
    assert len(ring) == 4
    assert ring[0] == (-0.1, 51.5)


def test_geojson_polygon_keeps_outer_ring():
    hole = [[-0.0998, 51.5002], [-0.0998, 51.5004], [-0.0996, 51.5004]]
    shape = parse_polygon_shape({"type": "Polygon", "coordinates": [SQUARE, hole]})
    assert isinstance(shape, StructuredPolygon)
    assert len(shape.rings) == 2
    assert normalize_polygon({"type": "Polygon", "coordinates": [SQUARE, hole]}) == shape.outer


def test_feature_and_multipolygon():
    feature = {"type": "Feature", "geometry": {"type": "MultiPolygon", "coordinates": [[SQUARE], [SQUARE]]}}
    assert len(normalize_polygon(feature)) == 4


def test_list_of_rings_and_existing_shapes():
    ring = normalize_polygon([SQUARE])
    assert normalize_polygon(ring) is ring
    assert normalize_polygon(StructuredPolygon((ring,))) is ring
    assert normalize_polygon(None) is None


@pytest.mark.parametrize("raw", [
    [[0, 0], [1, 1]],
    [[0, 0], [1, 1], [0, 0]],
    [[0, 0], [1, "x"], [2, 2]],
    [[0, 0], [1, 1], [200, 0]],
    {"type": "Point", "coordinates": [0, 0]},
    {"type": "Polygon"},
    "not a polygon",
])
def test_malformed_polygons_raise(raw):
    with pytest.raises(MalformedGeometryError):
        normalize_polygon(raw)


def test_candidate_from_ring_computes_area_and_center():
    ring = normalize_polygon(SQUARE)
    c = BoundaryCandidate.from_ring("way/1", "Test Park", "park", ring, {"leisure": "park"})
    assert c.area > 0
    assert c.center == pytest.approx((51.5005, -0.0995))
    summary = c.to_summary()
    assert summary["osm_id"] == "way/1"
    assert summary["polygon"] == ring.to_list()
    assert summary["distance"] is None


def test_site_polygon_helpers():
    site = Site(name="Test Park", latitude=51.5, longitude=-0.1)
    assert site.has_location
    site.set_polygon(SQUARE)
    site.osm_id = "way/1"
    assert len(site.polygon) == 4
    site.clear_match()
    assert site.polygon is None
    assert site.osm_id is None
    assert not Site(name="Nowhere").has_location
