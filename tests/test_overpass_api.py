from unittest.mock import Mock, patch

import pytest
import requests

from data_sources import overpass_api
from data_sources.error_handling import APIError, TransientNetworkError
from data_sources.overpass_api import (
    IMPORT_FILTER, _retry_overpass, build_around_query, build_bbox_query, element_coordinates,
    fetch_candidates_in_bbox, fetch_region_candidates, open_to_public_for, parse_elements,
    run_query, site_type_for,
)
from data_sources.retry_config import RetryConfig


def _way(osm_id, name, lat=51.5, lon=-0.1, size=0.002, **tags):
    points = [(lat, lon), (lat + size, lon), (lat + size, lon + size), (lat, lon + size), (lat, lon)]
    return {
        "type": "way",
        "id": osm_id,
        "tags": {"name": name, "leisure": "park", **tags} if name else {"leisure": "park", **tags},
        "geometry": [{"lat": a, "lon": b} for a, b in points],
    }


def _response(status, payload=None):
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = payload if payload is not None else {}
    return resp


def test_bbox_query_lists_every_tag_filter():
    query = build_bbox_query((51.28, -0.51, 51.69, 0.33))
    assert query.startswith("[out:json][timeout:180];")
    assert 'way["leisure"="park"]["name"](51.28,-0.51,51.69,0.33);' in query
    assert 'relation["landuse"="village_green"]["name"](51.28,-0.51,51.69,0.33);' in query
    assert query.endswith("out geom;")


def test_around_query():
    query = build_around_query(51.5, -0.1, 1000)
    assert 'way["leisure"="garden"]["name"](around:1000,51.5,-0.1);' in query


def test_parse_way_element():
    [c] = parse_elements([_way(1, "Test Park")])
    assert c.osm_id == "way/1"
    assert c.name == "Test Park"
    assert c.type == "park"
    assert len(c.ring) == 4
    assert c.area > 0


def test_parse_relation_uses_outer_members():
    relation = {
        "type": "relation",
        "id": 5,
        "tags": {"name": "Big Common", "leisure": "common"},
        "members": [
            {"role": "outer", "geometry": [{"lat": 51.5, "lon": -0.1}, {"lat": 51.51, "lon": -0.1},
                                           {"lat": 51.51, "lon": -0.09}]},
            {"role": "inner", "geometry": [{"lat": 51.505, "lon": -0.095}]},
            {"role": "outer", "geometry": [{"lat": 51.5, "lon": -0.09}, {"lat": 51.5, "lon": -0.1}]},
        ],
    }
    assert len(element_coordinates(relation)) == 5
    [c] = parse_elements([relation])
    assert c.osm_id == "relation/5"
    assert c.type == "common"
    assert len(c.ring) == 4


def test_parse_drops_unusable_elements():
    elements = [
        _way(1, None),
        _way(2, "Swings", playground="yes"),
        {"type": "way", "id": 3, "tags": {"name": "Sliver"},
         "geometry": [{"lat": 51.5, "lon": -0.1}, {"lat": 51.6, "lon": -0.1}]},
        _way(4, "Kept Park"),
        _way(4, "Kept Park"),
        {"type": "node", "id": 6, "tags": {"name": "A Node"}},
    ]
    assert [c.osm_id for c in parse_elements(elements)] == ["way/4"]


def test_import_filter_bounds_area_and_names():
    elements = [
        _way(1, "Tiny Garden", size=0.0001),
        _way(2, "Estate"),
        _way(3, "Unnamed Green"),
        _way(4, "Proper Park"),
    ]
    assert [c.osm_id for c in parse_elements(elements, IMPORT_FILTER)] == ["way/4"]


def test_retry_recovers_from_gateway_timeouts():
    responses = [_response(504), _response(504), _response(200, {"elements": []})]
    endpoints = []
    waits = []

    def request_fn(endpoint):
        endpoints.append(endpoint)
        return responses.pop(0)

    config = RetryConfig(max_attempts=3, base_wait=15, max_wait=15)
    resp = _retry_overpass(request_fn, config, sleep=waits.append)

    assert resp.status_code == 200
    assert waits == [15, 15]
    assert len(endpoints) == 3
    if len(overpass_api.OVERPASS_URLS) > 1:
        assert endpoints[0] != endpoints[1]


def test_retry_gives_up_after_max_attempts():
    waits = []

    def request_fn(endpoint):
        raise requests.exceptions.Timeout("read timed out")

    with pytest.raises(TransientNetworkError):
        _retry_overpass(request_fn, RetryConfig(max_attempts=3, base_wait=10, max_wait=10), sleep=waits.append)
    assert waits == [10, 10]


def test_non_transient_status_is_not_retried():
    calls = []

    def request_fn(endpoint):
        calls.append(endpoint)
        return _response(400)

    with pytest.raises(APIError) as exc_info:
        _retry_overpass(request_fn, RetryConfig(), sleep=lambda s: None)
    assert not isinstance(exc_info.value, TransientNetworkError)
    assert exc_info.value.status_code == 400
    assert len(calls) == 1


def test_run_query_returns_elements():
    with patch("data_sources.overpass_api.requests.post",
               return_value=_response(200, {"elements": [_way(1, "A Park")]})) as post:
        elements = run_query("[out:json];", query_type="radius")
    assert elements[0]["id"] == 1
    assert post.call_args.kwargs["data"] == {"data": "[out:json];"}


def test_bbox_fetch_writes_and_reuses_raw_cache(tmp_path):
    cache_path = tmp_path / "boundaries.json"
    with patch("data_sources.overpass_api.run_query", return_value=[_way(1, "A Park")]) as rq:
        first = fetch_candidates_in_bbox((51.4, -0.2, 51.6, 0.0), cache_path=cache_path)
    assert rq.call_count == 1
    assert cache_path.exists()

    with patch("data_sources.overpass_api.run_query", side_effect=AssertionError("network used")):
        second = fetch_candidates_in_bbox((51.4, -0.2, 51.6, 0.0), cache_path=cache_path)
    assert [c.osm_id for c in second] == [c.osm_id for c in first]

    with patch("data_sources.overpass_api.run_query", return_value=[]) as rq:
        assert fetch_candidates_in_bbox((51.4, -0.2, 51.6, 0.0), cache_path=cache_path, refresh=True) == []
    assert rq.call_count == 1


def test_region_scan_skips_failed_regions():
    def fake_fetch(bbox, candidate_filter=None):
        if bbox[0] == 2:
            raise TransientNetworkError("gateway timeout", "overpass", 504)
        return parse_elements([_way(int(bbox[0]), "A Park")])

    waits = []
    regions = {"One": (1, 0, 1.5, 0.5), "Two": (2, 0, 2.5, 0.5), "Three": (3, 0, 3.5, 0.5)}
    with patch("data_sources.overpass_api.fetch_candidates_in_bbox", side_effect=fake_fetch):
        results = fetch_region_candidates(regions, delay_s=10, sleep=waits.append)

    assert set(results) == {"One", "Three"}
    assert waits == [10, 10]


def test_site_type_and_access_mapping():
    assert site_type_for("nature_reserve") == "Nature Reserve"
    assert site_type_for("something_else") == "Public Park"
    assert open_to_public_for({}) == "Yes"
    assert open_to_public_for({"access": "permissive"}) == "Yes"
    assert open_to_public_for({"access": "private"}) == "No"
