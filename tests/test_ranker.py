from dataclasses import replace

from matching.models import AMBIGUOUS, MATCHED, NO_MATCH, OSM_IMPORT_REF, UNRESOLVED, Site
from matching.ranker import (
    MAX_ALTERNATIVES, apply_ranking, classify, find_existing_site, find_missing_candidates,
    rank_candidates, rank_site, resolve_sites, site_from_candidate,
)
from tests.conftest import candidate, offset, square

SITE_LAT, SITE_LON = 51.5073, -0.1657


def _site(name="Hyde Park", **kwargs):
    return Site(name=name, latitude=SITE_LAT, longitude=SITE_LON, **kwargs)


def _scored(osm_id, score, distance, area, name="x"):
    c = candidate(osm_id, name, SITE_LAT, SITE_LON)
    return replace(c, name_score=score, distance=distance, area=area)


def test_exact_name_beats_closer_partial_match():
    hyde = candidate("way/1", "Hyde Park", *offset(SITE_LAT, SITE_LON, north_m=300), half_m=187)
    corner = candidate("way/2", "Hyde Park Corner Gardens", *offset(SITE_LAT, SITE_LON, east_m=80), half_m=22)

    site = _site()
    result = rank_site(site, [corner, hyde])

    assert result.status == MATCHED
    assert result.best.osm_id == "way/1"
    assert result.best.name_score == 1.0

    apply_ranking(site, result)
    assert site.match_status == MATCHED
    assert site.polygon == hyde.ring
    assert site.osm_id == "way/1"
    assert site.match_score == 1.0
    assert [a["osm_id"] for a in site.alternatives] == ["way/2"]


def test_no_candidates_within_radius_is_no_match():
    far = candidate("way/9", "Hyde Park", *offset(SITE_LAT, SITE_LON, north_m=2000))
    site = _site()
    result = rank_site(site, [far], radius_m=500)

    assert result.status == NO_MATCH
    apply_ranking(site, result)
    assert site.polygon is None
    assert site.osm_id is None
    assert site.alternatives == []


def test_two_exact_names_are_ambiguous_and_larger_area_leads():
    small = candidate("way/1", "Victoria Park", *offset(SITE_LAT, SITE_LON, north_m=50), half_m=30)
    large = candidate("way/2", "Victoria Park", *offset(SITE_LAT, SITE_LON, north_m=150), half_m=200)

    site = _site("Victoria Park")
    result = rank_site(site, [small, large])
    assert result.status == AMBIGUOUS
    assert result.best.osm_id == "way/2"

    # The leading candidate is kept as the provisional match
    apply_ranking(site, result)
    assert site.match_status == AMBIGUOUS
    assert site.osm_id == "way/2"
    assert site.polygon is not None
    assert len(site.alternatives) == 1


def test_weak_name_far_away_is_ambiguous():
    meadow = candidate("way/1", "Ecology Pavilion Meadow", *offset(SITE_LAT, SITE_LON, north_m=300))
    assert rank_site(_site("Mile End Park"), [meadow]).status == AMBIGUOUS


def test_partial_name_nearby_is_matched():
    gardens = candidate("way/1", "Mile End Gardens", *offset(SITE_LAT, SITE_LON, north_m=100))
    result = rank_site(_site("Mile End Park"), [gardens])
    assert result.best.name_score == 0.5
    assert result.status == MATCHED


def test_strong_name_ranks_before_weak_name_whatever_the_area():
    strong = _scored("way/1", 0.8, 400, 1000)
    weak = _scored("way/2", 0.6, 20, 900000)
    assert [c.osm_id for c in rank_candidates([weak, strong])] == ["way/1", "way/2"]


def test_scores_within_band_are_ordered_by_area():
    a = _scored("way/1", 0.5, 100, 1000)
    b = _scored("way/2", 0.6, 300, 5000)
    assert [c.osm_id for c in rank_candidates([a, b])] == ["way/2", "way/1"]

    # 0.2 apart is outside the band: the higher score wins
    c = _scored("way/3", 0.3, 100, 90000)
    assert rank_candidates([c, a])[0].osm_id == "way/1"


def test_classify_rules():
    assert classify([]) == NO_MATCH
    assert classify([_scored("way/1", 0.9, 400, 1)]) == MATCHED
    assert classify([_scored("way/1", 0.3, 150, 1)]) == AMBIGUOUS
    assert classify([_scored("way/1", 0.8, 100, 1), _scored("way/2", 0.6, 50, 1)]) == AMBIGUOUS
    assert classify([_scored("way/1", 1.0, 100, 1), _scored("way/2", 0.8, 50, 1)]) == MATCHED
    assert classify([_scored("way/1", 1.0, 100, 1), _scored("way/2", 1.0, 50, 1)]) == AMBIGUOUS
    assert classify([_scored("way/1", 0.8, 100, 1), _scored("way/2", 0.4, 50, 1)]) == MATCHED


def test_alternatives_are_capped():
    candidates = [
        candidate(f"way/{i}", f"Hyde Park {i}", *offset(SITE_LAT, SITE_LON, north_m=20 * i))
        for i in range(1, 9)
    ]
    result = rank_site(_site(), candidates)
    assert len(result.alternatives) == MAX_ALTERNATIVES


def test_resolve_sites_updates_store(store):
    hyde = store.add(_site())
    nowhere = store.add(Site(name="Unlocated Garden"))
    done = store.add(_site("Green Park", match_status=MATCHED))

    pool = [candidate("way/1", "Hyde Park", *offset(SITE_LAT, SITE_LON, north_m=100), half_m=150)]
    summary = resolve_sites(store, pool)

    assert summary.total == 2
    assert summary.skipped == 1
    assert summary.outcomes[MATCHED] == 1
    assert store.get(hyde.id).osm_id == "way/1"
    assert store.get(nowhere.id).match_status == UNRESOLVED
    assert store.get(done.id).osm_id is None


def test_find_existing_site():
    lat, lon = SITE_LAT, SITE_LON
    c = candidate("way/5", "Hyde Park", lat, lon)

    assert find_existing_site(c, [_site("Something Else", osm_id="way/5")]).name == "Something Else"
    assert find_existing_site(c, [Site(name="Other", polygon=square(*offset(lat, lon, east_m=5), 50))]) is not None
    near_lat, near_lon = offset(lat, lon, north_m=15)
    assert find_existing_site(c, [Site(name="Other", latitude=near_lat, longitude=near_lon)]) is not None
    similar_lat, similar_lon = offset(lat, lon, north_m=150)
    assert find_existing_site(c, [Site(name="The Hyde Park", latitude=similar_lat, longitude=similar_lon)]) is not None
    assert find_existing_site(c, [Site(name="Other", latitude=similar_lat, longitude=similar_lon)]) is None


def test_find_missing_candidates_sorted_by_area_without_duplicates():
    existing = [_site("Hyde Park", osm_id="way/1")]
    pool = [
        candidate("way/1", "Hyde Park", SITE_LAT, SITE_LON),
        candidate("way/2", "Small Garden", *offset(SITE_LAT, SITE_LON, north_m=3000), half_m=40),
        candidate("way/3", "Big Common", *offset(SITE_LAT, SITE_LON, north_m=6000), half_m=400),
        candidate("way/3", "Big Common", *offset(SITE_LAT, SITE_LON, north_m=6000), half_m=400),
    ]
    missing = find_missing_candidates(pool, existing)
    assert [c.osm_id for c in missing] == ["way/3", "way/2"]


def test_site_from_candidate():
    c = candidate("way/7", "Secret Garden", SITE_LAT, SITE_LON, type="garden",
                  tags={"name": "Secret Garden", "leisure": "garden", "access": "private"})
    site = site_from_candidate(c, borough="Camden")
    assert site.match_status == AMBIGUOUS
    assert site.match_score == 0.5
    assert site.site_ref == OSM_IMPORT_REF
    assert site.site_type == "Public Gardens"
    assert site.open_to_public == "No"
    assert site.borough == "Camden"
    assert site.latitude == c.center[0]
    assert site.polygon == c.ring
