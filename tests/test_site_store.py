from datetime import datetime, timezone

import pytest

from matching.models import AMBIGUOUS, MATCHED, UNRESOLVED, Site
from tests.conftest import square

WHEN = datetime(2026, 4, 1, 7, 0, tzinfo=timezone.utc)


def test_add_and_get_round_trip(store):
    polygon = square(51.5, -0.1, 100)
    site = store.add(Site(
        name="Burgess Park", borough="Southwark", latitude=51.4816, longitude=-0.0804,
        polygon=polygon, alternatives=[{"osm_id": "way/2", "name": "Burgess Park Lake"}],
        match_status=AMBIGUOUS, match_score=0.8, osm_id="way/1", wikidata_verified=True,
    ))
    assert site.id is not None

    loaded = store.get(site.id)
    assert loaded.name == "Burgess Park"
    assert loaded.polygon == polygon
    assert loaded.alternatives == [{"osm_id": "way/2", "name": "Burgess Park Lake"}]
    assert loaded.wikidata_verified is True
    assert loaded.completed is False
    assert store.get(9999) is None


def test_save_requires_id(store):
    with pytest.raises(ValueError):
        store.save(Site(name="Unsaved"))


def test_save_updates_fields(store):
    site = store.add(Site(name="Brockwell Park"))
    site.match_status = MATCHED
    site.review_notes = "checked"
    store.save(site)
    loaded = store.get(site.id)
    assert loaded.match_status == MATCHED
    assert loaded.review_notes == "checked"


def test_list_filters(store):
    store.add(Site(name="A", latitude=51.5, longitude=-0.1))
    store.add(Site(name="B", match_status=AMBIGUOUS))
    store.add(Site(name="C", latitude=51.6, longitude=-0.1, match_status=AMBIGUOUS, completed=True))

    assert [s.name for s in store.list()] == ["A", "B", "C"]
    assert [s.name for s in store.list(statuses=[AMBIGUOUS])] == ["B", "C"]
    assert [s.name for s in store.list(with_location=True)] == ["A", "C"]
    assert [s.name for s in store.list(completed=False)] == ["A", "B"]
    assert [s.name for s in store.list(limit=1)] == ["A"]
    assert store.count_by_status() == {UNRESOLVED: 1, AMBIGUOUS: 2}


def test_mark_completed_only_counts_new_completions(store):
    a = store.add(Site(name="A"))
    b = store.add(Site(name="B"))
    assert store.mark_completed([a.id], WHEN) == 1
    assert store.mark_completed([a.id, b.id], datetime(2026, 4, 2, tzinfo=timezone.utc)) == 1
    assert store.get(a.id).completed_date == WHEN
    assert store.mark_completed([], WHEN) == 0


def test_damaged_polygon_loads_as_missing(store):
    site = store.add(Site(name="Damaged"))
    store._conn.execute("UPDATE sites SET polygon = ? WHERE id = ?", ("[[0, 0], [1, 1]]", site.id))
    store._conn.commit()
    loaded = store.get(site.id)
    assert loaded.name == "Damaged"
    assert loaded.polygon is None


def test_store_path_from_env(tmp_path, monkeypatch):
    from data_sources.site_store import SiteStore

    monkeypatch.setenv("PARKTRACK_DB_PATH", str(tmp_path / "nested" / "env.sqlite"))
    s = SiteStore.from_env()
    try:
        assert s.path == (tmp_path / "nested" / "env.sqlite").resolve()
        assert s.path.exists()
    finally:
        s.close()


def test_complete_pending_returns_only_new_ids(store):
    a = store.add(Site(name="A"))
    b = store.add(Site(name="B"))
    store.mark_completed([a.id], WHEN)
    assert store.complete_pending([a.id, b.id], WHEN) == [b.id]
    assert store.complete_pending([a.id, b.id], WHEN) == []
