"""
Site persistence.

Sites live in a local SQLite file (PARKTRACK_DB_PATH, default
data_cache/parktrack.sqlite). Polygons and alternatives are stored as JSON
text; polygons are normalized again when read back, so a damaged row loads
as a site without a polygon instead of failing the whole query.
"""

from __future__ import annotations

import json
import os
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from logging_config import get_logger

from matching.models import Site, normalize_polygon
from .error_handling import MalformedGeometryError

logger = get_logger(__name__)

DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent / "data_cache" / "parktrack.sqlite"

_COLUMNS = (
    "name", "borough", "site_type", "open_to_public", "latitude", "longitude",
    "polygon", "alternatives", "match_status", "match_score", "osm_id",
    "wikidata_id", "wikidata_verified", "wikidata_score", "review_notes",
    "context_notes", "site_ref", "completed", "completed_date",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    borough TEXT,
    site_type TEXT,
    open_to_public TEXT,
    latitude REAL,
    longitude REAL,
    polygon TEXT,
    alternatives TEXT,
    match_status TEXT NOT NULL DEFAULT 'unresolved',
    match_score REAL,
    osm_id TEXT,
    wikidata_id TEXT,
    wikidata_verified INTEGER NOT NULL DEFAULT 0,
    wikidata_score REAL,
    review_notes TEXT,
    context_notes TEXT,
    site_ref TEXT,
    completed INTEGER NOT NULL DEFAULT 0,
    completed_date TEXT
);
CREATE INDEX IF NOT EXISTS idx_sites_status ON sites(match_status);
CREATE INDEX IF NOT EXISTS idx_sites_name_borough ON sites(name, borough);
"""


def _db_path() -> Path:
    env = os.getenv("PARKTRACK_DB_PATH")
    return Path(env).resolve() if env else DEFAULT_DB_PATH


def _site_to_row(site: Site) -> Dict[str, Any]:
    return {
        "name": site.name,
        "borough": site.borough,
        "site_type": site.site_type,
        "open_to_public": site.open_to_public,
        "latitude": site.latitude,
        "longitude": site.longitude,
        "polygon": json.dumps(site.polygon.to_list()) if site.polygon is not None else None,
        "alternatives": json.dumps(site.alternatives) if site.alternatives else None,
        "match_status": site.match_status,
        "match_score": site.match_score,
        "osm_id": site.osm_id,
        "wikidata_id": site.wikidata_id,
        "wikidata_verified": 1 if site.wikidata_verified else 0,
        "wikidata_score": site.wikidata_score,
        "review_notes": site.review_notes,
        "context_notes": site.context_notes,
        "site_ref": site.site_ref,
        "completed": 1 if site.completed else 0,
        "completed_date": site.completed_date.isoformat() if site.completed_date else None,
    }


def _row_to_site(row: sqlite3.Row) -> Site:
    polygon = None
    if row["polygon"]:
        try:
            polygon = normalize_polygon(json.loads(row["polygon"]))
        except (ValueError, MalformedGeometryError) as e:
            logger.warning(f"Site {row['id']} has an unusable polygon, ignoring it: {e}",
                           extra={"site_id": row["id"], "error_type": "malformed_geometry"})

    alternatives: List[Dict[str, Any]] = []
    if row["alternatives"]:
        try:
            alternatives = json.loads(row["alternatives"])
        except ValueError as e:
            logger.warning(f"Site {row['id']} has unreadable alternatives: {e}", extra={"site_id": row["id"]})

    return Site(
        id=row["id"],
        name=row["name"],
        borough=row["borough"],
        site_type=row["site_type"],
        open_to_public=row["open_to_public"],
        latitude=row["latitude"],
        longitude=row["longitude"],
        polygon=polygon,
        alternatives=alternatives,
        match_status=row["match_status"],
        match_score=row["match_score"],
        osm_id=row["osm_id"],
        wikidata_id=row["wikidata_id"],
        wikidata_verified=bool(row["wikidata_verified"]),
        wikidata_score=row["wikidata_score"],
        review_notes=row["review_notes"],
        context_notes=row["context_notes"],
        site_ref=row["site_ref"],
        completed=bool(row["completed"]),
        completed_date=datetime.fromisoformat(row["completed_date"]) if row["completed_date"] else None,
    )


class SiteStore:
    """SQLite-backed repository of sites."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else _db_path()
        if str(self.path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    @classmethod
    def from_env(cls) -> "SiteStore":
        return cls(_db_path())

    def close(self) -> None:
        self._conn.close()

    def add(self, site: Site) -> Site:
        """Insert a site and return it with its new id."""
        row = _site_to_row(site)
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._lock:
            cur = self._conn.execute(
                f"INSERT INTO sites ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                [row[c] for c in _COLUMNS],
            )
            self._conn.commit()
        site.id = cur.lastrowid
        return site

    def add_many(self, sites: Iterable[Site]) -> List[Site]:
        return [self.add(site) for site in sites]

    def get(self, site_id: int) -> Optional[Site]:
        with self._lock:
            row = self._conn.execute("SELECT * FROM sites WHERE id = ?", (site_id,)).fetchone()
        return _row_to_site(row) if row else None

    def list(self, statuses: Optional[Sequence[str]] = None,
             with_location: bool = False,
             completed: Optional[bool] = None,
             limit: Optional[int] = None) -> List[Site]:
        """
        List sites ordered by id.

        Args:
            statuses: Only sites whose match_status is in this list
            with_location: Only sites with a point location
            completed: Filter on the completion flag when not None
            limit: Maximum number of rows
        """
        clauses = []
        params: List[Any] = []
        if statuses:
            clauses.append(f"match_status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        if with_location:
            clauses.append("latitude IS NOT NULL AND longitude IS NOT NULL")
        if completed is not None:
            clauses.append("completed = ?")
            params.append(1 if completed else 0)

        sql = "SELECT * FROM sites"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [_row_to_site(r) for r in rows]

    def save(self, site: Site) -> None:
        """Write every mutable field of an existing site."""
        if site.id is None:
            raise ValueError("cannot save a site without an id; use add()")
        row = _site_to_row(site)
        assignments = ", ".join(f"{c} = ?" for c in _COLUMNS)
        with self._lock:
            self._conn.execute(
                f"UPDATE sites SET {assignments} WHERE id = ?",
                [row[c] for c in _COLUMNS] + [site.id],
            )
            self._conn.commit()

    def complete_pending(self, site_ids: Iterable[int], when: datetime) -> List[int]:
        """
        Mark sites completed and return the ids that were not completed before.

        The select and update run under the store lock; callers sharing a
        store never both report the same site.
        """
        ids = list(site_ids)
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT id FROM sites WHERE completed = 0 AND id IN ({placeholders}) ORDER BY id", ids
            ).fetchall()
            newly = [r["id"] for r in rows]
            if newly:
                self._conn.execute(
                    f"UPDATE sites SET completed = 1, completed_date = ? "
                    f"WHERE completed = 0 AND id IN ({', '.join('?' for _ in newly)})",
                    [when.isoformat()] + newly,
                )
            self._conn.commit()
        return newly

    def mark_completed(self, site_ids: Iterable[int], when: datetime) -> int:
        """
        Mark sites completed. Already completed sites keep their original date.

        Returns:
            Number of sites newly marked
        """
        return len(self.complete_pending(site_ids, when))

    def count_by_status(self) -> Dict[str, int]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT match_status, COUNT(*) AS n FROM sites GROUP BY match_status"
            ).fetchall()
        return {r["match_status"]: r["n"] for r in rows}
