"""
Wikidata SPARQL client
Fetches parks with coordinates located in a region, used as independent
corroboration for site matches.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests

from logging_config import get_logger, log_api_call
from .cache import cached, CACHE_TTL
from .error_handling import APIError, TransientNetworkError, with_retry
from .retry_config import get_retry_config

logger = get_logger(__name__)

WIKIDATA_SPARQL = "https://query.wikidata.org/sparql"
USER_AGENT = "ParkTrack/1.0 (park boundary verification)"

PARK_CLASS = "Q22698"
DEFAULT_AREA = "Q84"

_POINT_RE = re.compile(r"Point\(([-\d.]+)\s+([-\d.]+)\)")


@dataclass(frozen=True)
class WikidataItem:
    qid: str
    label: str
    latitude: float
    longitude: float


def build_parks_query(area_qid: str = DEFAULT_AREA, limit: int = 5000) -> str:
    return f"""
    SELECT ?item ?itemLabel ?coord WHERE {{
      ?item wdt:P31/wdt:P279* wd:{PARK_CLASS}.
      ?item wdt:P131* wd:{area_qid}.
      ?item wdt:P625 ?coord.
      SERVICE wikibase:label {{ bd:serviceParam wikibase:language "en". }}
    }}
    LIMIT {limit}
    """


def extract_qid(uri: str) -> str:
    """Last path segment of an entity URI."""
    return uri.rstrip("/").rsplit("/", 1)[-1]


def parse_point(value: str) -> Optional[tuple]:
    """
    Parse a WKT literal "Point(lon lat)".

    Returns:
        (lat, lon) or None if the literal does not match
    """
    match = _POINT_RE.search(value or "")
    if not match:
        return None
    try:
        lon, lat = float(match.group(1)), float(match.group(2))
    except ValueError:
        return None
    return lat, lon


def parse_bindings(bindings: List[Dict[str, Any]]) -> List[WikidataItem]:
    """Turn SPARQL JSON bindings into items, skipping rows without a usable coordinate."""
    items = []
    for binding in bindings:
        uri = (binding.get("item") or {}).get("value")
        point = parse_point((binding.get("coord") or {}).get("value", ""))
        if not uri or point is None:
            continue
        items.append(WikidataItem(
            qid=extract_qid(uri),
            label=(binding.get("itemLabel") or {}).get("value", ""),
            latitude=point[0],
            longitude=point[1],
        ))
    return items


@with_retry(get_retry_config("wikidata"))
def _run_sparql(query: str) -> List[Dict[str, Any]]:
    log_api_call(logger, "wikidata", WIKIDATA_SPARQL)
    try:
        resp = requests.get(
            WIKIDATA_SPARQL,
            params={"query": query, "format": "json"},
            headers={"User-Agent": USER_AGENT, "Accept": "application/sparql-results+json"},
            timeout=90,
        )
    except requests.exceptions.Timeout as e:
        raise TransientNetworkError(f"Wikidata query timed out: {e}", "wikidata", 408) from e
    except requests.exceptions.RequestException as e:
        raise APIError(f"Wikidata query failed: {e}", "wikidata") from e

    if resp.status_code in (429, 502, 503, 504):
        raise TransientNetworkError(f"Wikidata returned {resp.status_code}", "wikidata", resp.status_code)
    if resp.status_code != 200:
        raise APIError(f"Wikidata returned {resp.status_code}", "wikidata", resp.status_code)

    try:
        return resp.json().get("results", {}).get("bindings", [])
    except ValueError as e:
        raise APIError(f"Wikidata returned invalid JSON: {e}", "wikidata", resp.status_code) from e


@cached(ttl_seconds=CACHE_TTL['wikidata'])
def fetch_park_bindings(area_qid: str = DEFAULT_AREA) -> List[Dict[str, Any]]:
    return _run_sparql(build_parks_query(area_qid))


def fetch_wikidata_parks(area_qid: str = DEFAULT_AREA) -> List[WikidataItem]:
    """
    Parks (and subclasses) located in area_qid that have coordinates.

    Raises:
        TransientNetworkError, APIError
    """
    items = parse_bindings(fetch_park_bindings(area_qid))
    logger.info(f"Found {len(items)} parks in Wikidata", extra={"api_name": "wikidata"})
    return items
