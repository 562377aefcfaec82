"""
OpenStreetMap boundary candidates
Queries the Overpass API for park-like polygons and turns the raw elements
into BoundaryCandidate objects.
"""

import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import requests

from logging_config import get_logger, log_api_call
from matching.models import BoundaryCandidate, normalize_polygon
from .cache import cached, CACHE_TTL, load_raw_cache, save_raw_cache
from .error_handling import APIError, MalformedGeometryError, TransientNetworkError
from .retry_config import RetryConfig, get_retry_config

logger = get_logger(__name__)

_default_overpass = os.environ.get("OVERPASS_URL")
_fallback_endpoints = [
    endpoint for endpoint in [
        _default_overpass.strip() if _default_overpass else None,
        "https://overpass-api.de/api/interpreter",
        "https://overpass.kumi.systems/api/interpreter",
    ] if endpoint
]

OVERPASS_URLS: List[str] = []
for endpoint in _fallback_endpoints:
    if endpoint not in OVERPASS_URLS:
        OVERPASS_URLS.append(endpoint)

USER_AGENT = "ParkTrack/1.0"

# Tag filters for park-like areas
LEISURE_VALUES = ("park", "garden", "nature_reserve", "common")
LANDUSE_VALUES = ("recreation_ground", "village_green")

EXCLUDED_TAGS = ("playground", "dog_park", "pitch", "sports_centre")

SUSPICIOUS_NAMES = ("the point", "estate", "development", "play area",
                    "natural play area", "podium garden")

SITE_TYPE_BY_OSM_TYPE = {
    "park": "Public Park",
    "garden": "Public Gardens",
    "nature_reserve": "Nature Reserve",
    "common": "Common Land",
    "recreation_ground": "Recreation Ground",
    "village_green": "Village Green",
}


@dataclass
class CandidateFilter:
    """Which Overpass elements become candidates."""
    min_area_m2: float = 0.0
    max_area_m2: Optional[float] = None
    excluded_tags: Tuple[str, ...] = EXCLUDED_TAGS
    skip_suspicious_names: bool = False
    suspicious_names: Tuple[str, ...] = field(default=SUSPICIOUS_NAMES)


# Filter used when importing sites that are missing from the register
IMPORT_FILTER = CandidateFilter(min_area_m2=5000, max_area_m2=10_000_000, skip_suspicious_names=True)


def _tag_filters() -> List[Tuple[str, str]]:
    return [("leisure", v) for v in LEISURE_VALUES] + [("landuse", v) for v in LANDUSE_VALUES]


def build_bbox_query(bbox: Sequence[float], timeout_s: int = 180) -> str:
    """
    Overpass QL for named park-like ways and relations inside a bounding box.

    Args:
        bbox: (min_lat, min_lon, max_lat, max_lon)
        timeout_s: Server-side timeout
    """
    min_lat, min_lon, max_lat, max_lon = bbox
    area = f"({min_lat},{min_lon},{max_lat},{max_lon})"
    lines = []
    for key, value in _tag_filters():
        lines.append(f'  way["{key}"="{value}"]["name"]{area};')
        lines.append(f'  relation["{key}"="{value}"]["name"]{area};')
    body = "\n".join(lines)
    return f"[out:json][timeout:{timeout_s}];\n(\n{body}\n);\nout geom;"


def build_around_query(lat: float, lon: float, radius_m: int, timeout_s: int = 30) -> str:
    """Overpass QL for named park-like ways and relations within radius_m of a point."""
    around = f"(around:{radius_m},{lat},{lon})"
    lines = []
    for key, value in _tag_filters():
        lines.append(f'  way["{key}"="{value}"]["name"]{around};')
        lines.append(f'  relation["{key}"="{value}"]["name"]{around};')
    body = "\n".join(lines)
    return f"[out:json][timeout:{timeout_s}];\n(\n{body}\n);\nout geom;"


def _retry_overpass(request_fn: Callable[[str], requests.Response],
                    config: RetryConfig,
                    sleep: Callable[[float], None] = time.sleep) -> requests.Response:
    """
    Run an Overpass request, retrying gateway timeouts and read timeouts.

    request_fn receives the endpoint to use; endpoints rotate between
    attempts. Any other HTTP error is raised straight away.

    Raises:
        TransientNetworkError: when every attempt timed out
        APIError: on any other failure
    """
    endpoint_idx = 0
    last_error: Optional[TransientNetworkError] = None

    for attempt in range(config.max_attempts):
        endpoint = OVERPASS_URLS[endpoint_idx]
        try:
            resp = request_fn(endpoint)
        except requests.exceptions.Timeout as e:
            if not config.retry_on_timeout:
                raise TransientNetworkError(f"Overpass request timed out: {e}", "overpass", 408) from e
            last_error = TransientNetworkError(f"Overpass request timed out: {e}", "overpass", 408)
        except requests.exceptions.RequestException as e:
            raise APIError(f"Overpass request failed: {e}", "overpass") from e
        else:
            if resp.status_code == 200:
                return resp
            if resp.status_code in (429, 504) and config.retry_on_504:
                last_error = TransientNetworkError(
                    f"Overpass returned {resp.status_code}", "overpass", resp.status_code
                )
            else:
                raise APIError(f"Overpass returned {resp.status_code}", "overpass", resp.status_code)

        if attempt < config.max_attempts - 1:
            wait_time = config.wait_for(attempt)
            logger.warning(
                f"{last_error}, waiting {wait_time:.0f}s before retry ({attempt + 1}/{config.max_attempts - 1})...",
                extra={"api_name": "overpass"},
            )
            sleep(wait_time)
            if len(OVERPASS_URLS) > 1:
                endpoint_idx = (endpoint_idx + 1) % len(OVERPASS_URLS)

    logger.error(f"Overpass failed after {config.max_attempts} attempts", extra={"api_name": "overpass"})
    raise last_error


def run_query(query: str, query_type: str = "overpass", timeout_s: int = 200) -> List[Dict[str, Any]]:
    """
    POST an Overpass QL query and return its elements.

    Raises:
        TransientNetworkError, APIError
    """
    def _do_request(endpoint: str) -> requests.Response:
        log_api_call(logger, "overpass", endpoint)
        return requests.post(
            endpoint,
            data={"data": query},
            timeout=timeout_s,
            headers={"User-Agent": USER_AGENT},
        )

    resp = _retry_overpass(_do_request, get_retry_config(query_type))
    try:
        data = resp.json()
    except ValueError as e:
        raise APIError(f"Overpass returned invalid JSON: {e}", "overpass", resp.status_code) from e
    return data.get("elements", [])


def element_coordinates(element: Dict[str, Any]) -> List[List[float]]:
    """
    Raw (lon, lat) coordinates of an `out geom` element.

    Ways carry a flat geometry list. Relations carry member ways; the
    geometries of members with role "outer" are concatenated in order.
    """
    if element.get("type") == "way":
        geometry = element.get("geometry") or []
        return [[p["lon"], p["lat"]] for p in geometry if "lat" in p and "lon" in p]

    if element.get("type") == "relation":
        coords: List[List[float]] = []
        for member in element.get("members") or []:
            if member.get("role") != "outer":
                continue
            for p in member.get("geometry") or []:
                if "lat" in p and "lon" in p:
                    coords.append([p["lon"], p["lat"]])
        return coords

    return []


def _is_suspicious(name: str, suspicious_names: Iterable[str]) -> bool:
    lowered = name.lower().strip()
    return lowered in suspicious_names or "unnamed" in lowered


def _is_excluded(tags: Dict[str, str], excluded_tags: Iterable[str]) -> bool:
    leisure = tags.get("leisure")
    return any(tag in tags or leisure == tag for tag in excluded_tags)


def parse_elements(elements: Iterable[Dict[str, Any]],
                   candidate_filter: Optional[CandidateFilter] = None) -> List[BoundaryCandidate]:
    """
    Convert raw Overpass elements into boundary candidates.

    Elements without a name, with an excluded tag, with a ring that cannot be
    normalized, or outside the filter's area bounds are dropped.
    """
    candidate_filter = candidate_filter or CandidateFilter()
    candidates: List[BoundaryCandidate] = []
    seen = set()

    for element in elements:
        tags = element.get("tags") or {}
        name = tags.get("name")
        if not name:
            continue
        if _is_excluded(tags, candidate_filter.excluded_tags):
            continue
        if candidate_filter.skip_suspicious_names and _is_suspicious(name, candidate_filter.suspicious_names):
            logger.debug(f"Skipping suspicious name {name!r}")
            continue

        osm_id = f"{element.get('type')}/{element.get('id')}"
        if osm_id in seen:
            continue

        try:
            ring = normalize_polygon(element_coordinates(element))
        except MalformedGeometryError as e:
            logger.debug(f"Discarding {osm_id} ({name}): {e}", extra={"osm_id": osm_id})
            continue
        if ring is None:
            continue

        candidate = BoundaryCandidate.from_ring(
            osm_id=osm_id,
            name=name,
            type=tags.get("leisure") or tags.get("landuse") or "unknown",
            ring=ring,
            tags=tags,
        )
        if candidate.area < candidate_filter.min_area_m2:
            continue
        if candidate_filter.max_area_m2 is not None and candidate.area > candidate_filter.max_area_m2:
            continue

        seen.add(osm_id)
        candidates.append(candidate)

    return candidates


def fetch_candidates_in_bbox(bbox: Sequence[float],
                             candidate_filter: Optional[CandidateFilter] = None,
                             cache_path: Optional[Path] = None,
                             refresh: bool = False) -> List[BoundaryCandidate]:
    """
    Fetch and parse candidates inside a bounding box.

    When cache_path is given the raw elements are read from that file if it
    exists, and written to it after a successful fetch.

    Args:
        bbox: (min_lat, min_lon, max_lat, max_lon)
        candidate_filter: Element filter
        cache_path: Optional verbatim JSON cache file
        refresh: Ignore an existing cache file
    """
    elements = None
    if cache_path is not None and not refresh:
        cached_payload = load_raw_cache(cache_path)
        if isinstance(cached_payload, dict):
            elements = cached_payload.get("elements")

    if elements is None:
        start = time.time()
        elements = run_query(build_bbox_query(bbox), query_type="boundary_scan")
        logger.info(f"Overpass returned {len(elements)} elements in {time.time() - start:.1f}s")
        if cache_path is not None:
            save_raw_cache(cache_path, {"bbox": list(bbox), "elements": elements})

    return parse_elements(elements, candidate_filter)


@cached(ttl_seconds=CACHE_TTL['overpass_queries'])
def query_elements_around(lat: float, lon: float, radius_m: int) -> List[Dict[str, Any]]:
    return run_query(build_around_query(lat, lon, radius_m), query_type="radius", timeout_s=40)


def fetch_candidates_around(lat: float, lon: float, radius_m: int = 1000,
                            candidate_filter: Optional[CandidateFilter] = None) -> List[BoundaryCandidate]:
    """Fetch and parse candidates within radius_m of a point."""
    return parse_elements(query_elements_around(lat, lon, radius_m), candidate_filter)


def fetch_region_candidates(regions: Dict[str, Sequence[float]],
                            candidate_filter: Optional[CandidateFilter] = None,
                            delay_s: float = 10.0,
                            sleep: Callable[[float], None] = time.sleep) -> Dict[str, List[BoundaryCandidate]]:
    """
    Scan several regions one after another.

    A region whose query fails is logged and left out of the result.

    Returns:
        Region name -> candidates
    """
    results: Dict[str, List[BoundaryCandidate]] = {}
    names = list(regions)

    for i, region in enumerate(names):
        logger.info(f"[{i + 1}/{len(names)}] Scanning {region}...")
        try:
            results[region] = fetch_candidates_in_bbox(regions[region], candidate_filter)
            logger.info(f"{region}: {len(results[region])} candidates")
        except APIError as e:
            logger.error(f"Skipping {region}: {e}", extra={"api_name": "overpass", "error_type": type(e).__name__})

        if i < len(names) - 1:
            sleep(delay_s)

    return results


def site_type_for(osm_type: str) -> str:
    return SITE_TYPE_BY_OSM_TYPE.get(osm_type, "Public Park")


def open_to_public_for(tags: Dict[str, str]) -> str:
    """A missing access tag, "yes" or "permissive" counts as public."""
    access = tags.get("access")
    return "Yes" if access in (None, "yes", "permissive") else "No"
