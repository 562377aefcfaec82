"""
Match ranking
Ranks boundary candidates for a site, classifies the result and writes the
chosen polygon back to the site. Also holds the duplicate checks used when
importing candidates that have no site yet.
"""

import functools
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Sequence

from data_sources.overpass_api import open_to_public_for, site_type_for
from data_sources.utils import haversine_distance, polygon_overlap_score
from logging_config import get_logger, log_match_result
from .batch import BatchSummary, run_sequential
from .models import (
    AMBIGUOUS, MATCHED, NO_MATCH, OSM_IMPORT_REF, UNRESOLVED,
    BoundaryCandidate, Site,
)
from .names import are_similar_names, name_score

logger = get_logger(__name__)

DEFAULT_RADIUS_M = 500

STRONG_NAME_SCORE = 0.7
WEAK_NAME_SCORE = 0.5
NEAR_DISTANCE_M = 200
# Name scores closer than this are treated as a tie and broken by area
NAME_BAND = 0.2
MAX_ALTERNATIVES = 4

NAME_METHOD = "tokens"


@dataclass
class RankingResult:
    status: str
    ranked: List[BoundaryCandidate]

    @property
    def best(self) -> Optional[BoundaryCandidate]:
        return self.ranked[0] if self.ranked else None

    @property
    def alternatives(self) -> List[BoundaryCandidate]:
        return self.ranked[1:1 + MAX_ALTERNATIVES]


def score_candidates(site: Site, candidates: Iterable[BoundaryCandidate],
                     radius_m: float = DEFAULT_RADIUS_M,
                     method: str = NAME_METHOD) -> List[BoundaryCandidate]:
    """
    Annotate candidates with distance and name score, keeping those within radius_m.

    Distance is measured from the site point to the candidate's bbox midpoint.
    The input candidates are not modified.
    """
    if not site.has_location:
        return []

    scored = []
    for candidate in candidates:
        c_lat, c_lon = candidate.center
        distance = haversine_distance(site.latitude, site.longitude, c_lat, c_lon)
        if distance > radius_m:
            continue
        scored.append(replace(
            candidate,
            distance=distance,
            name_score=name_score(site.name, candidate.name, method=method) if candidate.name else 0.0,
        ))
    return scored


def _within_band(a: float, b: float) -> bool:
    return round(abs(a - b), 6) < NAME_BAND


def _compare(a: BoundaryCandidate, b: BoundaryCandidate) -> int:
    a_strong = a.name_score >= STRONG_NAME_SCORE
    b_strong = b.name_score >= STRONG_NAME_SCORE
    if a_strong and not b_strong:
        return -1
    if b_strong and not a_strong:
        return 1
    if _within_band(a.name_score, b.name_score):
        if a.area != b.area:
            return -1 if a.area > b.area else 1
        return 0
    return -1 if a.name_score > b.name_score else 1


def rank_candidates(scored: Sequence[BoundaryCandidate]) -> List[BoundaryCandidate]:
    """
    Order scored candidates best first.

    Strong names (>= 0.7) come before weak ones whatever the distance. Within
    a name band the larger area wins, so a whole park beats a feature inside
    it; otherwise the higher name score wins.
    """
    return sorted(scored, key=functools.cmp_to_key(_compare))


def _is_contender(top: BoundaryCandidate, runner_up: Optional[BoundaryCandidate]) -> bool:
    if runner_up is None or runner_up.name_score < WEAK_NAME_SCORE:
        return False
    # An exact name match is decisive unless the runner-up is exact too
    if top.name_score >= 1.0:
        return runner_up.name_score >= 1.0
    return True


def classify(ranked: Sequence[BoundaryCandidate]) -> str:
    """
    Confidence tier for a ranked candidate list.

    Returns:
        "no_match", "ambiguous" or "matched"
    """
    if not ranked:
        return NO_MATCH

    top = ranked[0]
    runner_up = ranked[1] if len(ranked) > 1 else None

    if top.name_score < WEAK_NAME_SCORE and top.distance > NEAR_DISTANCE_M:
        return AMBIGUOUS
    if _is_contender(top, runner_up):
        return AMBIGUOUS
    if top.name_score >= STRONG_NAME_SCORE:
        return MATCHED
    if top.distance <= NEAR_DISTANCE_M and top.name_score >= WEAK_NAME_SCORE:
        return MATCHED
    return AMBIGUOUS


def rank_site(site: Site, candidates: Iterable[BoundaryCandidate],
              radius_m: float = DEFAULT_RADIUS_M) -> RankingResult:
    ranked = rank_candidates(score_candidates(site, candidates, radius_m))
    return RankingResult(status=classify(ranked), ranked=ranked)


def apply_ranking(site: Site, result: RankingResult) -> Site:
    """
    Write a ranking result onto a site.

    The top candidate becomes the site's polygon for matched sites, and the
    provisional current match for ambiguous ones. Up to MAX_ALTERNATIVES
    runner-ups are kept as alternatives either way.
    """
    site.match_status = result.status
    site.alternatives = [c.to_summary() for c in result.alternatives]

    best = result.best
    if result.status in (MATCHED, AMBIGUOUS) and best is not None:
        site.polygon = best.ring
        site.osm_id = best.osm_id
        site.match_score = best.name_score
    else:
        site.clear_match()
        site.match_score = None

    log_match_result(logger, site.id, site.name, site.match_status,
                     score=site.match_score, osm_id=site.osm_id,
                     alternatives=len(site.alternatives))
    return site


def resolve_sites(store, candidates: Sequence[BoundaryCandidate],
                  radius_m: float = DEFAULT_RADIUS_M,
                  statuses: Sequence[str] = (UNRESOLVED,),
                  delay_s: float = 0.0) -> BatchSummary:
    """
    Rank every site in the given statuses against one candidate pool and save the result.

    Sites without a point location are skipped.
    """
    sites = store.list(statuses=statuses)
    logger.info(f"Resolving {len(sites)} sites against {len(candidates)} candidates")

    def _resolve(site: Site) -> Optional[str]:
        if not site.has_location:
            return None
        apply_ranking(site, rank_site(site, candidates, radius_m))
        store.save(site)
        return site.match_status

    return run_sequential(sites, _resolve, delay_s=delay_s, label="resolve_sites",
                          describe=lambda s: s.name)


def find_existing_site(candidate: BoundaryCandidate, sites: Iterable[Site]) -> Optional[Site]:
    """
    First site that already represents the candidate, if any.

    A site matches when it carries the same OSM id, when its polygon overlaps
    the candidate's (score above 0.8), when its point lies within 50 m with a
    similar name or within 20 m regardless of name, or when the names are
    similar and the point lies within 200 m.
    """
    c_lat, c_lon = candidate.center

    for site in sites:
        if site.osm_id and site.osm_id == candidate.osm_id:
            return site
        if site.polygon is not None and polygon_overlap_score(candidate.ring, site.polygon) > 0.8:
            return site
        if not site.has_location:
            continue
        distance = haversine_distance(c_lat, c_lon, site.latitude, site.longitude)
        if distance < 20:
            return site
        if distance < NEAR_DISTANCE_M and are_similar_names(candidate.name, site.name):
            return site

    return None


def find_missing_candidates(candidates: Iterable[BoundaryCandidate],
                            sites: Sequence[Site]) -> List[BoundaryCandidate]:
    """Candidates with no existing site, largest first, with duplicate OSM ids removed."""
    missing = []
    seen = set()
    for candidate in candidates:
        if candidate.osm_id in seen:
            continue
        seen.add(candidate.osm_id)
        if find_existing_site(candidate, sites) is None:
            missing.append(candidate)
    return sorted(missing, key=lambda c: c.area, reverse=True)


def site_from_candidate(candidate: BoundaryCandidate, borough: Optional[str] = None) -> Site:
    """
    New site for an imported candidate.

    Imported sites start ambiguous with a 0.5 score so they go through review.
    """
    c_lat, c_lon = candidate.center
    return Site(
        name=candidate.name,
        borough=borough,
        site_type=site_type_for(candidate.type),
        open_to_public=open_to_public_for(candidate.tags),
        latitude=c_lat,
        longitude=c_lon,
        polygon=candidate.ring,
        match_status=AMBIGUOUS,
        match_score=0.5,
        osm_id=candidate.osm_id,
        site_ref=OSM_IMPORT_REF,
    )
