"""
Wikidata corroboration
Matches each site to the nearest similarly named Wikidata park and records
the result as supporting evidence. Never touches polygon or match status.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from data_sources.utils import haversine_distance
from data_sources.wikidata_api import WikidataItem
from logging_config import get_logger
from .batch import BatchSummary, run_sequential
from .models import AMBIGUOUS, Site
from .names import name_score

logger = get_logger(__name__)

MAX_DISTANCE_M = 500
NAME_WEIGHT = 0.7
DISTANCE_WEIGHT = 0.3
ACCEPT_SCORE = 0.5
# Ambiguous sites at or above this score are reported as strengthened
STRONG_SCORE = 0.7


@dataclass
class EvidenceMatch:
    item: WikidataItem
    distance: float
    name_score: float
    combined: float


def combined_score(name_similarity: float, distance_m: float,
                   max_distance_m: float = MAX_DISTANCE_M) -> float:
    distance_score = max(0.0, 1 - distance_m / max_distance_m)
    return NAME_WEIGHT * name_similarity + DISTANCE_WEIGHT * distance_score


def best_evidence(site: Site, items: Iterable[WikidataItem],
                  max_distance_m: float = MAX_DISTANCE_M) -> Optional[EvidenceMatch]:
    """
    Highest scoring item within max_distance_m of the site.

    Returns:
        The best match if its combined score reaches ACCEPT_SCORE, else None
    """
    if not site.has_location:
        return None

    best: Optional[EvidenceMatch] = None
    for item in items:
        distance = haversine_distance(site.latitude, site.longitude, item.latitude, item.longitude)
        if distance > max_distance_m:
            continue
        similarity = name_score(site.name, item.label, method="tokens", ignore_generic=True)
        score = combined_score(similarity, distance, max_distance_m)
        if best is None or score > best.combined:
            best = EvidenceMatch(item=item, distance=distance, name_score=similarity, combined=score)

    if best is None or best.combined < ACCEPT_SCORE:
        return None
    return best


def apply_evidence(site: Site, match: EvidenceMatch) -> Site:
    site.wikidata_id = match.item.qid
    site.wikidata_verified = True
    site.wikidata_score = round(match.combined, 2)
    return site


def verify_sites(store, items: Sequence[WikidataItem]) -> BatchSummary:
    """
    Corroborate every located site against a list of Wikidata items.

    Outcomes: "verified", "strengthened" (ambiguous site with a strong match)
    and "no_evidence".
    """
    sites = store.list(with_location=True)
    logger.info(f"Verifying {len(sites)} sites against {len(items)} Wikidata items")

    def _verify(site: Site) -> str:
        match = best_evidence(site, items)
        if match is None:
            return "no_evidence"
        apply_evidence(site, match)
        store.save(site)
        if site.match_status == AMBIGUOUS and match.combined >= STRONG_SCORE:
            logger.info(
                f"Verified: {site.name} -> {match.item.label} "
                f"({round(match.distance)}m, score: {match.combined:.2f})",
                extra={"site_id": site.id},
            )
            return "strengthened"
        return "verified"

    return run_sequential(sites, _verify, label="verify_wikidata", describe=lambda s: s.name)
