"""
Arbitration of ambiguous matches.

An ambiguous site is packaged with its current match and nearby alternatives
and handed to an Arbitrator, which answers with a recommendation and a
confidence. The decision is validated against the candidates that were
actually offered and only applied when it clears the confidence gate for its
kind; everything else is queued for manual review.
"""

import json
import math
import os
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from data_sources.error_handling import (
    ArbitrationParseError, MalformedGeometryError, ThresholdNotMet,
)
from logging_config import get_logger
from .batch import BatchSummary, run_sequential
from .models import (
    AMBIGUOUS, MANUAL_REVIEW, MATCHED, NO_MATCH, OSM_IMPORT_REF, REJECTED,
    VERIFIED, VERIFIED_ALTERNATIVE, BoundaryCandidate, Site, normalize_polygon,
)
from .ranker import rank_candidates, score_candidates

logger = get_logger(__name__)

CONFIRM = "confirm"
ALTERNATIVE_FOUND = "alternative_found"
REJECT = "reject"
MANUAL = "manual_review"
RECOMMENDATIONS = (CONFIRM, ALTERNATIVE_FOUND, REJECT, MANUAL)

ARBITRATION_RADIUS_M = 1000
MAX_OFFERED = 5

# Only sites the public can get into are worth arbitrating
PUBLIC_ACCESS_VALUES = ("Yes", "Partially", "Occasionally")

# Status written when importing exported results
RESULT_STATUS = {
    CONFIRM: VERIFIED,
    ALTERNATIVE_FOUND: VERIFIED_ALTERNATIVE,
    REJECT: REJECTED,
    MANUAL: MANUAL_REVIEW,
}

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


@dataclass
class ArbitrationThresholds:
    """Minimum confidence (0-100) needed to apply each recommendation automatically."""
    confirm: float = 85
    alternative: float = 85
    reject: float = 90

    @classmethod
    def from_env(cls) -> "ArbitrationThresholds":
        defaults = cls()
        return cls(
            confirm=float(os.getenv("ARBITRATION_CONFIRM_THRESHOLD", defaults.confirm)),
            alternative=float(os.getenv("ARBITRATION_ALTERNATIVE_THRESHOLD", defaults.alternative)),
            reject=float(os.getenv("ARBITRATION_REJECT_THRESHOLD", defaults.reject)),
        )

    def required_for(self, recommendation: str) -> Optional[float]:
        return {
            CONFIRM: self.confirm,
            ALTERNATIVE_FOUND: self.alternative,
            REJECT: self.reject,
        }.get(recommendation)


@dataclass
class ArbitrationRequest:
    site: Dict[str, Any]
    current_match: Optional[Dict[str, Any]]
    alternatives: List[Dict[str, Any]] = field(default_factory=list)
    context_notes: Optional[str] = None

    @property
    def offered_ids(self) -> List[str]:
        return [a["osm_id"] for a in self.alternatives]

    def alternative(self, osm_id: str) -> Optional[Dict[str, Any]]:
        for alt in self.alternatives:
            if alt["osm_id"] == osm_id:
                return alt
        return None


@dataclass
class Decision:
    recommendation: str
    confidence: float
    reasoning: str
    selected_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def manual_review(reasoning: str) -> Decision:
    return Decision(recommendation=MANUAL, confidence=0, reasoning=reasoning)


class Arbitrator(Protocol):
    """Anything that can turn an ArbitrationRequest into a Decision."""

    def decide(self, request: ArbitrationRequest) -> Decision:
        ...


def build_request(site: Site, candidates: Sequence[BoundaryCandidate]) -> ArbitrationRequest:
    """
    Package a site and its ranked candidates for arbitration.

    The current match is left out of the alternatives; at most MAX_OFFERED
    alternatives are offered.
    """
    current = None
    if site.polygon is not None and site.osm_id:
        current = {"osm_id": site.osm_id, "match_score": site.match_score}

    offered = [c for c in candidates if c.osm_id != site.osm_id][:MAX_OFFERED]

    return ArbitrationRequest(
        site={
            "id": site.id,
            "name": site.name,
            "borough": site.borough,
            "site_type": site.site_type,
            "latitude": site.latitude,
            "longitude": site.longitude,
            "wikidata_verified": site.wikidata_verified,
            "wikidata_score": site.wikidata_score,
        },
        current_match=current,
        alternatives=[c.to_summary() for c in offered],
        context_notes=site.context_notes,
    )


_RULES = """POLYGON SELECTION RULES (CRITICAL - FOLLOW THESE):

1. SIZE & SCOPE PRIORITY:
   - For large parks (>10 hectares), ALWAYS prefer the LARGEST comprehensive polygon
   - Major parks must be single unified polygons
   - Reject smaller subset polygons (specific features, ponds, sections within parks)
   - The polygon should represent the FULL extent of the park as a complete entity

2. COMMONS & HEATHS:
   - Commons and heaths should be complete unified areas
   - Never accept fragmented sections

3. NAME MATCHING:
   - Ignore "The" prefix ("The Regent's Park" = "Regent's Park")
   - Match with/without apostrophes ("St James's" = "St James")
   - "X Square" matches "X Square Gardens"
   - Exact park name match, not street names containing the word (e.g., "Hampstead Heath" is not "Heath Street")

4. PARK TYPE VALIDATION:
   - Public Parks: expect large unified areas
   - Private Gardens: small single polygons acceptable
   - Churchyards: small bounded areas
   - Large cemeteries: full areas
   - Nature Reserves: prefer unified but fragmented OK if necessary

5. OSM TAG PREFERENCES:
   - Prefer leisure=park for major parks
   - Accept landuse=recreation_ground for appropriate cases
   - Reject polygons tagged as buildings, parking, sports pitches

6. POLYGON QUALITY:
   - Must be closed polygon (complete boundary)
   - Linear parks (canal paths, riverside) can be long/thin, that's OK
   - Don't reject based on unusual aspect ratios for linear parks

7. DUPLICATE DETECTION:
   - If current and alternative have >80% geographic overlap, they're the same park
   - Choose the one with better name match"""


def render_prompt(request: ArbitrationRequest) -> str:
    """Natural-language prompt for a language-model arbitrator."""
    site = request.site

    if request.current_match:
        current = (f"Current matched polygon: {request.current_match['osm_id']} "
                   f"(OSM score: {request.current_match.get('match_score')})")
    else:
        current = "No current polygon"

    alternatives = "\n\n".join(
        f"{i + 1}. OSM ID: {alt['osm_id']}\n"
        f"   Name: \"{alt['name']}\" (similarity: {(alt.get('name_score') or 0) * 100:.0f}%)\n"
        f"   Type: {alt['type']}\n"
        f"   Distance: {alt.get('distance') or 0:.0f}m from park center\n"
        f"   Area: {alt.get('area') or 0:.0f} m2\n"
        f"   Tags: {json.dumps(alt.get('tags') or {})}"
        for i, alt in enumerate(request.alternatives)
    ) or "No alternatives found"

    context = f"\nADDITIONAL CONTEXT:\n{request.context_notes}\n" if request.context_notes else ""

    return f"""You are analyzing park polygon matches from OpenStreetMap data. Your task is to determine the BEST polygon match for this park from all available options.

PARK DETAILS:
- Name: {site['name']}
- Borough: {site.get('borough')}
- Type: {site.get('site_type')}
- Location: {site.get('latitude')}, {site.get('longitude')}
{context}
CURRENT MATCH:
{current}
- Wikidata Verified: {"Yes" if site.get('wikidata_verified') else "No"}
- Wikidata Score: {site.get('wikidata_score') or "N/A"}

ALTERNATIVE POLYGONS FOUND (within {ARBITRATION_RADIUS_M}m):
{alternatives}

{_RULES}

ANALYSIS TASK:
Compare ALL polygons (current + alternatives) and determine which is the BEST match for "{site['name']}".

Provide a recommendation:
   - "confirm": The current polygon is correct
   - "alternative_found": One of the alternatives is better (specify which OSM ID)
   - "reject": ONLY if NO alternatives exist AND current is clearly wrong
   - "manual_review": Uncertain, requires human verification

IMPORTANT: If alternatives exist and current polygon seems wrong, you MUST choose "alternative_found"
with the best alternative. Do NOT use "reject" when alternatives are available.

Respond ONLY with a JSON object in this exact format (no markdown, no extra text):
{{
  "recommendation": "confirm|alternative_found|reject|manual_review",
  "confidence": 85,
  "reasoning": "Brief explanation",
  "selectedOsmId": "way/12345 or relation/67890 (only if recommendation is confirm or alternative_found)"
}}"""


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text.strip()).strip()


def _parse_json(text: str) -> Dict[str, Any]:
    try:
        data = json.loads(strip_code_fences(text or ""))
    except ValueError as e:
        raise ArbitrationParseError(f"response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ArbitrationParseError("response is not a JSON object")
    return data


def validate_decision(decision: Decision, request: ArbitrationRequest) -> Decision:
    """
    Check a decision against what was offered.

    Unknown recommendations, an alternative that was not offered, or a
    confirmation naming some other polygon become manual_review with zero
    confidence.
    """
    if decision.recommendation not in RECOMMENDATIONS:
        return manual_review(f"Unknown recommendation {decision.recommendation!r}: {decision.reasoning}")

    if decision.recommendation == ALTERNATIVE_FOUND:
        if decision.selected_id not in request.offered_ids:
            return manual_review(
                f"Selected polygon {decision.selected_id!r} was not among the offered alternatives: "
                f"{decision.reasoning}"
            )

    if decision.recommendation == CONFIRM and decision.selected_id:
        current_id = request.current_match["osm_id"] if request.current_match else None
        if decision.selected_id != current_id:
            if decision.selected_id in request.offered_ids:
                # Confirming an alternative means choosing it
                return Decision(ALTERNATIVE_FOUND, decision.confidence, decision.reasoning, decision.selected_id)
            return manual_review(
                f"Confirmed polygon {decision.selected_id!r} is not the current match: {decision.reasoning}"
            )

    return decision


def parse_decision(text: str, request: ArbitrationRequest) -> Decision:
    """
    Parse and validate an arbitrator's raw response. Never raises.

    Code fences around the JSON are ignored. Anything unparseable becomes
    manual_review with zero confidence.
    """
    try:
        data = _parse_json(text)
    except ArbitrationParseError as e:
        logger.warning(f"Could not parse arbitration response: {e}", extra={"error_type": "arbitration_parse"})
        return manual_review(f"Failed to parse response: {e}")

    try:
        confidence = float(data.get("confidence", 0))
    except (TypeError, ValueError):
        confidence = 0.0
    if not math.isfinite(confidence):
        logger.warning(f"Arbitration confidence {data.get('confidence')!r} is not a number",
                       extra={"error_type": "arbitration_parse"})
        return manual_review(f"Unusable confidence {data.get('confidence')!r}: {data.get('reasoning', '')}")
    confidence = max(0.0, min(100.0, confidence))

    selected = data.get("selectedOsmId") or None
    decision = Decision(
        recommendation=str(data.get("recommendation", "")).strip(),
        confidence=confidence,
        reasoning=str(data.get("reasoning", "")),
        selected_id=str(selected) if selected is not None else None,
    )
    return validate_decision(decision, request)


def check_threshold(decision: Decision, thresholds: ArbitrationThresholds) -> None:
    """
    Raises:
        ThresholdNotMet: for manual_review, or any recommendation below its threshold
    """
    required = thresholds.required_for(decision.recommendation)
    if required is None or not math.isfinite(decision.confidence) or decision.confidence < required:
        raise ThresholdNotMet(decision.recommendation, decision.confidence,
                              required if required is not None else 100)


def _queue(site: Site, reasoning: str) -> str:
    site.match_status = MANUAL_REVIEW
    site.review_notes = reasoning
    return "queued"


def apply_decision(site: Site, decision: Decision, request: ArbitrationRequest,
                   thresholds: Optional[ArbitrationThresholds] = None) -> str:
    """
    Apply a validated decision to a site.

    Returns:
        "confirmed", "alternative_applied", "rejected" or "queued"
    """
    thresholds = thresholds or ArbitrationThresholds()

    try:
        check_threshold(decision, thresholds)
    except ThresholdNotMet as e:
        logger.info(f"Queueing {site.name} for review: {e}", extra={"site_id": site.id})
        return _queue(site, decision.reasoning)

    if decision.recommendation == CONFIRM:
        if site.polygon is None:
            return _queue(site, f"Confirmed without a current polygon: {decision.reasoning}")
        site.match_status = VERIFIED
        site.alternatives = []
        site.review_notes = decision.reasoning
        return "confirmed"

    if decision.recommendation == ALTERNATIVE_FOUND:
        chosen = request.alternative(decision.selected_id)
        try:
            ring = normalize_polygon(chosen["polygon"]) if chosen else None
        except MalformedGeometryError as e:
            ring = None
            logger.warning(f"Selected alternative for {site.name} is malformed: {e}", extra={"site_id": site.id})
        if ring is None:
            return _queue(site, f"Selected alternative has no usable polygon: {decision.reasoning}")
        site.polygon = ring
        site.osm_id = decision.selected_id
        site.match_score = 1.0
        site.match_status = VERIFIED_ALTERNATIVE
        site.alternatives = []
        site.review_notes = decision.reasoning
        return "alternative_applied"

    # reject
    site.clear_match()
    site.match_score = None
    site.match_status = REJECTED
    site.alternatives = []
    site.review_notes = decision.reasoning
    return "rejected"


def arbitrate_site(site: Site, arbitrator: Arbitrator,
                   fetch_candidates: Callable[[float, float, int], List[BoundaryCandidate]],
                   thresholds: Optional[ArbitrationThresholds] = None,
                   auto_apply: bool = True) -> Tuple[Decision, Optional[str], ArbitrationRequest]:
    """
    Arbitrate one ambiguous site.

    Candidates are fetched fresh within ARBITRATION_RADIUS_M of the site,
    ranked, and offered with the current match. The offered alternatives (up
    to MAX_OFFERED, one more than the ranker keeps) replace site.alternatives
    even when auto_apply is off, so an exported result imported later by
    apply_review_results, or a manual choice, refers to the same list.

    Returns:
        (decision, outcome or None when not applied, request)
    """
    candidates = fetch_candidates(site.latitude, site.longitude, ARBITRATION_RADIUS_M)
    ranked = rank_candidates(score_candidates(site, candidates, ARBITRATION_RADIUS_M))
    request = build_request(site, ranked)
    site.alternatives = list(request.alternatives)

    decision = validate_decision(arbitrator.decide(request), request)
    logger.info(
        f"{site.name}: {decision.recommendation} ({decision.confidence:.0f}%)",
        extra={"site_id": site.id, "status": decision.recommendation},
    )

    outcome = apply_decision(site, decision, request, thresholds) if auto_apply else None
    return decision, outcome, request


def select_sites_for_arbitration(sites: Sequence[Site], include_imported: bool = False) -> List[Site]:
    """Ambiguous, located, publicly accessible sites."""
    selected = []
    for site in sites:
        if site.match_status != AMBIGUOUS or not site.has_location:
            continue
        if site.open_to_public not in PUBLIC_ACCESS_VALUES:
            continue
        if not include_imported and site.site_ref == OSM_IMPORT_REF:
            continue
        selected.append(site)
    return selected


def arbitrate_sites(store, arbitrator: Arbitrator,
                    fetch_candidates: Callable[[float, float, int], List[BoundaryCandidate]],
                    thresholds: Optional[ArbitrationThresholds] = None,
                    auto_apply: bool = False,
                    include_imported: bool = False,
                    limit: Optional[int] = None,
                    delay_s: float = 2.0) -> Tuple[BatchSummary, List[Dict[str, Any]]]:
    """
    Arbitrate every eligible ambiguous site in the store.

    Returns:
        (summary keyed by recommendation, exportable result rows)
    """
    sites = select_sites_for_arbitration(store.list(statuses=[AMBIGUOUS]), include_imported)
    if limit is not None:
        sites = sites[:limit]
    logger.info(f"Arbitrating {len(sites)} ambiguous sites")

    results: List[Dict[str, Any]] = []

    def _arbitrate(site: Site) -> str:
        decision, outcome, request = arbitrate_site(site, arbitrator, fetch_candidates, thresholds, auto_apply)
        store.save(site)
        results.append({
            "site_id": site.id,
            "name": site.name,
            "borough": site.borough,
            "current_osm_id": request.current_match["osm_id"] if request.current_match else None,
            "alternatives_found": len(request.alternatives),
            "recommendation": decision.recommendation,
            "confidence": decision.confidence,
            "reasoning": decision.reasoning,
            "selected_osm_id": decision.selected_id,
            "outcome": outcome,
        })
        return decision.recommendation

    summary = run_sequential(sites, _arbitrate, delay_s=delay_s, label="arbitrate",
                             describe=lambda s: s.name)
    return summary, results


def apply_review_results(store, results: Sequence[Dict[str, Any]]) -> BatchSummary:
    """
    Import exported arbitration results.

    Each recommendation maps to a status. Sites already verified are left
    alone. An alternative_found result is only honoured when the selected
    polygon is still among the site's alternatives, and a confirm only when
    the site has a polygon; otherwise the site goes to manual review.
    """
    def _import(result: Dict[str, Any]) -> Optional[str]:
        site = store.get(int(result["site_id"]))
        if site is None or site.match_status == VERIFIED:
            return None

        recommendation = result.get("recommendation")
        status = RESULT_STATUS.get(recommendation, AMBIGUOUS)
        reasoning = result.get("reasoning") or ""

        if status == VERIFIED_ALTERNATIVE:
            selected = result.get("selected_osm_id")
            chosen = next((a for a in site.alternatives if a.get("osm_id") == selected), None)
            try:
                ring = normalize_polygon(chosen["polygon"]) if chosen else None
            except MalformedGeometryError:
                ring = None
            if ring is None:
                status = MANUAL_REVIEW
            else:
                site.polygon = ring
                site.osm_id = selected
                site.match_score = 1.0
                site.alternatives = []
        elif status == VERIFIED:
            if site.polygon is None:
                status = MANUAL_REVIEW
            else:
                site.alternatives = []
        elif status == REJECTED:
            site.clear_match()
            site.match_score = None
            site.alternatives = []

        site.match_status = status
        site.review_notes = reasoning
        store.save(site)
        return status

    return run_sequential(results, _import, label="import_review_results",
                          describe=lambda r: str(r.get("site_id")))


def confirm_polygon_choice(site: Site, polygon_index: Optional[int] = None, no_match: bool = False) -> Site:
    """
    Resolve a site by hand.

    polygon_index 0 keeps the current polygon, k > 0 selects alternative k,
    and no_match clears the polygon. Alternatives are cleared in every case.

    Raises:
        ValueError: for an index outside the available choices
        MalformedGeometryError: if the chosen alternative's polygon is unusable
    """
    if no_match:
        site.clear_match()
        site.match_status = NO_MATCH
        site.match_score = None
        site.alternatives = []
        return site

    if polygon_index is None:
        raise ValueError("polygon_index is required unless no_match is set")

    if polygon_index == 0:
        if site.polygon is None:
            raise ValueError("site has no current polygon to keep")
    else:
        if polygon_index < 0 or polygon_index > len(site.alternatives):
            raise ValueError(f"polygon_index {polygon_index} is out of range")
        chosen = site.alternatives[polygon_index - 1]
        site.polygon = normalize_polygon(chosen["polygon"])
        site.osm_id = chosen.get("osm_id")
        site.match_score = chosen.get("name_score")

    site.match_status = MATCHED
    site.alternatives = []
    return site
