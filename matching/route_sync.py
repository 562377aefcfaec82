"""
Route intersection
Decides which sites a recorded route passed through and marks them completed.

A site with a usable polygon is crossed when a route vertex falls inside it.
A site with only a point location is crossed when a route vertex passes
within PARK_PROXIMITY_METERS of it. Sites already completed are never
re-evaluated, so syncing the same route twice marks nothing the second time.

Cost is O(sites x route vertices); a bounding-box check skips polygons the
route cannot reach.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from data_sources.error_handling import MalformedGeometryError
from data_sources.utils import (
    BBox, bboxes_intersect, min_distance_to_path, path_bbox,
    path_crosses_polygon, ring_bbox,
)
from logging_config import get_logger, log_performance
from .models import Site
from .polyline import decode_polyline

logger = get_logger(__name__)

PARK_PROXIMITY_METERS = 100
DEFAULT_MAX_SITES = 10000
DEFAULT_MAX_ROUTES = 50

Route = Tuple[Tuple[float, float], ...]


class SyncState(Enum):
    IDLE = "idle"
    DECODING = "decoding"
    SCANNING = "scanning"
    PERSISTING = "persisting"
    DONE = "done"


@dataclass
class SyncResult:
    completed_site_ids: List[int] = field(default_factory=list)
    completed_names: List[str] = field(default_factory=list)
    routes_processed: int = 0
    route_errors: int = 0
    sites_scanned: int = 0
    sites_skipped: int = 0
    site_errors: int = 0
    message: str = ""

    @property
    def parks_completed(self) -> int:
        return len(self.completed_site_ids)

    def to_dict(self) -> Dict:
        return {
            "parksCompleted": self.parks_completed,
            "completedSiteIds": list(self.completed_site_ids),
            "completedNames": list(self.completed_names),
            "routesProcessed": self.routes_processed,
            "routeErrors": self.route_errors,
            "sitesScanned": self.sites_scanned,
            "sitesSkipped": self.sites_skipped,
            "siteErrors": self.site_errors,
            "message": self.message,
        }


def activity_message(parks_completed: int) -> str:
    if parks_completed == 0:
        return "No new parks were run through in this activity"
    return f"Marked {parks_completed} park(s) as completed!"


def batch_message(runs: int, parks_completed: int) -> str:
    return f"Processed {runs} runs, marked {parks_completed} new park(s) as completed"


def site_intersects(site: Site, route: Sequence[Tuple[float, float]],
                    route_box: Optional[BBox] = None,
                    proximity_m: float = PARK_PROXIMITY_METERS) -> Optional[bool]:
    """
    Whether a route passes through a site.

    Returns:
        True or False, or None when the site has neither a polygon nor a
        point location and cannot be evaluated
    """
    if site.polygon is not None and len(site.polygon) >= 3:
        if route_box is not None and not bboxes_intersect(route_box, ring_bbox(site.polygon)):
            return False
        return path_crosses_polygon(route, site.polygon)

    if site.has_location:
        distance = min_distance_to_path(site.latitude, site.longitude, route)
        return distance is not None and distance <= proximity_m

    return None


@dataclass
class ScanOutcome:
    hits: List[Site] = field(default_factory=list)
    scanned: int = 0
    skipped: int = 0
    errors: int = 0


def scan_sites(route: Sequence[Tuple[float, float]], sites: Sequence[Site],
               proximity_m: float = PARK_PROXIMITY_METERS) -> ScanOutcome:
    """Evaluate every not-yet-completed site against one route. A failing site is counted, not raised."""
    outcome = ScanOutcome()
    if not route:
        return outcome
    route_box = path_bbox(route)

    for site in sites:
        if site.completed:
            continue
        try:
            hit = site_intersects(site, route, route_box, proximity_m)
        except (MalformedGeometryError, ValueError, TypeError, ZeroDivisionError) as e:
            outcome.errors += 1
            logger.warning(f"Could not evaluate {site.name}: {e}",
                           extra={"site_id": site.id, "error_type": type(e).__name__})
            continue
        if hit is None:
            outcome.skipped += 1
            continue
        outcome.scanned += 1
        if hit:
            outcome.hits.append(site)

    return outcome


class RouteIntersectionEngine:
    """
    Marks sites completed from encoded routes.

    Each call moves through IDLE, DECODING, SCANNING, PERSISTING and DONE.
    At most max_sites sites and max_routes routes are considered per call.
    """

    def __init__(self, store, proximity_m: float = PARK_PROXIMITY_METERS,
                 max_sites: int = DEFAULT_MAX_SITES, max_routes: int = DEFAULT_MAX_ROUTES,
                 clock: Callable[[], datetime] = None):
        self.store = store
        self.proximity_m = proximity_m
        self.max_sites = max_sites
        self.max_routes = max_routes
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.state = SyncState.IDLE

    def _pending_sites(self) -> List[Site]:
        return self.store.list(completed=False, limit=self.max_sites)

    def _scan(self, routes: Sequence[Route], result: SyncResult) -> List[Site]:
        self.state = SyncState.SCANNING
        pending = self._pending_sites()
        hits: List[Site] = []
        for route in routes:
            outcome = scan_sites(route, pending, self.proximity_m)
            result.sites_scanned += outcome.scanned
            result.sites_skipped += outcome.skipped
            result.site_errors += outcome.errors
            hit_ids = {s.id for s in outcome.hits}
            hits.extend(outcome.hits)
            pending = [s for s in pending if s.id not in hit_ids]
        return hits

    def _persist(self, hits: List[Site], result: SyncResult) -> None:
        self.state = SyncState.PERSISTING
        newly = set(self.store.complete_pending([s.id for s in hits], self.clock())) if hits else set()
        if len(newly) < len(hits):
            logger.info(f"{len(hits) - len(newly)} site(s) were completed by another sync")
        done = [s for s in hits if s.id in newly]
        result.completed_site_ids = [s.id for s in done]
        result.completed_names = [s.name for s in done]

    def sync_route(self, encoded: str) -> SyncResult:
        """
        Sync one encoded route.

        Raises:
            MalformedGeometryError: if the polyline cannot be decoded
        """
        start = self.clock()
        self.state = SyncState.DECODING
        try:
            route = tuple(decode_polyline(encoded or ""))
        except MalformedGeometryError:
            self.state = SyncState.IDLE
            raise

        result = SyncResult(routes_processed=1)
        hits = self._scan([route], result)
        self._persist(hits, result)
        result.message = activity_message(result.parks_completed)
        self.state = SyncState.DONE
        log_performance(logger, "sync_route", (self.clock() - start).total_seconds(),
                        parks_completed=result.parks_completed, points=len(route))
        return result

    def sync_routes(self, encoded_routes: Sequence[str]) -> SyncResult:
        """
        Sync several encoded routes (at most max_routes) in one pass.

        Routes that cannot be decoded are counted in route_errors and skipped.
        """
        start = self.clock()
        self.state = SyncState.DECODING
        result = SyncResult()

        routes: List[Route] = []
        for encoded in list(encoded_routes)[:self.max_routes]:
            try:
                routes.append(tuple(decode_polyline(encoded)))
            except MalformedGeometryError as e:
                result.route_errors += 1
                logger.warning(f"Skipping undecodable route: {e}", extra={"error_type": "malformed_geometry"})
        result.routes_processed = len(routes)

        hits = self._scan(routes, result)
        self._persist(hits, result)
        result.message = batch_message(result.routes_processed, result.parks_completed)
        self.state = SyncState.DONE
        log_performance(logger, "sync_routes", (self.clock() - start).total_seconds(),
                        parks_completed=result.parks_completed, routes=len(routes))
        return result
