from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv
from pydantic import BaseModel
import time
import uuid
from typing import Optional, Dict, List, Any
from logging_config import get_logger, setup_logging

# Load environment variables
load_dotenv()
setup_logging()

logger = get_logger(__name__)

from data_sources.cache import clear_cache, get_cache_stats
from data_sources.error_handling import APIError, MalformedGeometryError, TransientNetworkError, check_api_credentials
from data_sources.site_store import SiteStore
from data_sources.strava_api import SessionStore, StravaClient, activity_polyline
from matching.arbitration import apply_review_results, confirm_polygon_choice
from matching.models import AMBIGUOUS, Site
from matching.route_sync import RouteIntersectionEngine, batch_message

API_VERSION = "1.0.0"


class RouteSyncBody(BaseModel):
    polyline: Optional[str] = None
    polylines: Optional[List[str]] = None


class ConfirmPolygonBody(BaseModel):
    polygon_index: Optional[int] = None
    no_match: bool = False


class ArbitrationImportBody(BaseModel):
    results: List[Dict[str, Any]]


app = FastAPI(
    title="ParkTrack API",
    description="Park boundary matching and run route sync",
    version=API_VERSION
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.store = None
app.state.sessions = SessionStore()
app.state.strava = None


def get_store() -> SiteStore:
    """Site store, opened on first use."""
    if app.state.store is None:
        app.state.store = SiteStore.from_env()
    return app.state.store


def get_strava() -> StravaClient:
    if app.state.strava is None:
        app.state.strava = StravaClient(app.state.sessions)
    return app.state.strava


def _api_error_to_http(e: APIError) -> HTTPException:
    if e.status_code == 401:
        return HTTPException(status_code=401, detail=str(e))
    if isinstance(e, TransientNetworkError):
        return HTTPException(status_code=503, detail=f"{e.api_name} temporarily unavailable: {e}")
    return HTTPException(status_code=502, detail=str(e))


def _site_payload(site: Site) -> Dict[str, Any]:
    return {
        "id": site.id,
        "name": site.name,
        "borough": site.borough,
        "site_type": site.site_type,
        "latitude": site.latitude,
        "longitude": site.longitude,
        "match_status": site.match_status,
        "match_score": site.match_score,
        "osm_id": site.osm_id,
        "polygon": site.polygon.to_list() if site.polygon is not None else None,
        "alternatives": site.alternatives,
        "review_notes": site.review_notes,
        "completed": site.completed,
    }


def _engine() -> RouteIntersectionEngine:
    return RouteIntersectionEngine(get_store())


@app.middleware("http")
async def log_requests(request: Request, call_next):
    request_id = uuid.uuid4().hex[:8]
    start_time = time.time()
    response = await call_next(request)
    logger.info(
        f"{request.method} {request.url.path} -> {response.status_code}",
        extra={"request_id": request_id, "endpoint": request.url.path,
               "status": response.status_code, "duration": round(time.time() - start_time, 3)},
    )
    return response


@app.get("/")
def root():
    """Health check endpoint."""
    return {
        "service": "ParkTrack API",
        "status": "running",
        "version": API_VERSION,
        "credentials": check_api_credentials(),
        "strava_connected": app.state.sessions.get() is not None,
        "endpoints": {
            "sync": "/routes/sync",
            "strava": "/strava/connect",
            "review": "/sites/ambiguous",
            "docs": "/docs"
        }
    }


@app.post("/routes/sync")
def sync_routes_endpoint(body: RouteSyncBody):
    """Mark sites crossed by one encoded route, or by a list of routes."""
    engine = _engine()
    if body.polylines is not None:
        return engine.sync_routes(body.polylines).to_dict()
    if not body.polyline:
        raise HTTPException(status_code=400, detail="polyline is required")
    try:
        result = engine.sync_route(body.polyline)
    except MalformedGeometryError as e:
        raise HTTPException(status_code=400, detail=f"Invalid polyline: {e}")
    return result.to_dict()


@app.get("/strava/connect")
def strava_connect():
    """Start the Strava OAuth flow."""
    state = app.state.sessions.new_state()
    try:
        url = get_strava().authorize_url(state)
    except APIError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"url": url, "state": state}


@app.get("/strava/callback")
def strava_callback(code: Optional[str] = None, state: Optional[str] = None, error: Optional[str] = None):
    if error:
        raise HTTPException(status_code=400, detail=f"Strava authorization failed: {error}")
    if not code:
        raise HTTPException(status_code=400, detail="Missing authorization code")
    if not app.state.sessions.consume_state(state):
        raise HTTPException(status_code=400, detail="Invalid or expired OAuth state")
    try:
        session = get_strava().exchange_code(code)
    except APIError as e:
        raise _api_error_to_http(e)
    return {"status": "connected", "athlete_id": session.athlete_id}


@app.get("/strava/status")
def strava_status():
    session = app.state.sessions.get()
    if session is None:
        return {"connected": False}
    return {
        "connected": True,
        "athlete_id": session.athlete_id,
        "expires_at": session.expires_at,
    }


@app.post("/strava/disconnect")
def strava_disconnect():
    app.state.sessions.invalidate()
    return {"status": "disconnected"}


@app.post("/strava/sync/{activity_id}")
def strava_sync_activity(activity_id: int):
    """Sync the route of one Strava activity."""
    try:
        activity = get_strava().get_activity(activity_id)
    except APIError as e:
        raise _api_error_to_http(e)

    encoded = activity_polyline(activity)
    if not encoded:
        raise HTTPException(status_code=400, detail="Activity has no route")

    try:
        result = _engine().sync_route(encoded)
    except MalformedGeometryError as e:
        raise HTTPException(status_code=400, detail=f"Invalid activity route: {e}")

    payload = result.to_dict()
    payload["activityId"] = activity_id
    payload["activityName"] = activity.get("name")
    return payload


@app.post("/strava/sync-all")
def strava_sync_all(per_page: int = 50):
    """Sync every recent run."""
    try:
        runs = get_strava().list_runs(per_page=per_page)
    except APIError as e:
        raise _api_error_to_http(e)

    result = _engine().sync_routes([activity_polyline(run) for run in runs])
    result.message = batch_message(len(runs), result.parks_completed)
    return result.to_dict()


@app.get("/sites/ambiguous")
def ambiguous_sites(limit: Optional[int] = None):
    """Sites waiting for a polygon choice."""
    sites = get_store().list(statuses=[AMBIGUOUS], limit=limit)
    return {
        "count": len(sites),
        "sites": [_site_payload(site) for site in sites]
    }


@app.post("/sites/{site_id}/confirm-polygon")
def confirm_polygon(site_id: int, body: ConfirmPolygonBody):
    """Keep the current polygon, pick an alternative, or mark no match."""
    store = get_store()
    site = store.get(site_id)
    if site is None:
        raise HTTPException(status_code=404, detail=f"Site {site_id} not found")
    try:
        confirm_polygon_choice(site, body.polygon_index, body.no_match)
    except (ValueError, MalformedGeometryError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    store.save(site)
    logger.info(f"Polygon confirmed for {site.name}", extra={"site_id": site.id, "status": site.match_status})
    return {"status": "success", "site": _site_payload(site)}


@app.post("/arbitration/import")
def import_arbitration_results(body: ArbitrationImportBody):
    """Apply exported arbitration results to the store."""
    summary = apply_review_results(get_store(), body.results)
    summary.log()
    return {"status": "success", "summary": summary.to_dict()}


@app.post("/cache/clear")
def clear_cache_endpoint(cache_type: str = None):
    """Clear cache entries."""
    try:
        clear_cache(cache_type)
        return {
            "status": "success",
            "message": f"Cache cleared for {cache_type or 'all'}"
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Cache clear failed: {e}")


@app.get("/cache/stats")
def cache_stats_endpoint():
    """Get cache statistics."""
    try:
        stats = get_cache_stats()
        return {
            "status": "success",
            "cache_stats": stats
        }
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Cache stats failed: {e}")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
