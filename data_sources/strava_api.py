"""
Strava API client
OAuth session handling and activity lookups for route sync.
"""

import os
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import requests

from logging_config import get_logger, log_api_call
from .error_handling import APIError, TransientNetworkError, with_retry
from .retry_config import get_retry_config

logger = get_logger(__name__)

STRAVA_AUTHORIZE_URL = "https://www.strava.com/oauth/authorize"
STRAVA_TOKEN_URL = "https://www.strava.com/api/v3/oauth/token"
STRAVA_API_BASE = "https://www.strava.com/api/v3"

# Refresh tokens this many seconds before they expire
REFRESH_MARGIN_S = 5 * 60
OAUTH_STATE_TTL_S = 10 * 60

RUN_TYPES = ("Run", "TrailRun", "VirtualRun")


@dataclass
class StravaSession:
    access_token: str
    refresh_token: str
    expires_at: float
    athlete_id: Optional[str] = None

    def needs_refresh(self, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.expires_at - REFRESH_MARGIN_S

    @classmethod
    def from_token_response(cls, data: Dict[str, Any],
                            athlete_id: Optional[str] = None) -> "StravaSession":
        athlete = data.get("athlete") or {}
        return cls(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=float(data["expires_at"]),
            athlete_id=str(athlete["id"]) if athlete.get("id") is not None else athlete_id,
        )


class SessionStore:
    """
    Holds the current Strava session and pending OAuth states.

    A session exists only after a successful code exchange and is dropped
    when a refresh fails.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._session: Optional[StravaSession] = None
        self._states: Dict[str, float] = {}

    def get(self) -> Optional[StravaSession]:
        with self._lock:
            return self._session

    def set(self, session: StravaSession) -> None:
        with self._lock:
            self._session = session

    def invalidate(self) -> None:
        with self._lock:
            self._session = None

    def new_state(self) -> str:
        state = secrets.token_urlsafe(16)
        with self._lock:
            now = time.time()
            self._states = {s: exp for s, exp in self._states.items() if exp > now}
            self._states[state] = now + OAUTH_STATE_TTL_S
        return state

    def consume_state(self, state: Optional[str]) -> bool:
        """True if the state was issued and has not expired. A state is usable once."""
        if not state:
            return False
        with self._lock:
            expires = self._states.pop(state, None)
        return expires is not None and expires > time.time()


class StravaClient:
    """Strava REST client bound to a SessionStore."""

    def __init__(self, sessions: SessionStore, client_id: Optional[str] = None,
                 client_secret: Optional[str] = None, redirect_uri: Optional[str] = None,
                 http: Optional[requests.Session] = None):
        self.sessions = sessions
        self.client_id = client_id or os.getenv("STRAVA_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("STRAVA_CLIENT_SECRET")
        self.redirect_uri = redirect_uri or os.getenv("STRAVA_REDIRECT_URI")
        self.http = http or requests.Session()

    def _require_credentials(self) -> None:
        if not self.client_id or not self.client_secret:
            raise APIError("Strava credentials not configured", "strava")

    def authorize_url(self, state: str) -> str:
        self._require_credentials()
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": self.redirect_uri or "",
            "approval_prompt": "auto",
            "scope": "activity:read_all",
            "state": state,
        }
        return f"{STRAVA_AUTHORIZE_URL}?{urlencode(params)}"

    def _token_request(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self._require_credentials()
        log_api_call(logger, "strava", STRAVA_TOKEN_URL, grant_type=payload.get("grant_type"))
        try:
            resp = self.http.post(STRAVA_TOKEN_URL, json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                **payload,
            }, timeout=20)
        except requests.exceptions.RequestException as e:
            raise APIError(f"Strava token request failed: {e}", "strava") from e
        if resp.status_code != 200:
            raise APIError(f"Strava token request returned {resp.status_code}", "strava", resp.status_code)
        return resp.json()

    def exchange_code(self, code: str) -> StravaSession:
        """Exchange an authorization code and start a session."""
        data = self._token_request({"code": code, "grant_type": "authorization_code"})
        session = StravaSession.from_token_response(data)
        self.sessions.set(session)
        logger.info("Strava connected", extra={"api_name": "strava"})
        return session

    def access_token(self) -> str:
        """
        Current access token, refreshed when close to expiry.

        Raises:
            APIError: when not connected, or when the refresh fails (the
                session is invalidated)
        """
        session = self.sessions.get()
        if session is None:
            raise APIError("Strava is not connected", "strava", 401)
        if not session.needs_refresh():
            return session.access_token

        try:
            data = self._token_request({"grant_type": "refresh_token", "refresh_token": session.refresh_token})
        except APIError:
            self.sessions.invalidate()
            logger.warning("Strava token refresh failed; session invalidated", extra={"api_name": "strava"})
            raise

        refreshed = StravaSession.from_token_response(data, athlete_id=session.athlete_id)
        self.sessions.set(refreshed)
        return refreshed.access_token

    @with_retry(get_retry_config("strava"))
    def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{STRAVA_API_BASE}{path}"
        log_api_call(logger, "strava", url)
        try:
            resp = self.http.get(url, params=params,
                                 headers={"Authorization": f"Bearer {self.access_token()}"}, timeout=30)
        except requests.exceptions.Timeout as e:
            raise TransientNetworkError(f"Strava request timed out: {e}", "strava", 408) from e
        except requests.exceptions.RequestException as e:
            raise APIError(f"Strava request failed: {e}", "strava") from e

        if resp.status_code in (429, 502, 503, 504):
            raise TransientNetworkError(f"Strava returned {resp.status_code}", "strava", resp.status_code)
        if resp.status_code != 200:
            raise APIError(f"Strava returned {resp.status_code}", "strava", resp.status_code)
        return resp.json()

    def list_activities(self, per_page: int = 50, page: int = 1) -> List[Dict[str, Any]]:
        return self._get("/athlete/activities", {"per_page": per_page, "page": page})

    def list_runs(self, per_page: int = 50) -> List[Dict[str, Any]]:
        """Recent activities that are runs and carry a map polyline."""
        return [
            a for a in self.list_activities(per_page=per_page)
            if a.get("type") in RUN_TYPES and activity_polyline(a)
        ]

    def get_activity(self, activity_id: int) -> Dict[str, Any]:
        return self._get(f"/activities/{activity_id}")


def activity_polyline(activity: Dict[str, Any]) -> Optional[str]:
    """Full polyline if present, else the summary polyline."""
    activity_map = activity.get("map") or {}
    return activity_map.get("polyline") or activity_map.get("summary_polyline") or None
