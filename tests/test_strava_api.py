import time
from unittest.mock import Mock

import pytest

from data_sources.error_handling import APIError
from data_sources.strava_api import (
    REFRESH_MARGIN_S, SessionStore, StravaClient, StravaSession, activity_polyline,
)


def _response(status_code, payload=None):
    resp = Mock()
    resp.status_code = status_code
    resp.json.return_value = payload
    return resp


def _client(sessions, http):
    return StravaClient(sessions, client_id="123", client_secret="secret",
                        redirect_uri="http://localhost/cb", http=http)


def _session(expires_in):
    return StravaSession("old-token", "refresh-1", time.time() + expires_in, athlete_id="42")


def test_oauth_state_is_single_use():
    sessions = SessionStore()
    state = sessions.new_state()
    assert sessions.consume_state(state) is True
    assert sessions.consume_state(state) is False
    assert sessions.consume_state("never-issued") is False
    assert sessions.consume_state(None) is False


def test_needs_refresh_inside_margin():
    session = StravaSession("a", "r", expires_at=1000.0)
    assert not session.needs_refresh(now=1000.0 - REFRESH_MARGIN_S - 1)
    assert session.needs_refresh(now=1000.0 - REFRESH_MARGIN_S)


def test_authorize_url_carries_state_and_scope():
    url = _client(SessionStore(), Mock()).authorize_url("abc")
    assert url.startswith("https://www.strava.com/oauth/authorize?")
    assert "state=abc" in url
    assert "scope=activity%3Aread_all" in url


def test_authorize_url_requires_credentials(monkeypatch):
    monkeypatch.delenv("STRAVA_CLIENT_ID", raising=False)
    monkeypatch.delenv("STRAVA_CLIENT_SECRET", raising=False)
    with pytest.raises(APIError):
        StravaClient(SessionStore(), http=Mock()).authorize_url("abc")


def test_exchange_code_starts_session():
    http = Mock()
    http.post.return_value = _response(200, {
        "access_token": "tok", "refresh_token": "ref", "expires_at": 2000000000, "athlete": {"id": 42},
    })
    sessions = SessionStore()
    session = _client(sessions, http).exchange_code("code-1")

    assert session.athlete_id == "42"
    assert sessions.get() is session
    sent = http.post.call_args.kwargs["json"]
    assert sent["code"] == "code-1"
    assert sent["grant_type"] == "authorization_code"


def test_access_token_without_session_is_unauthorized():
    with pytest.raises(APIError) as exc:
        _client(SessionStore(), Mock()).access_token()
    assert exc.value.status_code == 401


def test_fresh_token_is_used_without_refresh():
    http = Mock()
    sessions = SessionStore()
    sessions.set(_session(3600))
    assert _client(sessions, http).access_token() == "old-token"
    http.post.assert_not_called()


def test_expiring_token_is_refreshed():
    http = Mock()
    http.post.return_value = _response(200, {
        "access_token": "new-token", "refresh_token": "refresh-2", "expires_at": time.time() + 21600,
    })
    sessions = SessionStore()
    sessions.set(_session(60))

    assert _client(sessions, http).access_token() == "new-token"
    refreshed = sessions.get()
    assert refreshed.refresh_token == "refresh-2"
    assert refreshed.athlete_id == "42"
    assert http.post.call_args.kwargs["json"]["refresh_token"] == "refresh-1"


def test_failed_refresh_invalidates_session():
    http = Mock()
    http.post.return_value = _response(400, {"message": "Bad Request"})
    sessions = SessionStore()
    sessions.set(_session(60))

    with pytest.raises(APIError):
        _client(sessions, http).access_token()
    assert sessions.get() is None


def test_list_runs_keeps_runs_with_routes():
    http = Mock()
    http.get.return_value = _response(200, [
        {"id": 1, "type": "Run", "map": {"summary_polyline": "abc"}},
        {"id": 2, "type": "Ride", "map": {"summary_polyline": "def"}},
        {"id": 3, "type": "TrailRun", "map": {"summary_polyline": ""}},
        {"id": 4, "type": "VirtualRun", "map": {"polyline": "ghi"}},
    ])
    sessions = SessionStore()
    sessions.set(_session(3600))

    runs = _client(sessions, http).list_runs(per_page=10)

    assert [r["id"] for r in runs] == [1, 4]
    assert http.get.call_args.kwargs["params"] == {"per_page": 10, "page": 1}
    assert http.get.call_args.kwargs["headers"]["Authorization"] == "Bearer old-token"


def test_not_found_activity_is_not_retried():
    http = Mock()
    http.get.return_value = _response(404)
    sessions = SessionStore()
    sessions.set(_session(3600))

    with pytest.raises(APIError) as exc:
        _client(sessions, http).get_activity(7)
    assert exc.value.status_code == 404
    assert http.get.call_count == 1


def test_activity_polyline_prefers_full_route():
    assert activity_polyline({"map": {"polyline": "full", "summary_polyline": "short"}}) == "full"
    assert activity_polyline({"map": {"polyline": None, "summary_polyline": "short"}}) == "short"
    assert activity_polyline({"map": {}}) is None
    assert activity_polyline({}) is None
