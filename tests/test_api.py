import time
from urllib.parse import urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from backend.activity_fetcher import ActivityFetcher
from backend.cache import ResponseCache
from backend.database import Base, SessionLocal, engine
from backend.limiter import limiter
from backend.main import app
from backend.models import Token, User
from backend.security import create_session_token
from backend.strava_client import StravaClient, StravaTokenIssuer
from backend.token_guardian import TokenGuardian

from .conftest import make_activity

STATE_KEYS = ("token_issuer", "response_cache", "token_guardian", "activity_fetcher")


@pytest.fixture(autouse=True)
def database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def no_rate_limits():
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture
def components(strava):
    """Swap the process-wide components for ones talking to the Strava mock."""
    saved = {key: getattr(app.state, key) for key in STATE_KEYS}

    issuer = StravaTokenIssuer("12345", "test-secret", transport=strava.transport)
    cache = ResponseCache()
    guardian = TokenGuardian(issuer)
    app.state.token_issuer = issuer
    app.state.response_cache = cache
    app.state.token_guardian = guardian
    app.state.activity_fetcher = ActivityFetcher(cache, guardian, StravaClient(transport=strava.transport))
    yield app.state
    for key, value in saved.items():
        setattr(app.state, key, value)


def create_user(expires_in: int = 7200) -> int:
    db = SessionLocal()
    try:
        user = User(strava_athlete_id=42, name="Ada Hiker")
        db.add(user)
        db.commit()
        db.refresh(user)
        db.add(Token(
            user_id=user.id,
            access_token="live-access",
            refresh_token="live-refresh",
            expires_at=int(time.time()) + expires_in,
        ))
        db.commit()
        return user.id
    finally:
        db.close()


@pytest.fixture
def client(components):
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def user_id(client):
    user_id = create_user()
    client.cookies.set("session_token", create_session_token(user_id))
    return user_id


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json() == {"message": "Hike Tracker API is running"}


def test_activities_require_session(client):
    response = client.get("/api/activities")
    assert response.status_code == 401


def test_activities_miss_then_hit(client, user_id, strava):
    strava.pages = [[make_activity(1, "Hike", "#3800km"), make_activity(2, "Run", "#3800km")]]

    first = client.get("/api/activities")
    second = client.get("/api/activities")

    assert first.status_code == 200
    assert first.headers["X-Cache-Status"] == "MISS"
    assert "X-Cache-Age" not in first.headers
    assert [a["id"] for a in first.json()] == [1]

    assert second.headers["X-Cache-Status"] == "HIT"
    assert int(second.headers["X-Cache-Age"]) >= 0
    assert second.json() == first.json()
    assert strava.page_calls == [1, 2]


def test_refresh_query_bypasses_cache(client, user_id, strava):
    strava.pages = [[make_activity(1, "Hike", "#3800km")]]
    client.get("/api/activities")

    response = client.get("/api/activities", params={"refresh": "true"})

    assert response.headers["X-Cache-Status"] == "MISS"
    assert strava.page_calls == [1, 2, 1, 2]


def test_revoked_refresh_token_asks_for_reauthorization(client, strava):
    user_id = create_user(expires_in=-10)
    client.cookies.set("session_token", create_session_token(user_id))
    strava.token_status = 401

    response = client.get("/api/activities")

    assert response.status_code == 401
    body = response.json()
    assert body["setupRequired"] is True
    assert body["reason"] == "refresh_token_revoked"
    assert strava.page_calls == []


def test_reauthorization_clears_reauth_required(client, strava):
    user_id = create_user(expires_in=-10)
    client.cookies.set("session_token", create_session_token(user_id))
    strava.token_status = 401
    assert client.get("/api/activities").status_code == 401

    strava.token_status = 200
    strava.token_payload = {
        "access_token": "granted-access",
        "refresh_token": "granted-refresh",
        "expires_at": int(time.time()) + 21600,
        "athlete": {"id": 42, "firstname": "Ada", "lastname": "Hiker"},
    }
    callback = client.get("/api/auth/strava/callback", params={"code": "abc"}, follow_redirects=False)
    assert callback.status_code in (302, 307)

    strava.pages = [[make_activity(1, "Hike", "#3800km")]]
    response = client.get("/api/activities")

    assert response.status_code == 200
    assert set(strava.auth_headers) == {"Bearer granted-access"}


def test_expired_token_is_refreshed_and_persisted(client, strava):
    user_id = create_user(expires_in=-10)
    client.cookies.set("session_token", create_session_token(user_id))
    strava.pages = [[make_activity(1, "Hike", "#3800km")]]

    response = client.get("/api/activities")

    assert response.status_code == 200
    assert len(strava.token_calls) == 1
    db = SessionLocal()
    try:
        token = db.query(Token).filter(Token.user_id == user_id).one()
        assert token.access_token == "refreshed-access"
        assert token.refresh_token == "refreshed-refresh"
    finally:
        db.close()


def test_strava_outage_returns_502(client, user_id, strava):
    strava.list_status = 503

    response = client.get("/api/activities")

    assert response.status_code == 502
    assert response.json()["error"] == "Failed to fetch activities"


def test_cache_status_and_clear(client, user_id, strava):
    strava.pages = [[make_activity(1, "Hike", "#3800km")]]
    client.get("/api/activities")

    status = client.get("/api/cache").json()
    assert status["stats"]["size"] == 2
    assert status["stats"]["max_size"] == 1000
    assert status["activities"]["exists"] is True
    assert status["filteredActivities"]["ttl"] == 900

    cleared = client.delete("/api/cache").json()
    assert cleared["itemsRemoved"] == 2
    assert cleared["currentSize"] == 0
    assert cleared["memoryFreed"] > 0

    after = client.get("/api/activities")
    assert after.headers["X-Cache-Status"] == "MISS"


def test_sync_then_progress(client, user_id, strava):
    strava.pages = [[
        make_activity(1, "Hike", "#3800km", distance=12000.0),
        make_activity(2, "Hike", "#3800km", distance=8000.0, start_date="2024-06-01T08:00:00Z"),
        make_activity(3, "Hike", "untagged"),
    ]]

    synced = client.post("/api/sync-activities")
    assert synced.status_code == 200
    assert synced.json()["count"] == 2

    # Syncing again updates rather than duplicates
    assert client.post("/api/sync-activities").json()["count"] == 2

    progress = client.get("/api/progress").json()
    assert progress["total_activities"] == 2
    assert progress["total_km"] == 20.0
    assert progress["goal_km"] == 3800.0
    assert progress["remaining_km"] == 3780.0
    assert progress["progress_percentage"] == 0.5
    assert progress["last_activity_date"].startswith("2024-06-01")


def test_debug_reports_presence_not_values(client):
    body = client.get("/api/debug").json()

    assert body["hasStravaClientId"] is True
    assert body["hasStravaClientSecret"] is True
    assert "SECRET_KEY" in body["missingVariables"]
    assert "test-secret" not in str(body)


def test_start_returns_authorize_url(client):
    url = client.post("/api/auth/strava/start").json()["url"]

    assert url.startswith("https://www.strava.com/oauth/authorize?")
    assert "client_id=12345" in url
    assert "activity%3Aread_all" in url


def test_callback_creates_user_and_sets_session(client, strava):
    strava.token_payload = {
        "access_token": "a", "refresh_token": "r", "expires_at": int(time.time()) + 21600,
        "athlete": {"id": 777, "firstname": "New", "lastname": "Hiker"},
    }

    response = client.get("/api/auth/strava/callback", params={"code": "abc"}, follow_redirects=False)

    assert response.headers["location"].endswith("/dashboard")
    assert "session_token" in response.cookies
    me = client.get("/api/auth/me").json()
    assert me["strava_id"] == 777
    assert me["name"] == "New Hiker"


def test_callback_with_error_redirects_to_frontend(client):
    response = client.get("/api/auth/strava/callback", params={"error": "access_denied"}, follow_redirects=False)

    assert response.headers["location"].endswith("/?error=auth_failed")


def test_failed_code_exchange_redirects_to_frontend(client, strava):
    strava.token_status = 400

    response = client.get("/api/auth/strava/callback", params={"code": "bad"}, follow_redirects=False)

    assert response.headers["location"].endswith("/?error=auth_failed")


def test_non_json_token_response_redirects_to_frontend(client):
    maintenance_page = httpx.MockTransport(lambda request: httpx.Response(200, text="oops"))
    app.state.token_issuer = StravaTokenIssuer("12345", "test-secret", transport=maintenance_page)

    response = client.get("/api/auth/strava/callback", params={"code": "abc"}, follow_redirects=False)

    assert response.status_code in (302, 307)
    assert response.headers["location"].endswith("/?error=auth_failed")


def test_request_id_is_echoed_or_generated(client):
    echoed = client.get("/", headers={"X-Request-ID": "req_test_1"})
    generated = client.get("/")

    assert echoed.headers["X-Request-ID"] == "req_test_1"
    assert generated.headers["X-Request-ID"].startswith("req_")


def test_setup_script_redirect_is_not_an_api_route():
    from scripts.setup_strava_auth import REDIRECT_URI

    assert urlparse(REDIRECT_URI).path not in {route.path for route in app.routes}
