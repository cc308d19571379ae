import os

# Must be set before backend.config / backend.database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("STRAVA_CLIENT_ID", "12345")
os.environ.setdefault("STRAVA_CLIENT_SECRET", "test-secret")
os.environ.setdefault("ENVIRONMENT", "test")

import json
from typing import Any, Dict, List, Optional

import httpx
import pytest

from backend.errors import PersistenceWriteFailed, TokenRefreshFailed
from backend.token_guardian import Credential, TokenGrant

NOW = 1_700_000_000


class FakeClock:
    def __init__(self, now: float = NOW):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeIssuer:
    """Token issuer returning a fixed grant, or raising, and counting calls."""

    def __init__(self, grant: Optional[TokenGrant] = None, error: Optional[Exception] = None):
        self.grant = grant or TokenGrant("new-access", "new-refresh", NOW + 6 * 3600)
        self.error = error
        self.calls: List[str] = []

    async def refresh(self, refresh_token: str) -> TokenGrant:
        self.calls.append(refresh_token)
        if self.error is not None:
            raise self.error
        return self.grant


class FakeStore:
    def __init__(self, credentials: Optional[Dict[int, Credential]] = None, fail_writes: bool = False):
        self.credentials = dict(credentials or {})
        self.fail_writes = fail_writes
        self.updates: List[tuple] = []

    def get(self, subject: int) -> Optional[Credential]:
        return self.credentials.get(subject)

    def update(self, subject: int, access_token: str, refresh_token: str, expires_at: int) -> None:
        self.updates.append((subject, access_token, refresh_token, expires_at))
        if self.fail_writes:
            raise PersistenceWriteFailed("database is locked")
        self.credentials[subject] = Credential(subject, access_token, refresh_token, expires_at)


def make_activity(activity_id: int, type: str = "Run", description: Optional[str] = None, **extra) -> Dict[str, Any]:
    activity = {
        "id": activity_id,
        "name": f"Activity {activity_id}",
        "type": type,
        "sport_type": type,
        "distance": 10000.0,
        "moving_time": 3600,
        "elapsed_time": 4000,
        "total_elevation_gain": 250.0,
        "start_date": "2024-05-01T08:00:00Z",
        "location_city": "Boulder",
        "location_country": "United States",
    }
    if description is not None:
        activity["description"] = description
    activity.update(extra)
    return activity


class StravaMock:
    """
    In-process stand-in for Strava's API and token endpoint.

    ``pages`` is the list of activity pages (1-based); pages past the end are
    empty. ``unauthorized`` holds access tokens that get a 401.
    """

    def __init__(self, pages: Optional[List[List[Dict[str, Any]]]] = None):
        self.pages = pages or []
        self.details: Dict[int, Dict[str, Any]] = {}
        self.detail_status: Dict[int, int] = {}
        self.unauthorized: set = set()
        self.list_status: Optional[int] = None
        self.token_status = 200
        self.token_payload: Dict[str, Any] = {
            "access_token": "refreshed-access", "refresh_token": "refreshed-refresh", "expires_at": NOW + 21600,
        }
        self.page_calls: List[int] = []
        self.detail_calls: List[int] = []
        self.token_calls: List[Dict[str, Any]] = []
        self.auth_headers: List[str] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.endswith("/oauth/token"):
            self.token_calls.append(json.loads(request.content))
            return httpx.Response(self.token_status, json=self.token_payload)

        auth = request.headers.get("Authorization", "")
        self.auth_headers.append(auth)
        if auth.removeprefix("Bearer ") in self.unauthorized:
            if path.endswith("/athlete/activities"):
                self.page_calls.append(int(request.url.params["page"]))
            return httpx.Response(401, json={"message": "Authorization Error"})

        if path.endswith("/athlete/activities"):
            page = int(request.url.params["page"])
            self.page_calls.append(page)
            if self.list_status is not None:
                return httpx.Response(self.list_status, json={"message": "Server Error"})
            items = self.pages[page - 1] if page <= len(self.pages) else []
            return httpx.Response(200, json=items)

        if "/activities/" in path:
            activity_id = int(path.rsplit("/", 1)[-1])
            self.detail_calls.append(activity_id)
            status = self.detail_status.get(activity_id, 200)
            if status != 200:
                return httpx.Response(status, json={"message": "Record Not Found"})
            return httpx.Response(200, json=self.details.get(activity_id, {"id": activity_id, "description": ""}))

        if path.endswith("/athlete"):
            return httpx.Response(200, json={"id": 42, "firstname": "Ada", "lastname": "Hiker"})

        return httpx.Response(404)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def strava():
    return StravaMock()


@pytest.fixture
def reauth_error():
    return TokenRefreshFailed("Strava token refresh failed with status 401", reason="refresh_token_revoked",
                              status_code=401)
