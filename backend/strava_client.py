import logging
from typing import Any, Dict, List, Optional

import httpx

from .errors import StravaUnauthorized, TokenRefreshFailed, UpstreamUnavailable
from .token_guardian import TokenGrant

logger = logging.getLogger(__name__)

STRAVA_API_BASE_URL = "https://www.strava.com/api/v3"
STRAVA_TOKEN_URL = "https://www.strava.com/oauth/token"
STRAVA_AUTHORIZE_URL = "https://www.strava.com/oauth/authorize"
PER_PAGE = 200  # Strava API max

# Informational classification of refresh failures
REFRESH_FAILURE_REASONS = {
    400: "invalid_credentials",
    401: "refresh_token_revoked",
}

class StravaTokenIssuer:
    """Exchanges authorization codes and refresh tokens at Strava's token endpoint."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str = STRAVA_TOKEN_URL,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.timeout = timeout
        self._transport = transport

    async def refresh(self, refresh_token: str) -> TokenGrant:
        """
        Single refresh attempt. Any failure raises TokenRefreshFailed;
        the caller must treat it as "re-authentication required".
        """
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.token_url, json=payload)
        except httpx.RequestError as e:
            raise TokenRefreshFailed(f"Could not reach Strava token endpoint: {e}", reason="network_error") from e

        if response.status_code < 200 or response.status_code >= 300:
            reason = REFRESH_FAILURE_REASONS.get(response.status_code, "upstream_error")
            raise TokenRefreshFailed(
                f"Strava token refresh failed with status {response.status_code}",
                reason=reason,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TokenRefreshFailed("Strava token response is not JSON", reason="malformed_response",
                                     status_code=response.status_code) from e

        return self._grant_from(data, response.status_code)

    async def exchange_code(self, code: str) -> Dict[str, Any]:
        """Exchange an OAuth authorization code. Returns the raw payload including the athlete."""
        payload = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "code": code,
            "grant_type": "authorization_code",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.token_url, json=payload)
        except httpx.RequestError as e:
            raise TokenRefreshFailed(f"Could not reach Strava token endpoint: {e}", reason="network_error") from e

        if response.status_code != 200:
            raise TokenRefreshFailed(
                f"Failed to exchange authorization code: {response.status_code}",
                reason=REFRESH_FAILURE_REASONS.get(response.status_code, "upstream_error"),
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise TokenRefreshFailed("Strava token response is not JSON", reason="malformed_response",
                                     status_code=response.status_code) from e

        # Validates the three token fields
        self._grant_from(data, response.status_code)
        return data

    @staticmethod
    def _grant_from(data: Any, status_code: int) -> TokenGrant:
        if not isinstance(data, dict):
            raise TokenRefreshFailed("Strava token response is not an object", reason="malformed_response",
                                     status_code=status_code)

        missing = [f for f in ("access_token", "refresh_token", "expires_at") if data.get(f) in (None, "")]
        if missing:
            raise TokenRefreshFailed(
                f"Strava token response missing {', '.join(missing)}",
                reason="malformed_response",
                status_code=status_code,
            )

        try:
            expires_at = int(data["expires_at"])
        except (TypeError, ValueError) as e:
            raise TokenRefreshFailed("Strava token response has a non-numeric expires_at",
                                     reason="malformed_response", status_code=status_code) from e
        if expires_at < 0:
            raise TokenRefreshFailed("Strava token response has a negative expires_at",
                                     reason="malformed_response", status_code=status_code)

        return TokenGrant(
            access_token=data["access_token"],
            refresh_token=data["refresh_token"],
            expires_at=expires_at,
        )

class StravaClient:
    """Read-only calls against the Strava v3 API with a bearer token."""

    def __init__(
        self,
        base_url: str = STRAVA_API_BASE_URL,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    async def list_activities(self, access_token: str, page: int = 1, per_page: int = PER_PAGE) -> List[Dict[str, Any]]:
        """One page of the athlete's activities, newest first. Empty list past the end."""
        activities = await self._get(
            "/athlete/activities",
            access_token,
            params={"page": page, "per_page": per_page},
        )
        if not isinstance(activities, list):
            raise UpstreamUnavailable("Unexpected activity listing payload from Strava")
        return activities

    async def get_activity(self, activity_id: int, access_token: str) -> Dict[str, Any]:
        """Detailed activity, including the description."""
        return await self._get(f"/activities/{activity_id}", access_token)

    async def get_athlete(self, access_token: str) -> Dict[str, Any]:
        return await self._get("/athlete", access_token)

    async def _get(self, path: str, access_token: str, params: Optional[Dict[str, Any]] = None) -> Any:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {access_token}"}

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url, headers=headers, params=params)
        except httpx.RequestError as e:
            logger.error(f"Strava API connection error: {str(e)}")
            raise UpstreamUnavailable(f"Connection error: {str(e)}") from e

        if response.status_code == 401:
            raise StravaUnauthorized(f"Strava rejected the access token for {path}")

        if response.status_code >= 400:
            logger.error(f"Strava API request failed: {response.status_code} {path} - {response.text[:200]}")
            raise UpstreamUnavailable(
                f"Strava API returned {response.status_code} for {path}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"Strava API returned invalid JSON for {path}",
                                      status_code=response.status_code) from e
