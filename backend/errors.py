from typing import Optional

class TokenRefreshFailed(Exception):
    """The refresh-token exchange failed or returned an unusable payload."""

    def __init__(self, message: str, reason: str = "upstream_error", status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.reason = reason
        self.status_code = status_code

class UpstreamUnavailable(Exception):
    """Strava answered a resource call with a non-401 failure, or not at all."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

class StravaUnauthorized(Exception):
    """Strava rejected the bearer token on a resource call (HTTP 401)."""

class PersistenceWriteFailed(Exception):
    """Writing refreshed credentials back to the token store failed."""
