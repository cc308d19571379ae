import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Protocol, Set

from .errors import TokenRefreshFailed

logger = logging.getLogger(__name__)

REFRESH_WINDOW_SECONDS = 3600

@dataclass(frozen=True)
class Credential:
    subject: int
    access_token: str
    refresh_token: str
    expires_at: int  # Unix timestamp, seconds

@dataclass(frozen=True)
class TokenGrant:
    access_token: str
    refresh_token: str
    expires_at: int

class TokenState(str, Enum):
    VALID = "valid"
    REFRESH_DUE = "refresh_due"
    REAUTH_REQUIRED = "reauth_required"

class TokenStore(Protocol):
    def get(self, subject: int) -> Optional[Credential]:
        ...

    def update(self, subject: int, access_token: str, refresh_token: str, expires_at: int) -> None:
        ...

class TokenIssuer(Protocol):
    async def refresh(self, refresh_token: str) -> TokenGrant:
        ...

class TokenGuardian:
    """
    Hands out access tokens that are safe to use right now.

    Per subject: VALID -> REFRESH_DUE once inside the refresh window, then
    VALID again on a successful refresh or REAUTH_REQUIRED when it fails.
    Every TokenRefreshFailed from the issuer latches REAUTH_REQUIRED, including
    network_error and 5xx upstream_error, so a transient outage during a
    refresh also requires the user to authorize again. Only
    ``mark_reauthorized`` (the OAuth callback) clears it.
    """

    def __init__(
        self,
        issuer: TokenIssuer,
        refresh_window: int = REFRESH_WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.issuer = issuer
        self.refresh_window = refresh_window
        self._clock = clock
        self._reauth_required: Set[int] = set()

    def should_refresh(self, expires_at: int) -> bool:
        """Proactive check: true once the token is inside the refresh window."""
        return expires_at - self._clock() <= self.refresh_window

    def is_expired(self, expires_at: int) -> bool:
        """Diagnostic only; the refresh decision always uses ``should_refresh``."""
        return self._clock() >= expires_at

    def state(self, subject: int, expires_at: int) -> TokenState:
        if subject in self._reauth_required:
            return TokenState.REAUTH_REQUIRED
        if self.should_refresh(expires_at):
            return TokenState.REFRESH_DUE
        return TokenState.VALID

    def mark_reauthorized(self, subject: int) -> None:
        """Called after a fresh OAuth authorization for ``subject``."""
        self._reauth_required.discard(subject)

    async def ensure_valid(
        self,
        subject: int,
        access_token: str,
        refresh_token: str,
        expires_at: int,
        store: TokenStore,
    ) -> str:
        """Return an access token valid for immediate use, refreshing if due."""
        credential = Credential(
            subject=subject,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )
        credential = await self.ensure_credential(credential, store)
        return credential.access_token

    async def ensure_credential(self, credential: Credential, store: TokenStore, force: bool = False) -> Credential:
        """
        Same decision as ``ensure_valid`` on a whole credential.

        ``force`` skips the window check; it is used when Strava answered 401
        to a token we considered fresh (clock skew, revoked out of band).
        """
        if not force and not self.should_refresh(credential.expires_at):
            return credential

        if self.is_expired(credential.expires_at):
            logger.info(f"Access token for user {credential.subject} expired, refreshing")
        elif force:
            logger.info(f"Forcing token refresh for user {credential.subject} after upstream 401")
        else:
            remaining = int(credential.expires_at - self._clock())
            logger.info(f"Access token for user {credential.subject} expires in {remaining}s, refreshing")

        return await self.refresh(credential.subject, credential.refresh_token, store)

    async def refresh(self, subject: int, refresh_token: str, store: TokenStore) -> Credential:
        """Exchange the refresh token once and write the new triple back."""
        if subject in self._reauth_required:
            raise TokenRefreshFailed(
                "Strava authorization must be renewed before tokens can be refreshed",
                reason="reauth_required",
            )

        try:
            grant = await self.issuer.refresh(refresh_token)
        except TokenRefreshFailed as e:
            self._reauth_required.add(subject)
            logger.error(f"Token refresh failed for user {subject} ({e.reason}): {e.message}")
            raise

        credential = Credential(
            subject=subject,
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=grant.expires_at,
        )

        try:
            store.update(subject, grant.access_token, grant.refresh_token, grant.expires_at)
        except Exception as e:
            # The new token still works; the next call simply refreshes again
            logger.error(f"Failed to persist refreshed tokens for user {subject}: {e}")

        logger.info(f"Token refreshed for user {subject}, expires at {grant.expires_at}")
        return credential
