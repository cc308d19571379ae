import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, TypeVar

from .cache import (
    ACTIVITY_DETAILS_KEY,
    FILTERED_ACTIVITIES_KEY,
    STRAVA_ACTIVITIES_KEY,
    ResponseCache,
)
from .errors import StravaUnauthorized, TokenRefreshFailed, UpstreamUnavailable
from .strava_client import PER_PAGE, StravaClient
from .token_guardian import Credential, TokenGuardian, TokenStore

logger = logging.getLogger(__name__)

R = TypeVar("R")

DEFAULT_ACTIVITY_TYPES = ("Hike",)
DEFAULT_MARKER = "#3800km"

@dataclass
class FetchResult:
    activities: List[Dict[str, Any]]
    cache_hit: bool
    cache_age: Optional[int] = None

@dataclass
class _TokenContext:
    """Credential for one fetch; updated in place when refreshed."""
    subject: int
    store: TokenStore
    credential: Optional[Credential] = None

def is_tagged_hike(activity: Dict[str, Any], activity_types: Iterable[str], marker: str) -> bool:
    """Both conditions required: allowed type AND marker in the description."""
    types = set(activity_types)
    is_hiking_type = activity.get("type") in types or activity.get("sport_type") in types
    description = activity.get("description") or ""
    return is_hiking_type and marker.lower() in description.lower()

def to_summary(activity: Dict[str, Any]) -> Dict[str, Any]:
    """Shape returned to the dashboard and stored in the activities table."""
    return {
        "id": activity["id"],
        "strava_id": str(activity["id"]),
        "name": activity.get("name", ""),
        "type": activity.get("type", ""),
        "distance": activity.get("distance", 0),
        "moving_time": activity.get("moving_time", 0),
        "start_date": activity.get("start_date"),
        "location_city": activity.get("location_city") or None,
        "location_country": activity.get("location_country") or None,
        "elevation_gain": activity.get("total_elevation_gain", 0),
    }

class ActivityFetcher:
    """Tagged hikes per user, cached as a raw listing and as the filtered result."""

    def __init__(
        self,
        cache: ResponseCache,
        guardian: TokenGuardian,
        client: StravaClient,
        activity_types: Iterable[str] = DEFAULT_ACTIVITY_TYPES,
        marker: str = DEFAULT_MARKER,
        activities_ttl: float = 30 * 60,
        filtered_ttl: float = 15 * 60,
        details_ttl: float = 60 * 60,
        per_page: int = PER_PAGE,
    ):
        self.cache = cache
        self.guardian = guardian
        self.client = client
        self.activity_types = tuple(activity_types)
        self.marker = marker
        self.activities_ttl = activities_ttl
        self.filtered_ttl = filtered_ttl
        self.details_ttl = details_ttl
        self.per_page = per_page

    @staticmethod
    def raw_key(subject: int) -> str:
        return STRAVA_ACTIVITIES_KEY.format(subject=subject)

    @staticmethod
    def filtered_key(subject: int) -> str:
        return FILTERED_ACTIVITIES_KEY.format(subject=subject)

    def invalidate(self, subject: int) -> None:
        self.cache.delete(self.raw_key(subject))
        self.cache.delete(self.filtered_key(subject))

    async def get_hiking_activities(self, subject: int, store: TokenStore, force_refresh: bool = False) -> FetchResult:
        """Tagged hikes for ``subject``, from cache when fresh."""
        filtered_key = self.filtered_key(subject)

        if force_refresh:
            logger.info(f"Force refresh requested for user {subject}, clearing cached activities")
            self.invalidate(subject)
        else:
            cached = self.cache.get(filtered_key)
            if cached is not None:
                age = self.cache.get_info(filtered_key).get("age", 0)
                logger.info(f"Returning {len(cached)} cached hikes for user {subject} (age: {age}s)")
                return FetchResult(activities=cached, cache_hit=True, cache_age=age)

        context = _TokenContext(subject=subject, store=store)
        activities = await self._fetch_all(context)
        hikes = await self._filter_hikes(context, activities)

        summaries = [to_summary(a) for a in hikes]
        self.cache.set(filtered_key, summaries, self.filtered_ttl)
        logger.info(f"Filtered {len(activities)} activities to {len(summaries)} hikes tagged {self.marker}")
        return FetchResult(activities=summaries, cache_hit=False, cache_age=0)

    async def fetch_all_activities(self, subject: int, store: TokenStore) -> List[Dict[str, Any]]:
        """The full, unfiltered listing for ``subject``."""
        return await self._fetch_all(_TokenContext(subject=subject, store=store))

    def filter_activities(self, activities: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [a for a in activities if is_tagged_hike(a, self.activity_types, self.marker)]

    async def _fetch_all(self, context: _TokenContext) -> List[Dict[str, Any]]:
        raw_key = self.raw_key(context.subject)
        cached = self.cache.get(raw_key)
        if cached is not None:
            logger.info(f"Using {len(cached)} cached activities for user {context.subject}")
            return cached

        all_activities: List[Dict[str, Any]] = []
        page = 1
        while True:
            logger.info(f"Fetching activities page {page}...")
            activities = await self._authorized(
                context,
                lambda token, page=page: self.client.list_activities(token, page=page, per_page=self.per_page),
            )
            if not activities:
                break
            all_activities.extend(activities)
            logger.info(f"Fetched {len(activities)} activities (Total: {len(all_activities)})")
            page += 1

        self.cache.set(raw_key, all_activities, self.activities_ttl)
        logger.info(f"Fetched and cached {len(all_activities)} total activities for user {context.subject}")
        return all_activities

    async def _filter_hikes(self, context: _TokenContext, activities: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        types = set(self.activity_types)
        candidates = [a for a in activities if a.get("type") in types or a.get("sport_type") in types]
        logger.info(f"Found {len(candidates)} potential hiking activities")

        hikes = []
        for activity in candidates:
            if "description" not in activity:
                # The listing endpoint omits descriptions
                detail = await self._activity_details(context, activity)
                if detail is None:
                    continue
                activity = {**activity, "description": detail.get("description")}
            if is_tagged_hike(activity, self.activity_types, self.marker):
                hikes.append(activity)
        return hikes

    async def _activity_details(self, context: _TokenContext, activity: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        activity_id = activity["id"]
        key = ACTIVITY_DETAILS_KEY.format(activity_id=activity_id)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        try:
            detail = await self._authorized(context, lambda token: self.client.get_activity(activity_id, token))
        except UpstreamUnavailable as e:
            logger.warning(f"Error fetching details for \"{activity.get('name')}\": {e}")
            return None

        self.cache.set(key, detail, self.details_ttl)
        return detail

    async def _authorized(self, context: _TokenContext, call: Callable[[str], Awaitable[R]]) -> R:
        """
        Run ``call`` with a valid token. A 401 forces exactly one refresh and
        one retry of this call only; a second 401 is fatal.
        """
        token = await self._access_token(context)
        try:
            return await call(token)
        except StravaUnauthorized:
            logger.warning(f"Strava returned 401 for user {context.subject}, refreshing token and retrying once")

        context.credential = await self.guardian.ensure_credential(context.credential, context.store, force=True)
        try:
            return await call(context.credential.access_token)
        except StravaUnauthorized as e:
            raise TokenRefreshFailed(
                "Strava rejected the refreshed access token",
                reason="refresh_token_revoked",
                status_code=401,
            ) from e

    async def _access_token(self, context: _TokenContext) -> str:
        if context.credential is None:
            credential = context.store.get(context.subject)
            if credential is None:
                raise TokenRefreshFailed(f"No Strava tokens found for user {context.subject}",
                                         reason="missing_credentials")
            context.credential = await self.guardian.ensure_credential(credential, context.store)
        return context.credential.access_token
