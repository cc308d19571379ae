import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .activity_fetcher import ActivityFetcher
from .cache import ResponseCache
from .config import settings
from .database import get_db
from .deps import get_activity_fetcher, get_current_user, get_response_cache, get_token_store
from .limiter import limiter
from .models import User
from .services.activity_service import get_progress, save_hiking_activities
from .token_store import SqlTokenStore

router = APIRouter()
logger = logging.getLogger(__name__)

CACHE_CONTROL = "private, max-age=900, stale-while-revalidate=1800"

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()

@router.get("/activities")
@limiter.limit("30/minute")
async def get_activities(
    request: Request,
    refresh: bool = False,
    user: User = Depends(get_current_user),
    store: SqlTokenStore = Depends(get_token_store),
    fetcher: ActivityFetcher = Depends(get_activity_fetcher),
):
    """Tagged hikes for the current user; served from cache when fresh."""
    result = await fetcher.get_hiking_activities(user.id, store, force_refresh=refresh)

    response = JSONResponse(content=result.activities)
    response.headers["Cache-Control"] = CACHE_CONTROL
    response.headers["X-Cache-Status"] = "HIT" if result.cache_hit else "MISS"
    if result.cache_hit:
        response.headers["X-Cache-Age"] = str(result.cache_age or 0)
    return response

@router.post("/sync-activities")
@limiter.limit("5/minute")
async def sync_activities(
    request: Request,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    store: SqlTokenStore = Depends(get_token_store),
    fetcher: ActivityFetcher = Depends(get_activity_fetcher),
):
    """Fetch the latest tagged hikes from Strava and store them."""
    result = await fetcher.get_hiking_activities(user.id, store, force_refresh=True)
    count = save_hiking_activities(user.id, result.activities, db)
    return {"message": "Activities synced successfully", "count": count}

@router.get("/progress")
def get_user_progress(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """Progress of the stored hikes toward the distance goal."""
    progress = get_progress(user.id, db, settings.GOAL_KM)
    logger.info(
        f"Progress for user {user.id}: {progress['total_km']}km of {progress['goal_km']}km "
        f"({progress['progress_percentage']}%)"
    )
    return progress

@router.get("/cache")
def get_cache_status(
    user: User = Depends(get_current_user),
    cache: ResponseCache = Depends(get_response_cache),
    fetcher: ActivityFetcher = Depends(get_activity_fetcher),
):
    stats = cache.get_stats()
    logger.info(
        f"Cache status: size={stats['size']}, hit_rate={stats['hit_rate']}%, "
        f"memory={stats['total_memory_usage']}"
    )
    return {
        "stats": stats,
        "activities": cache.get_info(fetcher.raw_key(user.id)),
        "filteredActivities": cache.get_info(fetcher.filtered_key(user.id)),
        "timestamp": _now_iso(),
    }

@router.delete("/cache")
def clear_cache(
    user: User = Depends(get_current_user),
    cache: ResponseCache = Depends(get_response_cache),
):
    before = cache.get_stats()
    cache.clear()
    after = cache.get_stats()

    memory_freed = before["total_memory_usage"] - after["total_memory_usage"]
    logger.info(f"Cache cleared by user {user.id}: {before['size']} items, {memory_freed} bytes freed")
    return {
        "message": "Cache cleared successfully",
        "itemsRemoved": before["size"],
        "currentSize": after["size"],
        "memoryFreed": memory_freed,
        "timestamp": _now_iso(),
    }

REQUIRED_SETTINGS = ("STRAVA_CLIENT_ID", "STRAVA_CLIENT_SECRET", "REDIRECT_URI", "SECRET_KEY", "DATABASE_URL")

@router.get("/debug")
def get_debug_info():
    """Which required settings are present. Values are never returned."""
    missing = [name for name in REQUIRED_SETTINGS if not getattr(settings, name)]
    if settings.SECRET_KEY.startswith("change_this"):
        missing.append("SECRET_KEY")

    if missing:
        logger.warning(f"Missing critical configuration: {', '.join(missing)}")

    return {
        "environment": settings.ENVIRONMENT,
        "hasStravaClientId": bool(settings.STRAVA_CLIENT_ID),
        "hasStravaClientSecret": bool(settings.STRAVA_CLIENT_SECRET),
        "redirectUri": settings.REDIRECT_URI,
        "frontendUrl": settings.FRONTEND_URL,
        "missingVariables": sorted(set(missing)),
        "timestamp": _now_iso(),
    }
