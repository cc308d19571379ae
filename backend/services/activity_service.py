import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..models import Activity

logger = logging.getLogger(__name__)

def _parse_start_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    # Strava uses ISO format "2023-10-31T01:02:03Z"
    return datetime.fromisoformat(value.replace("Z", "+00:00"))

def save_hiking_activities(user_id: int, activities: List[Dict[str, Any]], db: Session) -> int:
    """
    Upsert hike summaries (as produced by the activity fetcher) by Strava id.
    Returns the number of activities written.
    """
    saved = 0
    try:
        for data in activities:
            strava_id = str(data["strava_id"])
            start_date = _parse_start_date(data.get("start_date"))
            if start_date is None:
                logger.warning(f"Skipping activity {strava_id}: missing start date")
                continue

            activity = db.query(Activity).filter(Activity.strava_id == strava_id).first()
            if not activity:
                activity = Activity(strava_id=strava_id, user_id=user_id)
                db.add(activity)

            activity.name = data.get("name") or ""
            activity.type = data.get("type") or ""
            activity.distance = data.get("distance") or 0.0
            activity.moving_time = data.get("moving_time") or 0
            activity.start_date = start_date
            activity.location_city = data.get("location_city")
            activity.location_country = data.get("location_country")
            activity.elevation_gain = data.get("elevation_gain") or 0.0
            saved += 1

        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Error saving activities for user {user_id}: {e}")
        db.rollback()
        raise

    logger.info(f"Saved {saved} hiking activities for user {user_id}")
    return saved

def summarize_progress(total_distance_m: float, goal_km: float) -> Dict[str, float]:
    """Distance totals against the goal, rounded to one decimal like the dashboard shows them."""
    total_km = total_distance_m / 1000
    return {
        "total_distance": total_distance_m,
        "total_km": round(total_km, 1),
        "goal_km": goal_km,
        "remaining_km": round(goal_km - total_km, 1),
        "progress_percentage": round(total_km / goal_km * 100, 1) if goal_km else 0.0,
    }

def get_progress(user_id: int, db: Session, goal_km: float) -> Dict[str, Any]:
    """Cumulative progress of a user's stored hikes toward ``goal_km``."""
    count, distance, moving_time, elevation, last_date = db.query(
        func.count(Activity.id),
        func.coalesce(func.sum(Activity.distance), 0.0),
        func.coalesce(func.sum(Activity.moving_time), 0),
        func.coalesce(func.sum(Activity.elevation_gain), 0.0),
        func.max(Activity.start_date),
    ).filter(Activity.user_id == user_id).one()

    progress = {
        "total_activities": count,
        "total_moving_time": int(moving_time),
        "total_elevation_gain": float(elevation),
        "last_activity_date": last_date.isoformat() if last_date else None,
    }
    progress.update(summarize_progress(float(distance), goal_km))
    return progress
