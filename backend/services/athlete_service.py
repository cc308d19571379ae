import logging
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from ..models import User
from ..token_store import SqlTokenStore

logger = logging.getLogger(__name__)

def save_authorization(token_data: Dict[str, Any], db: Session, scope: Optional[str] = None) -> Optional[User]:
    """
    Upsert the athlete and its token triple from an authorization-code exchange.
    Returns None when the payload does not identify the athlete.
    """
    athlete_data = token_data.get("athlete") or {}
    strava_id = athlete_data.get("id")
    if not strava_id:
        logger.error("Token response from Strava did not include the athlete")
        return None

    name = f"{athlete_data.get('firstname', '')} {athlete_data.get('lastname', '')}".strip()
    user = db.query(User).filter(User.strava_athlete_id == strava_id).first()
    if not user:
        user = User(strava_athlete_id=strava_id)
    user.name = name
    user.profile_picture = athlete_data.get("profile")
    db.add(user)
    db.commit()
    db.refresh(user)

    SqlTokenStore(db).upsert(
        user.id,
        token_data["access_token"],
        token_data["refresh_token"],
        int(token_data["expires_at"]),
        scope=scope,
    )
    logger.info(f"Stored Strava tokens for athlete {strava_id} (user {user.id})")
    return user
