import logging
from typing import Optional
from urllib.parse import urlencode
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import RedirectResponse
from sqlalchemy.orm import Session
from .activity_fetcher import ActivityFetcher
from .config import settings
from .database import get_db
from .deps import get_activity_fetcher, get_current_user, get_token_guardian, get_token_issuer
from .errors import TokenRefreshFailed
from .limiter import limiter
from .models import User
from .services.athlete_service import save_authorization
from .security import create_session_token
from .strava_client import STRAVA_AUTHORIZE_URL, StravaTokenIssuer
from .token_guardian import TokenGuardian

router = APIRouter()
logger = logging.getLogger(__name__)

STRAVA_SCOPE = "read,activity:read_all"

@router.post("/strava/start")
def start_strava_auth():
    """
    Returns the Strava OAuth URL.
    Frontend should redirect the user to this URL.
    """
    if not settings.STRAVA_CLIENT_ID:
        raise HTTPException(status_code=500, detail="Server misconfiguration: Missing STRAVA_CLIENT_ID")

    params = {
        "client_id": settings.STRAVA_CLIENT_ID,
        "response_type": "code",
        "redirect_uri": settings.REDIRECT_URI,
        "approval_prompt": "force",
        "scope": STRAVA_SCOPE,
    }
    return {"url": f"{STRAVA_AUTHORIZE_URL}?{urlencode(params)}"}

def _auth_failed(reason: str) -> RedirectResponse:
    return RedirectResponse(url=f"{settings.FRONTEND_URL}/?error={reason}")

@router.get("/strava/callback")
@limiter.limit("10/minute")
async def strava_callback(
    request: Request,
    code: Optional[str] = None,
    error: Optional[str] = None,
    db: Session = Depends(get_db),
    issuer: StravaTokenIssuer = Depends(get_token_issuer),
    guardian: TokenGuardian = Depends(get_token_guardian),
    fetcher: ActivityFetcher = Depends(get_activity_fetcher),
):
    """
    Handle Strava OAuth callback.
    Exchange code for tokens, create/update user, and redirect to frontend.
    """
    if error or not code:
        logger.warning(f"OAuth callback failed: {error or 'missing_code'}")
        return _auth_failed("auth_failed")

    if not settings.STRAVA_CLIENT_ID or not settings.STRAVA_CLIENT_SECRET:
        raise HTTPException(status_code=500, detail="Server misconfiguration")

    try:
        token_data = await issuer.exchange_code(code)
    except TokenRefreshFailed as e:
        logger.error(f"Authorization code exchange failed ({e.reason}): {e.message}")
        return _auth_failed("auth_failed")

    user = save_authorization(token_data, db, scope=STRAVA_SCOPE)
    if user is None:
        return _auth_failed("auth_failed")

    # A fresh authorization is the only way out of REAUTH_REQUIRED
    guardian.mark_reauthorized(user.id)
    fetcher.invalidate(user.id)
    logger.info(f"Strava authorization completed for user {user.id}")

    # Redirect to Frontend and set the secure cookie
    response = RedirectResponse(url=f"{settings.FRONTEND_URL}/dashboard")
    response.set_cookie(
        key="session_token",
        value=create_session_token(user.id),
        httponly=True,
        secure=not settings.FRONTEND_URL.startswith("http://"), # True in prod, False for http://localhost
        samesite="Lax", # Lax is suitable for OAuth redirects
        max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60
    )
    return response

@router.get("/me")
def get_me(user: User = Depends(get_current_user)):
    return {
        "id": user.id,
        "name": user.name,
        "strava_id": user.strava_athlete_id,
        "profile_picture": user.profile_picture,
        "connected": True
    }

@router.post("/logout")
def logout():
    response = RedirectResponse(url=settings.FRONTEND_URL, status_code=303)
    response.delete_cookie("session_token")
    return response
