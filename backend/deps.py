from fastapi import Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from .activity_fetcher import ActivityFetcher
from .cache import ResponseCache
from .database import get_db
from .models import User
from .security import decode_session_token
from .strava_client import StravaTokenIssuer
from .token_guardian import TokenGuardian
from .token_store import SqlTokenStore

def get_current_user(request: Request, db: Session = Depends(get_db)):
    # Verify signed JWT from cookie
    token = request.cookies.get("session_token")
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )

    payload = decode_session_token(token)
    if not payload:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired session",
        )

    user_id_str = payload.get("sub")
    if not user_id_str:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    try:
        user_id_int = int(user_id_str)
    except (ValueError, TypeError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid user ID in token",
        )

    user = db.query(User).filter(User.id == user_id_int).first()
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
        )
    return user

# Process-wide components live on app.state, created once in main.py

def get_response_cache(request: Request) -> ResponseCache:
    return request.app.state.response_cache

def get_token_guardian(request: Request) -> TokenGuardian:
    return request.app.state.token_guardian

def get_activity_fetcher(request: Request) -> ActivityFetcher:
    return request.app.state.activity_fetcher

def get_token_store(db: Session = Depends(get_db)) -> SqlTokenStore:
    return SqlTokenStore(db)

def get_token_issuer(request: Request) -> StravaTokenIssuer:
    return request.app.state.token_issuer
