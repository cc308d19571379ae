from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from jose import JWTError, jwt
from .config import settings

def create_session_token(user_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """
    Create the signed session JWT stored in the browser cookie.
    The subject claim carries the local user id.
    """
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    claims = {
        "sub": str(user_id),
        "exp": datetime.now(timezone.utc) + expires_delta,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)

def decode_session_token(token: str) -> Union[dict, None]:
    """
    Decode a session JWT. Returns None if invalid or expired.
    """
    try:
        return jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
