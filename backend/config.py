from typing import List
from pydantic_settings import BaseSettings

class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./hike_tracker.db"
    ENVIRONMENT: str = "development"
    LOG_LEVEL: str = "INFO"

    # Strava API
    STRAVA_CLIENT_ID: str = ""
    STRAVA_CLIENT_SECRET: str = ""
    REDIRECT_URI: str = "http://localhost:8000/api/auth/strava/callback"
    STRAVA_API_BASE_URL: str = "https://www.strava.com/api/v3"
    STRAVA_TOKEN_URL: str = "https://www.strava.com/oauth/token"

    # URLs
    FRONTEND_URL: str = "http://localhost:5173"
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:5173"

    # Security
    SECRET_KEY: str = "change_this_to_a_secure_random_key_in_production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 24 * 30  # 30 days

    # Token lifecycle
    TOKEN_REFRESH_WINDOW_SECONDS: int = 3600  # refresh when less than an hour is left

    # Response cache
    CACHE_MAX_SIZE: int = 1000
    CACHE_CLEANUP_INTERVAL_SECONDS: int = 300
    ACTIVITIES_CACHE_TTL_SECONDS: int = 30 * 60
    FILTERED_ACTIVITIES_CACHE_TTL_SECONDS: int = 15 * 60
    ACTIVITY_DETAILS_CACHE_TTL_SECONDS: int = 60 * 60

    # Hiking goal
    HIKE_ACTIVITY_TYPES: List[str] = ["Hike"]
    HIKE_MARKER: str = "#3800km"
    GOAL_KM: float = 3800.0

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT.lower() == "development"

settings = Settings()
