import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from .activity_fetcher import ActivityFetcher
from .cache import ResponseCache
from .config import settings
from .database import engine, Base
from .errors import TokenRefreshFailed, UpstreamUnavailable
from .limiter import limiter
from .logging_config import bind_request_id, configure_logging, request_id_var
from .auth import router as auth_router
from .routes import router as api_router
from .strava_client import StravaClient, StravaTokenIssuer
from .token_guardian import TokenGuardian

configure_logging(settings.LOG_LEVEL, redact_secrets=not settings.is_development)
logger = logging.getLogger(__name__)

# Create tables on startup
Base.metadata.create_all(bind=engine)

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Sweep expired cache entries independently of traffic
    app.state.response_cache.start_cleanup(settings.CACHE_CLEANUP_INTERVAL_SECONDS)
    try:
        yield
    finally:
        await app.state.response_cache.stop_cleanup()

app = FastAPI(title="Hike Tracker", lifespan=lifespan)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# One cache and one guardian for the process lifetime, injected into the fetcher
token_issuer = StravaTokenIssuer(
    settings.STRAVA_CLIENT_ID,
    settings.STRAVA_CLIENT_SECRET,
    token_url=settings.STRAVA_TOKEN_URL,
)
response_cache = ResponseCache(max_size=settings.CACHE_MAX_SIZE)
token_guardian = TokenGuardian(token_issuer, refresh_window=settings.TOKEN_REFRESH_WINDOW_SECONDS)
app.state.token_issuer = token_issuer
app.state.response_cache = response_cache
app.state.token_guardian = token_guardian
app.state.activity_fetcher = ActivityFetcher(
    response_cache,
    token_guardian,
    StravaClient(base_url=settings.STRAVA_API_BASE_URL),
    activity_types=settings.HIKE_ACTIVITY_TYPES,
    marker=settings.HIKE_MARKER,
    activities_ttl=settings.ACTIVITIES_CACHE_TTL_SECONDS,
    filtered_ttl=settings.FILTERED_ACTIVITIES_CACHE_TTL_SECONDS,
    details_ttl=settings.ACTIVITY_DETAILS_CACHE_TTL_SECONDS,
)

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS.split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Cache-Status", "X-Cache-Age", "X-Request-ID"],
)

@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    reset_token = bind_request_id(request.headers.get("X-Request-ID"))
    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id_var.get()
        return response
    finally:
        request_id_var.reset(reset_token)

# Include routers
app.include_router(auth_router, prefix="/api/auth", tags=["auth"])
app.include_router(api_router, prefix="/api", tags=["api"])

@app.exception_handler(TokenRefreshFailed)
async def token_refresh_failed_handler(request: Request, exc: TokenRefreshFailed):
    logger.warning(f"Re-authentication required ({exc.reason}): {exc.message}")
    return JSONResponse(
        status_code=401,
        content={
            "error": "Strava authorization expired",
            "message": "Please reconnect your Strava account.",
            "reason": exc.reason,
            "setupRequired": True,
        },
    )

@app.exception_handler(UpstreamUnavailable)
async def upstream_unavailable_handler(request: Request, exc: UpstreamUnavailable):
    logger.error(f"Strava unavailable (status {exc.status_code}): {exc.message}")
    return JSONResponse(
        status_code=502,
        content={
            "error": "Failed to fetch activities",
            "message": "Strava is currently unavailable. Please try again later.",
        },
    )

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global Exception: {str(exc)}", exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal Server Error. Check logs for traceback."},
    )

@app.get("/")
def read_root():
    return {"message": "Hike Tracker API is running"}

def run() -> None:
    """Main entry point for the server."""
    import uvicorn
    try:
        logger.info("Starting Hike Tracker API...")
        uvicorn.run(app, host="0.0.0.0", port=8000)
    except Exception as e:
        logger.error(f"Server error: {str(e)}", exc_info=True)
        raise

if __name__ == "__main__":
    run()
