"""
FastAPI Server for the Autogrowth engine
Serves the autogrowth API and runs the daily accrual job
"""

from contextlib import asynccontextmanager

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded

from config.config import API_RATE_LIMIT, ENVIRONMENT, WEBAPP_URL, validate_config
from config.logging import setup_logging
from config.sentry import init_sentry
from src.database.engine import dispose_engine
from src.api.router import router as api_router
from src.tasks.accrual_scheduler import schedule_accrual_tasks

# Setup logging at module level (must run before app creation)
# This ensures logging works when uvicorn imports the module
setup_logging()
init_sentry()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup/shutdown events
    """
    # Startup
    logger.info("Starting Autogrowth API Server...")

    # NOTE: Database tables managed by Alembic migrations
    # Run: alembic upgrade head

    scheduler = AsyncIOScheduler(timezone="UTC")
    schedule_accrual_tasks(scheduler)
    scheduler.start()
    logger.info("Accrual scheduler started")

    yield

    # Shutdown
    logger.info("Shutting down Autogrowth API Server...")

    scheduler.shutdown(wait=False)
    logger.info("Accrual scheduler stopped")

    await dispose_engine()
    logger.info("Database connections closed")


# Per-IP rate limit (configurable in .env)
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[API_RATE_LIMIT],
    storage_uri="memory://",
)

app = FastAPI(
    title="Autogrowth Engine API",
    description="ROI accrual, investment tiers and tier upgrades",
    version="1.0.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


# CORS: exact origins only
allowed_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

if WEBAPP_URL and WEBAPP_URL not in allowed_origins:
    allowed_origins.append(WEBAPP_URL)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Security headers on every response"""
    response = await call_next(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

    if ENVIRONMENT == "production" and request.url.scheme == "https":
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    return response


# All API endpoints live under /api
app.include_router(api_router, prefix="/api")


@app.get("/")
async def root():
    """
    Root endpoint
    """
    return {
        "service": "Autogrowth Engine API",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """
    Health check endpoint
    """
    return {"status": "healthy"}


# Error handler for HTTPException (must be before generic Exception handler)
@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """
    Return the original status code, with the RPC failure shape
    """
    if exc.status_code >= 500:
        logger.error(f"HTTP {exc.status_code}: {exc.detail}")
    elif exc.status_code >= 400:
        logger.warning(f"HTTP {exc.status_code}: {exc.detail}")

    content = exc.detail if isinstance(exc.detail, dict) else {"success": False, "error": exc.detail}
    if exc.status_code == 401 and isinstance(content, dict):
        content.setdefault("code", "unauthenticated")
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


# Error handler for unexpected exceptions
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """
    Global exception handler for unexpected errors
    """
    logger.exception(f"Unhandled exception: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": "Internal server error",
            "detail": str(exc) if getattr(app, "debug", False) else "An error occurred",
        },
    )


if __name__ == "__main__":
    import uvicorn

    try:
        validate_config()
    except ValueError as e:
        logger.error(str(e))
        raise SystemExit(1)

    logger.info("Configuration validated successfully")

    # Listen on localhost only; exposed through the reverse proxy
    uvicorn.run(
        "api_server:app",
        host="127.0.0.1",
        port=8003,
        reload=ENVIRONMENT == "development",
        log_level="info",
    )
