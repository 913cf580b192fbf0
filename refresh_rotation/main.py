import logging
import sys
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from refresh_rotation import __version__
from refresh_rotation.api.routes import auth
from refresh_rotation.config import AppMode, get_settings
from refresh_rotation.db.database import init_db
from refresh_rotation.services.sweeper import CleanupSweeper

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Quiet noisy loggers
logging.getLogger("aiosqlite").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events - startup and shutdown"""

    # === STARTUP ===
    logger.info(f"Starting refresh token service in {settings.APP_MODE.value} mode...")

    await init_db()

    # Periodic token cleanup (skip during pytest)
    sweeper = None
    if settings.CLEANUP_ENABLED and "pytest" not in sys.modules:
        sweeper = CleanupSweeper(interval_seconds=settings.cleanup_interval_seconds)
        sweeper.start()
    app.state.sweeper = sweeper

    yield

    # === SHUTDOWN ===
    if sweeper is not None:
        await sweeper.stop()
    logger.info("Shutting down refresh token service...")


app = FastAPI(
    title="Refresh Token Service",
    description="Access/refresh token issuance with refresh token rotation and reuse detection",
    version=__version__,
    lifespan=lifespan,
    debug=settings.DEBUG,
)

# Installed by the deployment, e.g. app.state.identity_provider = LdapProvider(...)
app.state.identity_provider = None


@app.exception_handler(RequestValidationError)
async def request_validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Never echo submitted values back; they may contain tokens or passwords.
    safe_errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg", ""), "type": error.get("type", "")}
        for error in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={"detail": safe_errors},
    )


# Request logging (development only)
if settings.APP_MODE == AppMode.DEV:
    from refresh_rotation.middleware.logging import (
        RequestLoggingMiddleware,
        configure_request_logging,
    )
    configure_request_logging(settings.LOG_LEVEL)
    app.add_middleware(RequestLoggingMiddleware)

# API Routes - versioned under /api/v1/
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(auth.router)
app.include_router(api_v1_router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "mode": settings.APP_MODE.value,
        "rotate_on_use": settings.ROTATE_ON_USE,
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "refresh_rotation.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=(settings.APP_MODE == AppMode.DEV),
    )
