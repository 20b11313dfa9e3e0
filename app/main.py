import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.api.v1 import api_router
from app.core.exceptions import (
    AidlyError,
    ChannelAuthorizationError,
    ExportError,
    NotFoundError,
    ValidationError,
)
from app.core.realtime import relay
from app.middleware.monitoring import (
    MonitoringMiddleware,
    configure_structured_logging,
    setup_db_event_listeners,
)
from app.jobs.scheduler import start_scheduler, stop_scheduler, get_scheduler_status

# Configure structured logging
if getattr(settings, "ENABLE_STRUCTURED_LOGGING", True):
    configure_structured_logging(
        log_level="DEBUG" if settings.DEBUG else "INFO",
        json_format=not settings.DEBUG  # Use JSON in production, plain text in debug
    )
else:
    logging.basicConfig(
        level=logging.INFO if not settings.DEBUG else logging.DEBUG,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Registers query timing, creates missing tables and runs the background
    scheduler for the lifetime of the process.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    try:
        from app.core.database import engine, init_models
        setup_db_event_listeners(engine)
        await init_models()
        logger.info("Database initialized")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}", exc_info=True)

    try:
        start_scheduler()
    except Exception as e:
        logger.error(f"Failed to start background scheduler: {e}", exc_info=True)

    yield

    logger.info(f"Shutting down {settings.APP_NAME}")
    try:
        stop_scheduler()
    except Exception as e:
        logger.error(f"Error stopping background scheduler: {e}")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="AidlY helpdesk analytics, reporting and notification API",
    debug=settings.DEBUG,
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.BACKEND_CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Performance monitoring middleware (outermost - runs first)
if getattr(settings, "ENABLE_PROMETHEUS_METRICS", True):
    app.add_middleware(MonitoringMiddleware)


# ============================================================================
# Domain error mapping
# ============================================================================

ERROR_STATUS = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ChannelAuthorizationError, status.HTTP_403_FORBIDDEN),
    (ExportError, status.HTTP_400_BAD_REQUEST),
)


@app.exception_handler(AidlyError)
async def aidly_error_handler(request: Request, exc: AidlyError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_class, code in ERROR_STATUS:
        if isinstance(exc, error_class):
            status_code = code
            break

    if status_code >= 500:
        logger.error(f"Unhandled service error on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=status_code, content={"success": False, "error": exc.message})


# Include API router
app.include_router(api_router, prefix="/api/v1")


@app.get("/")
async def root():
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """
    Health check endpoint.

    Returns application status with the background scheduler state and
    realtime relay occupancy.
    """
    scheduler_status = get_scheduler_status()
    relay_stats = relay.get_stats()

    return {
        "status": "healthy",
        "scheduler": {
            "status": scheduler_status["status"],
            "jobs": len(scheduler_status["jobs"])
        },
        "realtime": {
            "total_subscriptions": relay_stats["total_subscriptions"],
            "channels": relay_stats["channels"]
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "app.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
