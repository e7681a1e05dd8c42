import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hybrid_attachments.core.config import settings
from hybrid_attachments.core.errors import AttachmentError
from hybrid_attachments.api.v1 import api_router
from hybrid_attachments.middleware.monitoring import (
    MonitoringMiddleware,
    configure_structured_logging,
    setup_db_event_listeners,
)
from hybrid_attachments.jobs.cleanup_batch import setup_cleanup_scheduler, shutdown_cleanup_scheduler
from hybrid_attachments.jobs.outbox_batch import start_outbox_scheduler, stop_outbox_scheduler, get_outbox_scheduler

# Configure structured logging
if settings.ENABLE_STRUCTURED_LOGGING:
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

    Starts query monitoring and the background schedulers, and stops the
    schedulers on shutdown.
    """
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    try:
        from hybrid_attachments.core.database import engine
        setup_db_event_listeners(engine)
    except Exception as e:
        logger.warning(f"Failed to initialize database monitoring: {e}")

    if settings.OUTBOX_SCHEDULER_ENABLED:
        try:
            await start_outbox_scheduler()
        except Exception as e:
            logger.error(f"Failed to start outbox scheduler: {e}")

        try:
            setup_cleanup_scheduler()
        except Exception as e:
            logger.error(f"Failed to initialize outbox cleanup scheduler: {e}")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}")

    try:
        await stop_outbox_scheduler()
        shutdown_cleanup_scheduler()
    except Exception as e:
        logger.error(f"Error stopping schedulers: {e}")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Hybrid attachment storage API",
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
if settings.ENABLE_PROMETHEUS_METRICS:
    app.add_middleware(MonitoringMiddleware)

# Include API router
app.include_router(api_router, prefix="/api/v1")


@app.exception_handler(AttachmentError)
async def attachment_error_handler(request: Request, exc: AttachmentError):
    if exc.status_code >= 500:
        logger.error(f"{type(exc).__name__} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "error": type(exc).__name__},
    )


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

    Returns application health status including the outbox scheduler status.
    """
    outbox_status = get_outbox_scheduler().get_status()

    return {
        "status": "healthy",
        "storage_backend": settings.STORAGE_BACKEND,
        "schedulers": {
            "outbox": {
                "running": outbox_status["running"],
                "last_run": outbox_status["last_run"],
                "run_count": outbox_status["run_count"],
                "error_count": outbox_status["error_count"]
            }
        }
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "hybrid_attachments.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG
    )
