"""
FastAPI application entry point for pushgate

Initializes the FastAPI app, registers routers, and sets up startup/shutdown events.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI, Response
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pushgate.core.config import settings
from pushgate.core.database import engine, Base
from pushgate.core.logging_config import setup_logging
from pushgate.core.metrics import init_metrics, get_metrics, get_content_type
from pushgate.middleware import RequestLoggingMiddleware
from pushgate.api.v1.devices import router as devices_router
from pushgate.api.v1.push import router as push_router
from pushgate.services.push.dispatch_service import PushDispatchService
import pushgate.models  # noqa: F401  registers tables on Base.metadata

import logging

# Application version
APP_VERSION = "1.0.0"

setup_logging(log_dir=settings.LOG_DIR, app_version=APP_VERSION)
logger = logging.getLogger(__name__)

init_metrics(version=APP_VERSION)

# Global scheduler instance
scheduler: AsyncIOScheduler = None


async def scheduled_credential_refresh_job(app: FastAPI):
    """
    Regenerate provider credentials before they go stale.

    Keeps the APNS JWT and FCM access token warm so dispatches do not pay
    for minting on the hot path.
    """
    service: PushDispatchService = app.state.dispatch_service
    try:
        results = await service.refresh_credentials()
        failed = [provider for provider, ok in results.items() if not ok]
        if failed:
            logger.warning(
                "Credential refresh incomplete",
                extra={"event_type": "credential_refresh", "failed_providers": failed}
            )
        else:
            logger.debug("Credential refresh complete", extra={"providers": list(results)})
    except Exception as e:
        logger.error(f"Scheduled credential refresh failed: {e}", exc_info=True)


async def scheduled_receipt_check_job(app: FastAPI):
    """Poll Expo for receipts of tickets older than a minute."""
    service: PushDispatchService = app.state.dispatch_service
    try:
        result = await service.check_receipts(min_age_seconds=60)
        if result.checked:
            logger.info(
                "Scheduled receipt check complete",
                extra={"event_type": "receipt_check", **result.to_dict()}
            )
    except Exception as e:
        logger.error(f"Scheduled receipt check failed: {e}", exc_info=True)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler for startup and shutdown events.

    - Startup: creates database tables, builds the dispatch service and
      starts the scheduler
    - Shutdown: stops the scheduler and closes provider connections
    """
    global scheduler

    logger.info(
        "Application starting",
        extra={
            "event_type": "app_startup",
            "version": APP_VERSION,
            "log_level": settings.LOG_LEVEL,
            "debug_mode": settings.DEBUG,
        }
    )

    Base.metadata.create_all(bind=engine)
    logger.info(
        "Database initialized",
        extra={"event_type": "database_init", "status": "success"}
    )

    service = PushDispatchService.from_settings()
    app.state.dispatch_service = service
    logger.info(
        "Push dispatch service ready",
        extra={
            "event_type": "push_init",
            "providers": service.providers,
            "enabled": service.enabled,
        }
    )

    scheduler = AsyncIOScheduler()
    jobs = []
    if settings.PUSH_CREDENTIAL_REFRESH_MINUTES > 0:
        scheduler.add_job(
            scheduled_credential_refresh_job,
            trigger=IntervalTrigger(minutes=settings.PUSH_CREDENTIAL_REFRESH_MINUTES),
            args=[app],
            id="credential_refresh",
            name="Proactive provider credential refresh",
            replace_existing=True
        )
        jobs.append("credential_refresh")

    if settings.PUSH_RECEIPT_CHECK_MINUTES > 0 and "expo" in service.providers:
        scheduler.add_job(
            scheduled_receipt_check_job,
            trigger=IntervalTrigger(minutes=settings.PUSH_RECEIPT_CHECK_MINUTES),
            args=[app],
            id="expo_receipt_check",
            name="Expo receipt reconciliation",
            replace_existing=True
        )
        jobs.append("expo_receipt_check")

    scheduler.start()
    logger.info(
        "Scheduler started",
        extra={"event_type": "scheduler_init", "jobs": jobs}
    )

    yield

    logger.info("Application shutting down", extra={"event_type": "app_shutdown"})

    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info(
            "Scheduler stopped",
            extra={"event_type": "scheduler_shutdown"}
        )

    await service.close()

    logger.info(
        "Application shutdown complete",
        extra={"event_type": "app_shutdown_complete", "version": APP_VERSION}
    )


# Create FastAPI app
app = FastAPI(
    title="pushgate API",
    description="Push notification delivery across APNS, FCM and Expo",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(devices_router, prefix=settings.API_V1_PREFIX)
app.include_router(push_router, prefix=settings.API_V1_PREFIX)


@app.get("/")
async def root():
    """Root endpoint - API status check"""
    return {
        "name": "pushgate API",
        "version": APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    service = getattr(app.state, "dispatch_service", None)
    return {
        "status": "healthy",
        "push_enabled": settings.PUSH_ENABLED,
        "providers": service.providers if service else [],
    }


@app.get("/metrics")
async def prometheus_metrics():
    """
    Prometheus metrics endpoint

    Returns Prometheus-compatible metrics for scraping.
    """
    return Response(
        content=get_metrics(),
        media_type=get_content_type()
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower()
    )
