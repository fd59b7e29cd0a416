"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 3000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import StoreUnavailableError, register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check
from backend.app.core.redis_client import close_redis, connect_redis, get_redis

# ── Dispatch core ──
from backend.app.notifications.chain import build_chains
from backend.app.notifications.events import CompositeEventSink, EventRecorder, LoggingEventSink
from backend.app.notifications.orchestrator import DeliveryOrchestrator
from backend.app.notifications.service import NotificationService
from backend.app.retry.scheduler import RetryScheduler
from backend.app.retry.store import RetryPolicy, RetryStore

# ── API routers ──
from backend.app.api.v1.notifications import info_router, router as notification_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the dispatch core, start the retry scheduler, tear down on exit."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    http_client = httpx.AsyncClient(timeout=settings.HTTP_CLIENT_TIMEOUT_SECONDS)
    redis = get_redis()
    try:
        await connect_redis()
    except StoreUnavailableError as exc:
        # Serve anyway: intake reports LOST until Redis answers again
        logger.error("Starting without a reachable retry store: %s", exc.message)

    recorder = EventRecorder()
    events = CompositeEventSink([LoggingEventSink(), recorder])
    orchestrator = DeliveryOrchestrator(
        build_chains(settings, http_client),
        event_sink=events,
        send_timeout=settings.BACKEND_SEND_TIMEOUT_SECONDS,
    )
    store = RetryStore(redis, RetryPolicy.from_settings(settings))
    scheduler = RetryScheduler(
        store, orchestrator, events,
        poll_interval=settings.RETRY_POLL_INTERVAL_SECONDS,
    )

    app.state.redis = redis
    app.state.event_recorder = recorder
    app.state.retry_scheduler = scheduler
    app.state.notification_service = NotificationService(orchestrator, store, events)

    if settings.RETRY_SCHEDULER_ENABLED:
        await scheduler.start()

    try:
        yield
    finally:
        logger.info("Shutting down %s", settings.APP_NAME)
        await scheduler.stop()
        await http_client.aclose()
        await close_redis()


# ── Create application ──

def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Multi-channel notification dispatch (email, SMS, push) with "
            "ordered provider fallback chains and durable, age-banded "
            "retry of notifications whose whole chain failed."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── Middleware stack (outermost first) ──
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(notification_router)
    app.include_router(info_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — retry store, provider chains, scheduler."""
        report = await run_health_check(app.state)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(app.state)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
