"""
MeetingFlow - meeting scheduling orchestration

FastAPI application entry point.
"""
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

# Import observability modules
from meetingflow.config import settings
from meetingflow.database import engine
from meetingflow.dependencies.services import get_event_fallback
from meetingflow.logging_config import configure_logging, get_logger
from meetingflow.sentry_config import configure_sentry
from meetingflow.middleware.logging import LoggingMiddleware
from meetingflow.routes.metrics import router as metrics_router

# Import route modules
from meetingflow.routes.scheduling import router as scheduling_router
from meetingflow.routes.inbound import router as inbound_router
from meetingflow.routes.webhooks import router as webhooks_router
from meetingflow.routes.reports import router as reports_router

# Initialize logging first
configure_logging()

# Initialize Sentry (if SENTRY_DSN is set)
configure_sentry()

log = get_logger(component="app")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Deliveries that fell back to in-process when Redis was down
    await get_event_fallback().drain(settings.SHUTDOWN_DRAIN_SECONDS)
    await engine.dispose()


# Create FastAPI app
app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Meeting scheduling orchestration: availability, drafts, multi-channel follow-up and webhooks",
    lifespan=lifespan,
)

# Add logging middleware FIRST (runs before other middleware)
app.add_middleware(LoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include metrics endpoint FIRST (so it's always available)
app.include_router(metrics_router)

app.include_router(scheduling_router)
app.include_router(inbound_router)
app.include_router(webhooks_router)
app.include_router(reports_router)


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "status": "running"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        log.error("health_database_unreachable", error=str(e))
        database = "unreachable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "database": database
    }
