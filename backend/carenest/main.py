"""
FastAPI application entry point.

Run with:
    uvicorn backend.carenest.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.carenest.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.carenest.core.config import settings
from backend.carenest.core.logging_config import setup_logging, get_logger
from backend.carenest.core.errors import register_error_handlers
from backend.carenest.core.middleware import RequestLoggingMiddleware
from backend.carenest.core.health import HealthStatus, run_health_check
from backend.carenest.container import ServiceContainer, get_container

# ── API routers ──
from backend.carenest.api.v1.locations import router as location_router
from backend.carenest.api.v1.panic import router as panic_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown events."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    container = get_container()
    yield
    # Deliver whatever the last requests queued before closing the store
    container.pump()
    container.close()
    logger.info("Shutting down %s", settings.APP_NAME)


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Family safety backend: location ingest, geofence entry/exit "
        "evaluation, panic alerts and caregiver SMS notification."
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
app.include_router(location_router)
app.include_router(panic_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "modules": [
            "location-ingest",
            "geofence-evaluator",
            "panic-trigger",
            "alert-dispatcher",
        ],
        "docs": "/docs",
    }


@app.get("/health", tags=["health"])
def health_check(container: ServiceContainer = Depends(get_container)):
    """Deep health probe — store, SMS gateway, change-stream backlog."""
    report = run_health_check(container.store, container.gateway, container.stream)
    if report.status == HealthStatus.UNHEALTHY:
        return JSONResponse(status_code=503, content=report.to_dict())
    return report.to_dict()


@app.get("/health/live", tags=["health"])
async def liveness():
    """Kubernetes liveness probe — is the process alive?"""
    return {"status": "alive"}
