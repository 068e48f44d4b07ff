"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload
"""

from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.database import close_db, get_session_factory
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware

# ── Domain ──
from backend.app.hydro.persistence import PersistenceSync, SqlAlchemyStationRepository
from backend.app.hydro.service import SmartDataService

# ── API routers ──
from backend.app.api.v1.stations import router as stations_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


# ── Application lifespan (startup / shutdown) ──

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the process-wide service once; release connections on shutdown."""
    logger.info(
        "Starting %s v%s [%s]",
        settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
    )
    http_client = httpx.AsyncClient(timeout=settings.FETCH_TIMEOUT_SECONDS)
    service = SmartDataService.from_settings(settings, client=http_client)
    repository = SqlAlchemyStationRepository(get_session_factory())

    app.state.smart_data_service = service
    app.state.persistence_sync = PersistenceSync(repository, concurrency=settings.SYNC_CONCURRENCY)

    # Thresholds maintained in the database extend the optional JSON file
    try:
        await service.load_thresholds_from_store(repository)
    except (SQLAlchemyError, OSError) as e:
        logger.warning("Could not load alarm levels from the database: %s", e)

    yield

    logger.info("Shutting down %s", settings.APP_NAME)
    await service.close()
    await http_client.aclose()
    await close_db()


# ── Create application ──

app = FastAPI(
    title=settings.APP_NAME,
    description=(
        "Hydrological station data from the IMGW hydro and hydro2 APIs, "
        "reconciled into one freshest-value record per station, "
        "cached in process with stale-while-revalidate fallback, "
        "annotated with warning / alarm levels and "
        "synchronised to a relational store."
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
app.include_router(stations_router)


# ── Root & health endpoints ──

@app.get("/", tags=["root"])
async def root():
    return {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "sources": [settings.HYDRO_API_URL, settings.HYDRO2_API_URL],
        "docs": "/docs",
    }


@app.get("/health/live", tags=["health"])
async def liveness():
    """Liveness check: is the process alive?"""
    return {"status": "alive"}
