"""
QueueJoy Backend - Main FastAPI Application

Serves the call pipeline, the Telegram webhook and the tenant admin
functions under /api/v1 and under the console paths in /.netlify/functions.
"""

from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config.settings import settings
from .api.deps import close_clients, get_database
from .api.routes import api_router, functions_router
from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .repositories.async_mongo import async_health_check, close_async_connection, ensure_ticket_cache_indexes
from .repositories.rtdb_client import RealtimeDatabase
from .scheduler.housekeeping import start_scheduler, stop_scheduler
from .utils.logger import setup_logging, get_logger

# Setup logging first
setup_logging()
logger = get_logger(__name__)

VERSION = "1.0.0"


# =============================================================================
# Application Lifecycle
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan handler.

    Startup:
        - Creates the ticket cache TTL index (mongo backend)
        - Starts the housekeeping scheduler (when enabled)

    Shutdown:
        - Stops scheduler
        - Closes database and Telegram clients
    """
    logger.info("Starting QueueJoy backend...")

    if settings.ticket_store_backend == "mongo":
        await ensure_ticket_cache_indexes()

    if settings.housekeeping_enabled:
        start_scheduler(get_database())

    logger.info("Application started successfully")

    yield

    logger.info("Shutting down...")
    stop_scheduler()
    await close_clients()
    await close_async_connection()
    logger.info("Application shutdown complete")


# =============================================================================
# Application Factory
# =============================================================================

def create_app() -> FastAPI:
    """
    Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    application = FastAPI(
        title="QueueJoy Backend",
        description="Multi-tenant queue backend: caller notifications and Telegram linking",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )

    _configure_middleware(application)
    register_error_handlers(application)
    _configure_routes(application)

    return application


def _configure_middleware(app: FastAPI) -> None:
    """Configure application middleware."""
    # allow_credentials must be False when allowing all origins
    allow_all = settings.cors_origins.strip() == "*"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins_list,
        allow_credentials=not allow_all,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=[
            "Content-Type",
            "Authorization",
            "x-master-key",
            "x-api-key",
            "x-tenant",
            "x-operator-pin",
            "X-Correlation-Id",
        ],
        expose_headers=["X-Correlation-Id"],
    )

    app.add_middleware(CorrelationIdMiddleware)


def _configure_routes(app: FastAPI) -> None:
    """Configure application routes."""
    app.include_router(api_router, prefix="/api/v1")

    # Paths the static consoles already call
    app.include_router(functions_router, prefix="/.netlify/functions", include_in_schema=False)

    @app.get("/health", tags=["Health"])
    async def health(db: RealtimeDatabase = Depends(get_database)):
        """
        Health check endpoint.

        Reports realtime database connectivity, plus the ticket cache when
        it is backed by MongoDB.
        """
        database = await db.health()
        result = {
            "status": "healthy" if database.get("status") == "healthy" else "degraded",
            "version": VERSION,
            "environment": settings.environment,
            "database": database,
        }
        if settings.ticket_store_backend == "mongo":
            mongo = await async_health_check()
            result["ticketStore"] = mongo
            if mongo.get("status") != "healthy":
                result["status"] = "degraded"
        return result

    @app.get("/", tags=["Health"])
    async def root():
        """Root endpoint with API information."""
        return {
            "name": "QueueJoy Backend",
            "version": VERSION,
            "docs": "/api/docs" if settings.debug else None
        }


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()
