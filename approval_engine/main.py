"""
Approval Engine - Main FastAPI Application

Builds the container, mounts the API and runs the SLA job queue for the
lifetime of the process.
"""
from contextlib import asynccontextmanager
from typing import Optional
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.middleware import CorrelationIdMiddleware, register_error_handlers
from .api.routes import api_router
from .config.settings import Settings, get_settings
from .container import Container
from .repositories.mongo_client import close_connection, create_indexes
from .utils.logger import get_logger, setup_logging

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
        - Builds the container unless one was injected
        - Creates MongoDB indexes
        - Starts the job queue and rehydrates SLA timers

    Shutdown:
        - Stops the job queue
        - Closes database connections
    """
    settings: Settings = app.state.settings
    logger.info("Starting approval engine...")

    if getattr(app.state, "container", None) is None:
        app.state.container = Container.build(settings)
    container: Container = app.state.container

    try:
        create_indexes(container.db)
    except Exception as e:
        logger.error(f"Failed to create indexes: {e}")

    if settings.scheduler_enabled:
        container.job_queue.start()
        if settings.rehydrate_on_startup:
            try:
                container.sla_timers.rehydrate_pending_timers()
            except Exception as e:
                logger.error(f"Failed to rehydrate SLA timers: {e}")

    logger.info("Application started successfully")

    yield

    logger.info("Shutting down...")
    container.job_queue.shutdown()
    close_connection()
    logger.info("Application shutdown complete")


# =============================================================================
# Application Factory
# =============================================================================

def create_app(settings: Optional[Settings] = None, container: Optional[Container] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to run with; defaults to the environment
        container: Pre-built container; built on startup when omitted

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or (container.settings if container else get_settings())
    setup_logging(settings)

    application = FastAPI(
        title="Approval Engine",
        description="Multi-stage approval workflows gating entity lifecycle transitions",
        version=VERSION,
        lifespan=lifespan,
        docs_url="/api/docs" if settings.debug else None,
        redoc_url="/api/redoc" if settings.debug else None,
        openapi_url="/api/openapi.json" if settings.debug else None,
    )
    application.state.settings = settings
    application.state.container = container

    _configure_middleware(application, settings)
    register_error_handlers(application)
    application.include_router(api_router, prefix="/api/v1")

    @application.get("/", tags=["Ops"])
    async def root():
        return {"name": "Approval Engine", "version": VERSION}

    return application


def _configure_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure application middleware."""
    # allow_credentials must be False when allowing all origins
    allow_all = settings.cors_origins.strip() == "*"

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_origins_list,
        allow_credentials=not allow_all,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Correlation-Id"],
    )
    app.add_middleware(CorrelationIdMiddleware)


# =============================================================================
# Application Instance
# =============================================================================

app = create_app()
