"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ai_jobs import __version__
from ai_jobs.api.routes import health_router, jobs_router
from ai_jobs.config import get_settings
from ai_jobs.errors import StoreUnavailable
from ai_jobs.observability.logging import bind_context, setup_logging
from ai_jobs.observability.metrics import setup_metrics
from ai_jobs.observability.tracing import instrument_fastapi, setup_tracing
from ai_jobs.services import Services, build_services

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds and connects the services unless they were injected through
    ``create_app``. An unreachable store does not block startup; /ready
    reports it instead.
    """
    settings = get_settings()
    setup_logging(settings)
    setup_tracing(settings)
    bind_context(component="api")

    owned = getattr(app.state, "services", None) is None
    if owned:
        app.state.services = build_services(settings, metrics=setup_metrics())
    services: Services = app.state.services

    try:
        await services.connect()
    except StoreUnavailable as e:
        logger.error("Backing store unavailable at startup", extra={"error": str(e)})

    logger.info("Application started", extra={"kinds": services.handlers.kinds()})

    yield

    if owned:
        await services.close()
    logger.info("Application shutdown")


def create_app(services: Services | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        services: Pre-built services. Built from settings at startup when
            not given.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="AI Job Queue API",
        description="Asynchronous AI job submission and status",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(health_router)
    app.include_router(jobs_router)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "ai_jobs.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


# Create app instance for uvicorn
app = create_app()


if __name__ == "__main__":
    run()
