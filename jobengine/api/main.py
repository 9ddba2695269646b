"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from jobengine import __version__
from jobengine.api.routes import (
    batches_router,
    failed_jobs_router,
    health_router,
    queues_router,
)
from jobengine.backends.manager import BackendManager
from jobengine.config import get_settings
from jobengine.db import close_db, init_db
from jobengine.exceptions import BackendUnavailable
from jobengine.observability.logging import setup_logging
from jobengine.observability.metrics import setup_metrics
from jobengine.observability.tracing import instrument_fastapi, setup_tracing
from jobengine.types.api import ErrorResponse

logger = logging.getLogger(__name__)


def create_app(backends: BackendManager | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        backends: Backends to operate on. When omitted, the database is
            initialized on startup and connections are built from settings.

    Returns:
        FastAPI: The configured application instance.
    """
    settings = get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events.
        """
        owns_backends = backends is None
        if owns_backends:
            setup_logging(role="api")
            session_factory = await init_db()
            app.state.backends = BackendManager.from_settings(settings, session_factory)
        setup_metrics()
        logger.info("Application started", extra={"connections": app.state.backends.names})

        yield

        if owns_backends:
            await app.state.backends.close()
            await close_db()
        logger.info("Application shutdown")

    app = FastAPI(
        title="Job Engine API",
        description="Operator API for queues, batches and the failed job store",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    if backends is not None:
        app.state.backends = backends

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BackendUnavailable)
    async def backend_unavailable_handler(request: Request, exc: BackendUnavailable) -> JSONResponse:
        logger.warning("Backend unavailable", extra={"path": request.url.path, "error": str(exc)})
        body = ErrorResponse(error="backend_unavailable", detail=str(exc))
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=body.model_dump())

    app.include_router(health_router)
    app.include_router(failed_jobs_router)
    app.include_router(batches_router)
    app.include_router(queues_router)

    if settings.tracing_enabled:
        setup_tracing()
        instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        create_app(),
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
