"""
FastAPI application entry point.
"""

import logging
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, WebSocket, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from jobrelay import __version__
from jobrelay.api.routes import (
    admin_router,
    health_router,
    jobs_router,
    subscriptions_router,
)
from jobrelay.api.websocket import websocket_handler
from jobrelay.config import get_settings
from jobrelay.engine import JobEngine
from jobrelay.errors import (
    InvalidTransitionError,
    JobNotFoundError,
    StoreUnavailableError,
    ValidationError,
)
from jobrelay.observability.logging import setup_logging
from jobrelay.observability.metrics import setup_metrics
from jobrelay.observability.tracing import instrument_fastapi, setup_tracing
from jobrelay.types.api import ErrorResponse

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds and starts a job engine unless one was supplied to create_app.
    During the build phase the engine is built but never started, and the
    schema is not created.
    """
    settings = get_settings()
    setup_logging()
    setup_metrics()
    setup_tracing()

    owned = app.state.engine is None
    if owned:
        app.state.engine = await JobEngine.create(settings)
        if settings.api_run_engine and not settings.build_phase:
            await app.state.engine.start()
        elif settings.build_phase:
            logger.info("Build phase, job engine not started")

    logger.info("Application started")

    yield

    if owned:
        await app.state.engine.close()
        app.state.engine = None
    logger.info("Application shutdown")


def _error(status_code: int, error: str, exc: Exception) -> JSONResponse:
    body = ErrorResponse(error=error, detail=str(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump())


def register_exception_handlers(app: FastAPI) -> None:
    """Map job queue errors to HTTP responses."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return _error(status.HTTP_400_BAD_REQUEST, "validation_error", exc)

    @app.exception_handler(JobNotFoundError)
    async def not_found_handler(request: Request, exc: JobNotFoundError):
        return _error(status.HTTP_404_NOT_FOUND, "not_found", exc)

    @app.exception_handler(InvalidTransitionError)
    async def invalid_transition_handler(request: Request, exc: InvalidTransitionError):
        return _error(status.HTTP_409_CONFLICT, "invalid_transition", exc)

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError):
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "store_unavailable", exc)


def create_app(engine: JobEngine | None = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        engine: Prebuilt job engine. When omitted the lifespan creates one
            from settings and owns it.

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Jobrelay API",
        description="Durable job queue with lease-based dispatch, retries and admin statistics",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)

    app.include_router(health_router)
    app.include_router(jobs_router)
    app.include_router(admin_router)
    app.include_router(subscriptions_router)

    @app.websocket("/ws/jobs")
    async def jobs_websocket(websocket: WebSocket):
        """
        WebSocket endpoint for real-time job updates.

        Streams every status change; clients may narrow the stream by
        subscribing to specific job ids.
        """
        await websocket_handler(websocket, websocket.app.state.engine.channel)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "jobrelay.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
