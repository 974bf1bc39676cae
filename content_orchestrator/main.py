"""FastAPI application entrypoint."""
from contextlib import asynccontextmanager

from fastapi import FastAPI

from content_orchestrator import __version__
from content_orchestrator.logging_config import configure_logging, get_logger
from content_orchestrator.middleware.correlation_id import CorrelationIdMiddleware
from content_orchestrator.routers import (
    api_health_router,
    health_router,
    pipeline_router,
    scheduler_router,
)
from content_orchestrator.runtime import build_runtime

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown: logging, service graph, background jobs."""
    configure_logging()
    runtime = getattr(app.state, "runtime", None) or build_runtime()
    app.state.runtime = runtime
    await runtime.start()
    logger.info("app_started", version=__version__)
    yield
    await runtime.stop()
    logger.info("app_shutdown")


def create_app() -> FastAPI:
    app = FastAPI(
        title="Content Orchestrator",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(CorrelationIdMiddleware)

    app.include_router(api_health_router)
    app.include_router(health_router)
    app.include_router(pipeline_router)
    app.include_router(scheduler_router)

    @app.get("/")
    def root() -> dict[str, str]:
        """Root endpoint: app name and version."""
        return {"name": "content_orchestrator", "version": __version__}

    return app


app = create_app()
