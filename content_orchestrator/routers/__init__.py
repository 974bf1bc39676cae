"""API routers."""
from content_orchestrator.routers.api_health_router import router as api_health_router
from content_orchestrator.routers.health_router import router as health_router
from content_orchestrator.routers.pipeline_router import router as pipeline_router
from content_orchestrator.routers.scheduler_router import router as scheduler_router

__all__ = [
    "api_health_router",
    "health_router",
    "pipeline_router",
    "scheduler_router",
]
