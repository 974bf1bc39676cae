"""Health check endpoint."""
from fastapi import APIRouter

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict[str, str]:
    """Health check for load balancer / Docker."""
    return {"status": "ok", "service": "content_orchestrator"}
