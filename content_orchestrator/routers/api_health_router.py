# /api/healthz (liveness), /api/readyz (readiness: DB + run status store).
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from content_orchestrator.db import get_db
from content_orchestrator.logging_config import get_logger
from content_orchestrator.runtime import Runtime, get_runtime

router = APIRouter(prefix="/api", tags=["health"])
logger = get_logger(__name__)


@router.get("/healthz")
def healthz() -> dict[str, str]:
    """Liveness: process is up. Always 200."""
    return {"status": "ok"}


@router.get("/readyz")
async def readyz(db: AsyncSession = Depends(get_db), runtime: Runtime = Depends(get_runtime)):
    """Readiness: DB and the run status store (Redis when configured). 503 on failure."""
    try:
        await db.execute(text("SELECT 1"))
    except Exception as e:
        logger.warning("readyz.db_fail", error=str(e))
        return JSONResponse(status_code=503, content={"status": "unhealthy", "db": "fail"})

    if not await runtime.store.ping():
        logger.warning("readyz.store_fail")
        return JSONResponse(status_code=503, content={"status": "unhealthy", "store": "fail"})

    return {"status": "ok", "db": "ok", "store": "ok"}
