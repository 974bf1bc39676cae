"""Publishing engine API: status, manual sweep, failed-item re-queue, publish now."""
from uuid import UUID

from fastapi import APIRouter, Depends

from content_orchestrator.routers.errors import to_http_exception
from content_orchestrator.runtime import Runtime, get_runtime
from content_orchestrator.schemas.scheduler import JobStatusOut, SchedulerStatusResponse, SweepResponse

router = APIRouter(prefix="/scheduler", tags=["scheduler"])


@router.get("/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status(runtime: Runtime = Depends(get_runtime)) -> SchedulerStatusResponse:
    """Engine state: enabled, interval, last_tick_at, due items, counts per status, background jobs."""
    engine = runtime.engine
    return SchedulerStatusResponse(
        enabled=engine.enabled,
        interval_seconds=runtime.settings.scheduler_interval_seconds,
        last_tick_at=engine.last_tick_at.isoformat() if engine.last_tick_at else None,
        pending_count=await engine.pending_count(),
        status_counts=await engine.status_counts(),
        jobs=[JobStatusOut(**j.to_dict()) for j in runtime.jobs.status()],
    )


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(runtime: Runtime = Depends(get_runtime)) -> SweepResponse:
    """Run one publishing sweep now (waits for future buckets inside the lookahead)."""
    report = await runtime.engine.sweep()
    return SweepResponse(**report.to_dict())


@router.post("/retry-failed")
async def retry_failed(runtime: Runtime = Depends(get_runtime)) -> dict:
    return {"requeued": await runtime.engine.retry_failed_posts()}


@router.post("/projects/{project_id}/publish-now", response_model=SweepResponse)
async def publish_now(project_id: UUID, runtime: Runtime = Depends(get_runtime)) -> SweepResponse:
    """posts_approved -> publishing: publish every approved post immediately."""
    try:
        report = await runtime.engine.publish_project_now(project_id)
    except ValueError as e:
        raise to_http_exception(e)
    return SweepResponse(**report.to_dict())
