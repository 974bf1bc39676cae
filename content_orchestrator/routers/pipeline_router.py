"""Pipeline run-loop API: start, status, result, review, cancel, retry, active."""
from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status

from content_orchestrator.routers.errors import to_http_exception
from content_orchestrator.runtime import Runtime, get_runtime
from content_orchestrator.schemas.pipeline import (
    PipelineCancelRequest,
    PipelineResult,
    PipelineRunStatus,
    PipelineStartResponse,
    PipelineStatus,
    ReviewSubmission,
)

router = APIRouter(prefix="/pipeline", tags=["pipeline"])


@router.get("/active", response_model=List[PipelineRunStatus])
async def list_active_pipelines(runtime: Runtime = Depends(get_runtime)) -> List[PipelineRunStatus]:
    return await runtime.pipeline.list_active()


@router.post("/{project_id}/start", response_model=PipelineStartResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_pipeline(project_id: UUID, runtime: Runtime = Depends(get_runtime)) -> PipelineStartResponse:
    """raw_content or failed project -> processing; the run continues as a background job."""
    try:
        job_id = await runtime.pipeline.start_pipeline(project_id)
    except ValueError as e:
        raise to_http_exception(e)
    return PipelineStartResponse(project_id=project_id, job_id=job_id, status=PipelineStatus.IN_PROGRESS)


@router.get("/{project_id}/status", response_model=PipelineRunStatus)
async def get_pipeline_status(project_id: UUID, runtime: Runtime = Depends(get_runtime)) -> PipelineRunStatus:
    return await runtime.pipeline.get_status(project_id)


@router.get("/{project_id}/result", response_model=PipelineResult)
async def get_pipeline_result(project_id: UUID, runtime: Runtime = Depends(get_runtime)) -> PipelineResult:
    result = await runtime.pipeline.get_result(project_id)
    if result is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Pipeline result not found")
    return result


@router.post("/{project_id}/review")
async def submit_pipeline_review(
    project_id: UUID,
    payload: ReviewSubmission,
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    """Approve (all pending entities of the step) or reject (cancels the run)."""
    try:
        approved = await runtime.pipeline.submit_review(project_id, payload)
    except ValueError as e:
        raise to_http_exception(e)
    return {"project_id": str(project_id), "stage": payload.stage.value, "approved": approved}


@router.post("/{project_id}/cancel")
async def cancel_pipeline(
    project_id: UUID,
    payload: PipelineCancelRequest,
    runtime: Runtime = Depends(get_runtime),
) -> dict:
    cancelled = await runtime.pipeline.cancel_pipeline(project_id, payload.reason)
    return {"project_id": str(project_id), "cancelled": cancelled}


@router.post("/{project_id}/retry", response_model=PipelineStartResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_pipeline(project_id: UUID, runtime: Runtime = Depends(get_runtime)) -> PipelineStartResponse:
    """Restart the whole run from processing (previous status and result are dropped)."""
    try:
        job_id = await runtime.pipeline.retry_pipeline(project_id)
    except ValueError as e:
        raise to_http_exception(e)
    return PipelineStartResponse(project_id=project_id, job_id=job_id, status=PipelineStatus.IN_PROGRESS)
