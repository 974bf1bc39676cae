"""
Pipeline run-loop end to end on SQLite with a fake completion capability.
- Auto-approve both reviews, one platform, no auto-schedule: project ends in posts_approved
  with one approved post per insight.
- Review wait: approval resumes the run; cancel or rejection ends it with a cancelled result.
- Completion failure: run status failed, project failed with the error recorded.
- Job retries: a later attempt retires the earlier attempt's unshipped work; cancel between
  attempts ends the run.
"""
import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from content_orchestrator.errors import ExternalCapabilityError, InvalidTransition
from content_orchestrator.models import Insight, Post, Project, ProjectEvent, ScheduledPost
from content_orchestrator.schemas.pipeline import (
    PipelineStage,
    PipelineStatus,
    ReviewDecision,
    ReviewSubmission,
)
from content_orchestrator.services.job_runner import JobRunner
from content_orchestrator.services.lifecycle_service import LifecycleService
from content_orchestrator.services.pipeline_service import PipelineConfig, PipelineService
from content_orchestrator.services.post_generation_service import PostGenerator
from content_orchestrator.services.review_service import ReviewService
from content_orchestrator.services.review_waiter import ReviewWaiter
from content_orchestrator.services.run_status_store import MemoryRunStatusStore
from content_orchestrator.services.scheduling_service import SchedulingService
from content_orchestrator.state.lifecycle import ProjectStage
from tests.conftest import FakeCompletion, RecordingJobRunner, create_insight, create_post, create_project

AUTO = {
    "insight_count_target": 2,
    "platforms": ["linkedin"],
    "auto_approve_insights": True,
    "auto_approve_posts": True,
    "auto_schedule": False,
}
MANUAL_INSIGHTS = {**AUTO, "auto_approve_insights": False}


async def no_sleep(_seconds: float) -> None:
    return None


def make_pipeline(session_factory, completion, jobs=None, review_timeout=86400.0) -> PipelineService:
    store = MemoryRunStatusStore()
    lifecycle = LifecycleService(session_factory)
    return PipelineService(
        session_factory,
        lifecycle=lifecycle,
        review=ReviewService(session_factory, lifecycle),
        generator=PostGenerator(session_factory, completion, lifecycle),
        scheduling=SchedulingService(session_factory, lifecycle),
        completion=completion,
        store=store,
        waiter=ReviewWaiter(store, timeout_seconds=review_timeout),
        jobs=jobs or RecordingJobRunner(),
        config=PipelineConfig(review_timeout_seconds=review_timeout),
        sleep=no_sleep,
    )


async def wait_for_status(pipeline: PipelineService, project_id, status: PipelineStatus, attempts: int = 300):
    for _ in range(attempts):
        current = await pipeline.get_status(project_id)
        if current.status is status:
            return current
        await asyncio.sleep(0.01)
    raise AssertionError(f"pipeline never reached {status.value}")


async def count(session_factory, model, project_id, status=None) -> int:
    async with session_factory() as db:
        q = select(func.count(model.id)).where(model.project_id == project_id)
        if status is not None:
            q = q.where(model.status == status)
        return await db.scalar(q)


@pytest.mark.asyncio
async def test_auto_approved_run_stops_at_posts_approved(session_factory, completion):
    project_id = await create_project(session_factory, workflow_config=AUTO)
    jobs = RecordingJobRunner()
    pipeline = make_pipeline(session_factory, completion, jobs=jobs)

    job_id = await pipeline.start_pipeline(project_id)
    assert jobs.enqueued[0][0] == f"pipeline:{project_id}"
    assert (await pipeline.get_status(project_id)).job_id == job_id
    result = await pipeline.run_pipeline(project_id)

    assert result.success is True
    assert result.final_stage is PipelineStage.COMPLETED
    assert (result.insights_generated, result.posts_generated, result.posts_scheduled) == (2, 2, 0)
    assert [s.stage for s in result.steps] == [
        PipelineStage.CLEANING_TRANSCRIPT,
        PipelineStage.EXTRACTING_INSIGHTS,
        PipelineStage.INSIGHTS_REVIEW,
        PipelineStage.GENERATING_POSTS,
        PipelineStage.POSTS_REVIEW,
        PipelineStage.SCHEDULING,
    ]
    assert result.steps[1].data["titles"] == ["Insight 1", "Insight 2"]

    assert await LifecycleService(session_factory).get_stage(project_id) is ProjectStage.POSTS_APPROVED
    assert await count(session_factory, Insight, project_id, "approved") == 2
    assert await count(session_factory, Post, project_id, "approved") == 2
    assert await count(session_factory, ScheduledPost, project_id) == 0
    async with session_factory() as db:
        project = await db.get(Project, project_id)
        assert project.cleaned_content == "um so today we talk about pricing and churn"
    assert ("extract_insights", 2) in completion.calls

    status = await pipeline.get_status(project_id)
    assert (status.status, status.current_stage, status.progress) == (
        PipelineStatus.COMPLETED,
        PipelineStage.COMPLETED,
        100,
    )
    assert len(status.completed_steps) == 6
    assert await pipeline.list_active() == []
    assert (await pipeline.get_result(project_id)).success is True


@pytest.mark.asyncio
async def test_job_runner_run_with_auto_schedule(session_factory, completion):
    project_id = await create_project(session_factory, workflow_config={**AUTO, "auto_schedule": True})
    jobs = JobRunner(sleep=no_sleep)
    pipeline = make_pipeline(session_factory, completion, jobs=jobs)

    await pipeline.start_pipeline(project_id)
    await jobs.join(timeout=10)

    result = await pipeline.get_result(project_id)
    assert result is not None and result.success
    assert result.posts_scheduled == 2
    assert await LifecycleService(session_factory).get_stage(project_id) is ProjectStage.SCHEDULED
    assert await count(session_factory, ScheduledPost, project_id, "pending") == 2
    assert await count(session_factory, Post, project_id, "scheduled") == 2


class FlakyGeneration(FakeCompletion):
    """generate_post fails once, on its second call."""

    def __init__(self, **kwargs) -> None:
        super().__init__(**kwargs)
        self.generate_calls = 0

    async def generate_post(self, insight_content: str, platform: str):
        self.generate_calls += 1
        if self.generate_calls == 2:
            raise ExternalCapabilityError("completion", "rate limited", retryable=True)
        return await super().generate_post(insight_content, platform)


@pytest.mark.asyncio
async def test_job_retry_does_not_duplicate_insights_or_posts(session_factory):
    project_id = await create_project(session_factory, workflow_config=AUTO)
    jobs = JobRunner(sleep=no_sleep)
    pipeline = make_pipeline(session_factory, FlakyGeneration(), jobs=jobs)

    await pipeline.start_pipeline(project_id)
    await jobs.join(timeout=10)

    result = await pipeline.get_result(project_id)
    assert result is not None and result.success
    assert await count(session_factory, Insight, project_id, "approved") == 2
    assert await count(session_factory, Post, project_id, "approved") == 2
    # the first attempt's insights and its one generated post are retired
    assert await count(session_factory, Insight, project_id, "archived") == 2
    assert await count(session_factory, Post, project_id, "archived") == 1
    assert await pipeline.list_active() == []


@pytest.mark.asyncio
async def test_rerun_keeps_insights_whose_posts_are_scheduled(session_factory, completion):
    project_id = await create_project(session_factory, stage="failed", workflow_config=AUTO)
    shipped = await create_insight(session_factory, project_id, status="approved", title="Shipped")
    await create_post(session_factory, project_id, shipped, platform="x", status="scheduled")
    unshipped = await create_insight(session_factory, project_id, status="approved", title="Unshipped")
    draft_post = await create_post(session_factory, project_id, unshipped, platform="linkedin", status="draft")
    pipeline = make_pipeline(session_factory, completion)

    result = await pipeline.run_pipeline(project_id)

    assert result.success
    assert result.steps[1].data["archived"] == 1
    async with session_factory() as db:
        assert (await db.get(Insight, shipped)).status == "approved"
        assert (await db.get(Insight, unshipped)).status == "archived"
        assert (await db.get(Post, draft_post)).status == "archived"


@pytest.mark.asyncio
async def test_cancel_between_job_retries_stops_the_run(session_factory):
    completion = FakeCompletion(fail_clean=ExternalCapabilityError("completion", "rate limited", retryable=True))
    project_id = await create_project(session_factory, workflow_config=AUTO)
    retry_waiting = asyncio.Event()
    release = asyncio.Event()

    async def held_sleep(_seconds: float) -> None:
        retry_waiting.set()
        await release.wait()

    jobs = JobRunner(sleep=held_sleep)
    pipeline = make_pipeline(session_factory, completion, jobs=jobs)

    await pipeline.start_pipeline(project_id)
    await asyncio.wait_for(retry_waiting.wait(), timeout=10)

    assert [s.project_id for s in await pipeline.list_active()] == [project_id]
    assert await pipeline.cancel_pipeline(project_id, "brief withdrawn") is True
    calls_before = len(completion.calls)
    completion.fail_clean = None
    release.set()
    await jobs.join(timeout=10)

    result = await pipeline.get_result(project_id)
    assert result.cancelled is True
    assert result.error == "brief withdrawn"
    assert len(completion.calls) == calls_before
    assert (await pipeline.get_status(project_id)).status is PipelineStatus.CANCELLED
    assert await pipeline.list_active() == []


@pytest.mark.asyncio
async def test_rerun_archives_stale_insights(session_factory, completion):
    project_id = await create_project(session_factory, stage="failed", workflow_config=AUTO)
    stale = await create_insight(session_factory, project_id, status="needs_review", title="Old")
    pipeline = make_pipeline(session_factory, completion)

    result = await pipeline.run_pipeline(project_id)

    assert result.success
    assert result.steps[1].data["archived"] == 1
    async with session_factory() as db:
        assert (await db.get(Insight, stale)).status == "archived"
    assert await count(session_factory, Insight, project_id, "approved") == 2


@pytest.mark.asyncio
async def test_review_wait_resumes_on_approval(session_factory, completion):
    project_id = await create_project(session_factory, workflow_config=MANUAL_INSIGHTS)
    pipeline = make_pipeline(session_factory, completion)

    task = asyncio.create_task(pipeline.run_pipeline(project_id))
    waiting = await wait_for_status(pipeline, project_id, PipelineStatus.WAITING_FOR_REVIEW)
    assert waiting.current_stage is PipelineStage.INSIGHTS_REVIEW
    assert await count(session_factory, Insight, project_id, "needs_review") == 2
    assert [s.project_id for s in await pipeline.list_active()] == [project_id]

    approved = await pipeline.submit_review(
        project_id,
        ReviewSubmission(stage=PipelineStage.INSIGHTS_REVIEW, decision=ReviewDecision.APPROVED, reviewer="alice"),
    )
    result = await asyncio.wait_for(task, timeout=10)

    assert approved == 2
    assert result.success
    assert await LifecycleService(session_factory).get_stage(project_id) is ProjectStage.POSTS_APPROVED
    async with session_factory() as db:
        reviewers = (
            await db.execute(select(Insight.reviewed_by).where(Insight.project_id == project_id))
        ).scalars().all()
    assert reviewers == ["alice", "alice"]


@pytest.mark.asyncio
async def test_cancel_during_review_wait(session_factory, completion):
    project_id = await create_project(session_factory, workflow_config=MANUAL_INSIGHTS)
    pipeline = make_pipeline(session_factory, completion)

    task = asyncio.create_task(pipeline.run_pipeline(project_id))
    await wait_for_status(pipeline, project_id, PipelineStatus.WAITING_FOR_REVIEW)
    assert await pipeline.cancel_pipeline(project_id, "client changed the brief") is True
    result = await asyncio.wait_for(task, timeout=5)

    assert result.cancelled is True
    assert result.success is False
    assert result.error == "client changed the brief"
    assert result.final_stage is PipelineStage.INSIGHTS_REVIEW
    status = await pipeline.get_status(project_id)
    assert status.status is PipelineStatus.CANCELLED
    assert await pipeline.list_active() == []
    # completed steps are kept; the project is not rolled back
    assert await LifecycleService(session_factory).get_stage(project_id) is ProjectStage.INSIGHTS_READY
    async with session_factory() as db:
        events = (
            await db.execute(select(ProjectEvent.event_type).where(ProjectEvent.project_id == project_id))
        ).scalars().all()
    assert "pipeline_cancelled" in events
    assert await pipeline.cancel_pipeline(project_id) is False


@pytest.mark.asyncio
async def test_rejected_review_cancels_run(session_factory, completion):
    project_id = await create_project(session_factory, workflow_config=MANUAL_INSIGHTS)
    pipeline = make_pipeline(session_factory, completion)

    task = asyncio.create_task(pipeline.run_pipeline(project_id))
    await wait_for_status(pipeline, project_id, PipelineStatus.WAITING_FOR_REVIEW)
    approved = await pipeline.submit_review(
        project_id,
        ReviewSubmission(
            stage=PipelineStage.INSIGHTS_REVIEW,
            decision=ReviewDecision.REJECTED,
            reviewer="alice",
            feedback="off brand",
        ),
    )
    result = await asyncio.wait_for(task, timeout=5)

    assert approved == 0
    assert result.cancelled is True
    assert result.error == "Rejected at insights_review: off brand"
    assert await count(session_factory, Insight, project_id, "approved") == 0


@pytest.mark.asyncio
async def test_completion_failure_fails_run_and_project(session_factory):
    completion = FakeCompletion(fail_clean=ExternalCapabilityError("completion", "openai down", retryable=False))
    project_id = await create_project(session_factory, workflow_config=AUTO)
    pipeline = make_pipeline(session_factory, completion)

    with pytest.raises(ExternalCapabilityError):
        await pipeline.run_pipeline(project_id)

    status = await pipeline.get_status(project_id)
    assert status.status is PipelineStatus.FAILED
    assert status.error == "completion: openai down"
    assert "cleaning_transcript" in status.message
    async with session_factory() as db:
        project = await db.get(Project, project_id)
        assert project.stage == "failed"
        assert project.last_error == "completion: openai down"
    result = await pipeline.get_result(project_id)
    assert result.success is False and result.cancelled is False
    assert await pipeline.list_active() == []


@pytest.mark.asyncio
async def test_empty_raw_content_fails_without_calling_completion(session_factory, completion):
    project_id = await create_project(session_factory, raw_content="   ", workflow_config=AUTO)
    pipeline = make_pipeline(session_factory, completion)

    with pytest.raises(ValueError, match="raw_content_empty"):
        await pipeline.run_pipeline(project_id)

    assert completion.calls == []
    assert await LifecycleService(session_factory).get_stage(project_id) is ProjectStage.FAILED


@pytest.mark.asyncio
async def test_no_insights_extracted_fails(session_factory):
    project_id = await create_project(session_factory, workflow_config=AUTO)
    pipeline = make_pipeline(session_factory, FakeCompletion(insight_count=0))

    with pytest.raises(ValueError, match="no_insights_extracted"):
        await pipeline.run_pipeline(project_id)

    assert (await pipeline.get_status(project_id)).status is PipelineStatus.FAILED


@pytest.mark.asyncio
async def test_start_from_wrong_stage_is_rejected(session_factory, completion):
    project_id = await create_project(session_factory, stage="posts_approved")
    jobs = RecordingJobRunner()
    pipeline = make_pipeline(session_factory, completion, jobs=jobs)

    with pytest.raises(InvalidTransition):
        await pipeline.start_pipeline(project_id)
    assert jobs.enqueued == []


@pytest.mark.asyncio
async def test_retry_restarts_a_stopped_project(session_factory, completion):
    project_id = await create_project(session_factory, stage="insights_ready", workflow_config=AUTO)
    jobs = RecordingJobRunner()
    pipeline = make_pipeline(session_factory, completion, jobs=jobs)

    await pipeline.retry_pipeline(project_id)

    lifecycle = LifecycleService(session_factory)
    assert await lifecycle.get_stage(project_id) is ProjectStage.PROCESSING_CONTENT
    assert sorted(h.trigger for h in await lifecycle.history(project_id)) == ["fail", "reprocess"]
    assert len(jobs.enqueued) == 1
    assert (await pipeline.get_status(project_id)).status is PipelineStatus.IN_PROGRESS


@pytest.mark.asyncio
async def test_retry_refused_while_running(session_factory, completion):
    project_id = await create_project(session_factory, workflow_config=AUTO)
    pipeline = make_pipeline(session_factory, completion)
    await pipeline.start_pipeline(project_id)

    with pytest.raises(ValueError, match="pipeline_already_running"):
        await pipeline.retry_pipeline(project_id)


@pytest.mark.asyncio
async def test_status_queries_and_review_validation(session_factory, completion):
    project_id = await create_project(session_factory)
    pipeline = make_pipeline(session_factory, completion)

    status = await pipeline.get_status(uuid4())
    assert status.status is PipelineStatus.NOT_STARTED
    assert status.progress == 0
    assert await pipeline.get_result(project_id) is None
    with pytest.raises(ValueError, match="invalid_review_stage"):
        await pipeline.submit_review(
            project_id,
            ReviewSubmission(stage=PipelineStage.SCHEDULING, decision=ReviewDecision.APPROVED),
        )
