"""
Pipeline run-loop: clean -> extract insights -> insights review -> generate posts ->
posts review -> schedule.

A run is a JobRunner job under the pipeline retry policy (PIPELINE_JOB_RETRY_DELAYS).
Every attempt restarts from processing_content: insights of an earlier attempt are archived
(approved ones too, with their unpublished posts, unless a post of theirs was scheduled or
published) and post generation skips what exists.
Run status is cached for 24h, the final result for 7 days (PIPELINE_*_TTL_SECONDS).
Review steps either auto-approve (workflow config) or wait for submit_review.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from content_orchestrator.config import Settings
from content_orchestrator.errors import (
    EntityNotFound,
    ExternalCapabilityError,
    IllegalStateTransition,
    InvalidTransition,
    PipelineCancelled,
    StoreConflict,
)
from content_orchestrator.logging_config import get_logger, log_context
from content_orchestrator.models import Insight, Post, Project
from content_orchestrator.schemas.pipeline import (
    STAGE_PROGRESS,
    PipelineResult,
    PipelineRunStatus,
    PipelineStage,
    PipelineStatus,
    PipelineStepResult,
    ReviewDecision,
    ReviewSubmission,
)
from content_orchestrator.schemas.workflow import WorkflowConfig
from content_orchestrator.services.completion_service import ContentCompletion, drafts_summary
from content_orchestrator.services.job_runner import JobRunner, RetryPolicy, SleepFunc, call_with_retry
from content_orchestrator.services.lifecycle_service import LifecycleService
from content_orchestrator.services.post_generation_service import PostGenerator
from content_orchestrator.services.progress_sink import LoggingProgressSink, ProgressSink
from content_orchestrator.services.review_service import ReviewService, log_project_event
from content_orchestrator.services.review_waiter import CancellationToken, ReviewWaiter
from content_orchestrator.services.run_status_store import RunStatusStore
from content_orchestrator.services.scheduling_service import SchedulingService
from content_orchestrator.state.lifecycle import IN_FLIGHT_STAGES, ProjectStage, ProjectTrigger
from content_orchestrator.state.review import InsightStatus, PostStatus

logger = get_logger(__name__)

SYSTEM_ACTOR = "pipeline"
AUTO_REVIEWER = "auto"

REVIEW_STAGES = (PipelineStage.INSIGHTS_REVIEW, PipelineStage.POSTS_REVIEW)
# Stages a retry may roll back (through failed) and run again.
RESTARTABLE_STAGES = frozenset({
    ProjectStage.PROCESSING_CONTENT,
    ProjectStage.INSIGHTS_READY,
    ProjectStage.INSIGHTS_APPROVED,
    ProjectStage.POSTS_GENERATED,
    ProjectStage.POSTS_APPROVED,
})
STALE_INSIGHT_STATUSES = (
    InsightStatus.DRAFT.value,
    InsightStatus.NEEDS_REVIEW.value,
    InsightStatus.REJECTED.value,
)
# Posts that went out (or are about to); their insight survives a rerun.
SHIPPED_POST_STATUSES = (PostStatus.SCHEDULED.value, PostStatus.PUBLISHED.value)
UNSHIPPED_POST_STATUSES = (
    PostStatus.DRAFT.value,
    PostStatus.NEEDS_REVIEW.value,
    PostStatus.APPROVED.value,
    PostStatus.FAILED.value,
)

TRANSIENT_ERRORS = (ExternalCapabilityError, StoreConflict, SQLAlchemyError, OSError, asyncio.TimeoutError)

StepOutcome = Tuple[str, Dict[str, Any]]


@dataclass(frozen=True)
class PipelineConfig:
    status_ttl_seconds: int = 86400
    result_ttl_seconds: int = 604800
    review_timeout_seconds: float = 86400.0
    max_insights: int = 20
    job_retry_delays: Tuple[float, ...] = (60, 300, 900)
    external_max_attempts: int = 3
    progress_timeout_seconds: float = 5.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "PipelineConfig":
        return cls(
            status_ttl_seconds=settings.pipeline_status_ttl_seconds,
            result_ttl_seconds=settings.pipeline_result_ttl_seconds,
            review_timeout_seconds=settings.pipeline_review_timeout_seconds,
            max_insights=settings.pipeline_max_insights,
            job_retry_delays=tuple(settings.pipeline_job_retry_delays),
            external_max_attempts=settings.pipeline_external_max_attempts,
            progress_timeout_seconds=settings.progress_webhook_timeout_seconds,
        )

    def job_policy(self) -> RetryPolicy:
        """Whole-run retries for transient failures only; ValueError("code") outcomes are final."""
        return RetryPolicy.fixed(self.job_retry_delays, retry_on=TRANSIENT_ERRORS)

    def external_policy(self) -> RetryPolicy:
        return RetryPolicy.exponential(self.external_max_attempts, base=2.0, unit_seconds=1.0)


@dataclass
class _Run:
    project_id: UUID
    token: CancellationToken
    started_at: datetime
    stage: PipelineStage = PipelineStage.IDLE
    steps: List[PipelineStepResult] = field(default_factory=list)
    insights_generated: int = 0
    posts_generated: int = 0
    posts_scheduled: int = 0


class PipelineService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        lifecycle: LifecycleService,
        review: ReviewService,
        generator: PostGenerator,
        scheduling: SchedulingService,
        completion: ContentCompletion,
        store: RunStatusStore,
        waiter: ReviewWaiter,
        jobs: JobRunner,
        sink: Optional[ProgressSink] = None,
        config: Optional[PipelineConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._lifecycle = lifecycle
        self._review = review
        self._generator = generator
        self._scheduling = scheduling
        self._completion = completion
        self._store = store
        self._waiter = waiter
        self._jobs = jobs
        self._sink = sink or LoggingProgressSink()
        self.config = config or PipelineConfig()
        self._clock = clock
        self._sleep = sleep
        self._external_policy = self.config.external_policy()
        self._tokens: Dict[UUID, CancellationToken] = {}
        self._attempts: Dict[UUID, int] = {}

    # --- control ---

    async def start_pipeline(self, project_id: UUID, actor: str = "user") -> str:
        """raw_content (start_processing) or failed (reprocess) -> processing_content; enqueue the run."""
        stage = await self._lifecycle.get_stage(project_id)
        if stage is ProjectStage.RAW_CONTENT:
            trigger = ProjectTrigger.START_PROCESSING
        elif stage is ProjectStage.FAILED:
            trigger = ProjectTrigger.REPROCESS
        else:
            raise InvalidTransition(stage, ProjectTrigger.START_PROCESSING)
        await self._lifecycle.transition(project_id, trigger, actor=actor)

        await self._store.clear_cancelled(project_id)
        now = self._clock()
        await self._store.set_status(
            PipelineRunStatus(
                project_id=project_id,
                status=PipelineStatus.IN_PROGRESS,
                message="Pipeline started",
                started_at=now,
                updated_at=now,
            ),
            self.config.status_ttl_seconds,
        )
        await self._store.add_active(project_id)
        self._tokens[project_id] = CancellationToken()
        self._attempts.pop(project_id, None)
        job_id = self._jobs.enqueue(
            f"pipeline:{project_id}",
            self.run_pipeline,
            project_id,
            policy=self.config.job_policy(),
        )

        def set_job(s: PipelineRunStatus) -> None:
            s.job_id = job_id

        await self._store.update_status(project_id, set_job, self.config.status_ttl_seconds)
        logger.info("pipeline.started", project_id=str(project_id), job_id=job_id, trigger=trigger.value)
        return job_id

    async def cancel_pipeline(self, project_id: UUID, reason: Optional[str] = None) -> bool:
        """Cancel a live run. Completed steps stay as they are. False when nothing was running."""
        reason = reason or "Pipeline cancelled by user"
        token = self._tokens.get(project_id)
        active = project_id in await self._store.list_active()
        if not active and token is None:
            return False
        now = self._clock()

        def mark(s: PipelineRunStatus) -> None:
            s.status = PipelineStatus.CANCELLED
            s.current_stage = PipelineStage.CANCELLED
            s.message = reason
            s.updated_at = now

        ttl = self.config.status_ttl_seconds
        if await self._store.update_status(project_id, mark, ttl) is None:
            status = PipelineRunStatus(project_id=project_id)
            mark(status)
            await self._store.set_status(status, ttl)
        await self._store.remove_active(project_id)
        await self._store.set_cancelled(project_id, reason, ttl)
        if token is not None:
            token.cancel(reason)
        logger.info("pipeline.cancel_requested", project_id=str(project_id), reason=reason)
        return True

    async def retry_pipeline(self, project_id: UUID, actor: str = "user") -> str:
        """
        Clear cached status/result and run the whole pipeline again. A project stopped
        mid-way (e.g. cancelled while waiting for review) is first moved to failed.
        """
        if project_id in await self._store.list_active():
            status = await self._store.get_status(project_id)
            if project_id in self._attempts or (status is not None and not status.is_terminal):
                raise ValueError("pipeline_already_running")
        stage = await self._lifecycle.get_stage(project_id)
        await self._store.delete_status(project_id)
        await self._store.delete_result(project_id)
        if stage in RESTARTABLE_STAGES:
            await self._lifecycle.advance(
                project_id,
                ProjectTrigger.FAIL,
                actor=actor,
                only_from=RESTARTABLE_STAGES,
                error="pipeline restarted",
            )
        logger.info("pipeline.retry_requested", project_id=str(project_id), from_stage=stage.value)
        return await self.start_pipeline(project_id, actor=actor)

    async def submit_review(self, project_id: UUID, review: ReviewSubmission) -> int:
        """
        Human decision for a review step. approved: approve every needs_review entity of
        that step; rejected: cancel the run with the feedback. Returns entities approved.
        """
        stage = PipelineStage(review.stage)
        if stage not in REVIEW_STAGES:
            raise ValueError("invalid_review_stage")
        await self._lifecycle.get_stage(project_id)
        applied = 0
        if review.decision is ReviewDecision.APPROVED:
            model = Insight if stage is PipelineStage.INSIGHTS_REVIEW else Post
            applied = await self._review.approve_pending(model, project_id, review.reviewer)
        await self._store.set_review(project_id, review, int(self.config.review_timeout_seconds))
        await self._event(
            project_id,
            "pipeline_review_submitted",
            review.reviewer,
            {"stage": stage.value, "decision": review.decision.value, "approved": applied, "feedback": review.feedback},
        )
        if review.decision is ReviewDecision.REJECTED:
            await self.cancel_pipeline(
                project_id, reason=f"Rejected at {stage.value}: {review.feedback or 'no feedback'}"
            )
        self._waiter.notify(project_id, stage)
        logger.info(
            "pipeline.review_submitted",
            project_id=str(project_id),
            stage=stage.value,
            decision=review.decision.value,
            approved=applied,
        )
        return applied

    # --- queries ---

    async def get_status(self, project_id: UUID) -> PipelineRunStatus:
        """Cached status, else derived from the stored result, else not_started."""
        status = await self._store.get_status(project_id)
        if status is not None:
            return status
        result = await self._store.get_result(project_id)
        if result is None:
            return PipelineRunStatus(project_id=project_id)
        if result.success:
            run_status, stage, progress = PipelineStatus.COMPLETED, PipelineStage.COMPLETED, 100
        elif result.cancelled:
            run_status, stage, progress = PipelineStatus.CANCELLED, PipelineStage.CANCELLED, 0
        else:
            run_status, stage, progress = PipelineStatus.FAILED, PipelineStage.FAILED, 0
        return PipelineRunStatus(
            project_id=project_id,
            current_stage=stage,
            status=run_status,
            progress=progress,
            error=result.error,
            completed_steps=result.steps,
            updated_at=result.completed_at,
        )

    async def get_result(self, project_id: UUID) -> Optional[PipelineResult]:
        return await self._store.get_result(project_id)

    async def list_active(self) -> List[PipelineRunStatus]:
        out: List[PipelineRunStatus] = []
        for project_id in await self._store.list_active():
            status = await self._store.get_status(project_id)
            if status is not None:
                out.append(status)
        return out

    # --- run ---

    async def run_pipeline(self, project_id: UUID) -> PipelineResult:
        """
        One attempt of the whole run. Failures re-raise for the job retry policy; while another
        attempt is due the run stays active and keeps its cancellation token.
        """
        token = self._tokens.setdefault(project_id, CancellationToken())
        attempt = self._attempts.get(project_id, 0) + 1
        self._attempts[project_id] = attempt
        run = _Run(project_id=project_id, token=token, started_at=self._clock())
        retry_due = False
        with log_context(project_id=project_id):
            await self._store.add_active(project_id)
            try:
                await self._begin(run)
                await self._checkpoint(run)
                await self._enter_processing(project_id)
                config = await self._load_config(project_id)
                await self._step(run, PipelineStage.CLEANING_TRANSCRIPT, "Cleaning transcript", self._clean)
                await self._step(run, PipelineStage.EXTRACTING_INSIGHTS, "Extracting insights", self._extract, config)
                await self._step(run, PipelineStage.INSIGHTS_REVIEW, "Reviewing insights", self._review_insights, config)
                await self._step(run, PipelineStage.GENERATING_POSTS, "Generating posts", self._generate, config)
                await self._step(run, PipelineStage.POSTS_REVIEW, "Reviewing posts", self._review_posts, config)
                await self._step(run, PipelineStage.SCHEDULING, "Scheduling posts", self._schedule, config)
                return await self._finish_completed(run)
            except PipelineCancelled as e:
                return await self._finish_cancelled(run, e)
            except Exception as e:
                await self._finish_failed(run, e)
                retry_due = self.config.job_policy().should_retry(attempt, e)
                if retry_due:
                    logger.info("pipeline.retry_due", attempt=attempt)
                raise
            finally:
                if not retry_due:
                    await self._store.remove_active(project_id)
                    self._attempts.pop(project_id, None)
                    if self._tokens.get(project_id) is token:
                        del self._tokens[project_id]

    async def _begin(self, run: _Run) -> None:
        for stage in REVIEW_STAGES:
            await self._store.delete_review(run.project_id, stage)

        def reset(s: PipelineRunStatus) -> None:
            s.status = PipelineStatus.IN_PROGRESS
            s.current_stage = PipelineStage.IDLE
            s.progress = 0
            s.error = None
            s.completed_steps = []
            s.started_at = run.started_at
            s.updated_at = run.started_at

        ttl = self.config.status_ttl_seconds
        if await self._store.update_status(run.project_id, reset, ttl) is None:
            status = PipelineRunStatus(project_id=run.project_id)
            reset(status)
            await self._store.set_status(status, ttl)
        logger.info("pipeline.run_started")

    async def _checkpoint(self, run: _Run) -> None:
        run.token.raise_if_cancelled(run.project_id)
        reason = await self._store.get_cancelled(run.project_id)
        if reason is not None:
            run.token.cancel(reason)
            run.token.raise_if_cancelled(run.project_id)

    async def _enter_processing(self, project_id: UUID) -> None:
        stage = await self._lifecycle.get_stage(project_id)
        if stage is ProjectStage.PROCESSING_CONTENT:
            return
        if stage is ProjectStage.RAW_CONTENT:
            await self._lifecycle.transition(project_id, ProjectTrigger.START_PROCESSING, actor=SYSTEM_ACTOR)
        elif stage is ProjectStage.FAILED:
            await self._lifecycle.transition(project_id, ProjectTrigger.REPROCESS, actor=SYSTEM_ACTOR)
        else:
            raise InvalidTransition(stage, ProjectTrigger.START_PROCESSING)

    async def _load_config(self, project_id: UUID) -> WorkflowConfig:
        async with self._session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise EntityNotFound("project", project_id)
            return WorkflowConfig.from_json(project.workflow_config)

    async def _step(
        self,
        run: _Run,
        stage: PipelineStage,
        message: str,
        func: Callable[..., Awaitable[StepOutcome]],
        *args: Any,
    ) -> None:
        await self._checkpoint(run)
        run.stage = stage
        started = self._clock()
        await self._report(run, stage, message, PipelineStatus.IN_PROGRESS)
        done_message, data = await func(run, *args)
        step = PipelineStepResult(
            stage=stage,
            started_at=started,
            completed_at=self._clock(),
            success=True,
            message=done_message,
            data=data,
        )
        run.steps.append(step)

        def add_step(s: PipelineRunStatus) -> None:
            s.completed_steps.append(step)
            s.message = done_message
            s.updated_at = step.completed_at

        await self._store.update_status(run.project_id, add_step, self.config.status_ttl_seconds)
        logger.info(
            "pipeline.step_completed",
            stage=stage.value,
            duration_ms=round((step.completed_at - started).total_seconds() * 1000),
            message=done_message,
        )

    async def _report(self, run: _Run, stage: PipelineStage, message: str, status: PipelineStatus) -> None:
        progress = STAGE_PROGRESS.get(stage, 0)
        now = self._clock()

        def apply(s: PipelineRunStatus) -> None:
            s.current_stage = stage
            s.status = status
            s.progress = progress
            s.message = message
            s.updated_at = now

        await self._store.update_status(run.project_id, apply, self.config.status_ttl_seconds)
        try:
            await asyncio.wait_for(
                self._sink.publish(run.project_id, stage.value, progress, message),
                timeout=self.config.progress_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("pipeline.progress_timeout", stage=stage.value)
        except Exception as e:
            logger.warning("pipeline.progress_failed", stage=stage.value, error=str(e))

    # --- steps ---

    async def _clean(self, run: _Run) -> StepOutcome:
        async with self._session_factory() as db:
            project = await db.get(Project, run.project_id)
            if project is None:
                raise EntityNotFound("project", run.project_id)
            raw = project.raw_content
        if not raw or not raw.strip():
            raise ValueError("raw_content_empty")
        cleaned = await call_with_retry(
            self._external_policy,
            self._completion.clean,
            raw,
            sleep=self._sleep,
            label="completion.clean",
        )
        async with self._session_factory() as db:
            await db.execute(
                update(Project)
                .where(Project.id == run.project_id)
                .values(cleaned_content=cleaned.content, last_activity_at=self._clock())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        return "Transcript cleaned", {"word_count": len(cleaned.content.split())}

    async def _retire_stale_work(self, project_id: UUID) -> int:
        """Archive what an earlier attempt left behind; approved insights with shipped posts stay."""
        archived = 0
        for insight_id in await self._review.ids_with_status(Insight, project_id, STALE_INSIGHT_STATUSES):
            try:
                await self._review.archive_insight(insight_id, SYSTEM_ACTOR, reason="superseded by pipeline rerun")
                archived += 1
            except IllegalStateTransition as e:
                logger.info("pipeline.stale_insight_skipped", insight_id=str(insight_id), status=str(e.current_status))

        shipped = select(Post.insight_id).where(
            Post.project_id == project_id,
            Post.insight_id.is_not(None),
            Post.status.in_(SHIPPED_POST_STATUSES),
        )
        async with self._session_factory() as db:
            r = await db.execute(
                select(Insight.id)
                .where(
                    Insight.project_id == project_id,
                    Insight.status == InsightStatus.APPROVED.value,
                    Insight.id.not_in(shipped),
                )
                .order_by(Insight.created_at, Insight.id)
            )
            unshipped = list(r.scalars().all())
            post_ids: List[UUID] = []
            if unshipped:
                r = await db.execute(
                    select(Post.id).where(Post.insight_id.in_(unshipped), Post.status.in_(UNSHIPPED_POST_STATUSES))
                )
                post_ids = list(r.scalars().all())
        for post_id in post_ids:
            try:
                await self._review.archive_post(post_id, SYSTEM_ACTOR)
            except IllegalStateTransition as e:
                logger.info("pipeline.stale_post_skipped", post_id=str(post_id), status=str(e.current_status))
        for insight_id in unshipped:
            try:
                await self._review.archive_insight(insight_id, SYSTEM_ACTOR, reason="superseded by pipeline rerun")
                archived += 1
            except IllegalStateTransition as e:
                logger.info("pipeline.stale_insight_skipped", insight_id=str(insight_id), status=str(e.current_status))
        return archived

    async def _extract(self, run: _Run, config: WorkflowConfig) -> StepOutcome:
        archived = await self._retire_stale_work(run.project_id)

        async with self._session_factory() as db:
            project = await db.get(Project, run.project_id)
            if project is None:
                raise EntityNotFound("project", run.project_id)
            content = project.cleaned_content or project.raw_content or ""
        count = min(config.insight_count_target, self.config.max_insights)
        drafts = await call_with_retry(
            self._external_policy,
            self._completion.extract_insights,
            content,
            count,
            sleep=self._sleep,
            label="completion.extract_insights",
        )
        drafts = list(drafts)[:count]
        if not drafts:
            raise ValueError("no_insights_extracted")

        async with self._session_factory() as db:
            try:
                for d in drafts:
                    insight = Insight(
                        project_id=run.project_id,
                        title=d.title,
                        content=d.content,
                        category=d.category,
                        status=InsightStatus.DRAFT.value,
                    )
                    insight.set_scores(d.urgency, d.relatability, d.specificity, d.authority)
                    db.add(insight)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        run.insights_generated = len(drafts)
        await self._lifecycle.advance(
            run.project_id,
            ProjectTrigger.COMPLETE_PROCESSING,
            actor=SYSTEM_ACTOR,
            only_from={ProjectStage.PROCESSING_CONTENT},
        )
        return f"Extracted {len(drafts)} insights", {**drafts_summary(drafts), "archived": archived}

    async def _await_review(self, run: _Run, stage: PipelineStage, message: str) -> None:
        await self._report(run, stage, message, PipelineStatus.WAITING_FOR_REVIEW)
        decision = await self._waiter.wait_for_decision(
            run.project_id, stage, run.token, timeout_seconds=self.config.review_timeout_seconds
        )
        if decision.decision is ReviewDecision.REJECTED:
            raise PipelineCancelled(run.project_id, decision.feedback or f"rejected at {stage.value}")
        await self._report(run, stage, "Review received", PipelineStatus.IN_PROGRESS)

    async def _review_insights(self, run: _Run, config: WorkflowConfig) -> StepOutcome:
        await self._review.submit_drafts(Insight, run.project_id, SYSTEM_ACTOR)
        if config.auto_approve_insights:
            await self._review.approve_pending(Insight, run.project_id, AUTO_REVIEWER)
            message = "Insights auto-approved"
        else:
            await self._await_review(run, PipelineStage.INSIGHTS_REVIEW, "Waiting for insight review")
            message = "Insights reviewed and approved"
        await self._review.advance_on_approval(run.project_id, "insights", SYSTEM_ACTOR)
        approved = await self._review.count_with_status(Insight, run.project_id, InsightStatus.APPROVED.value)
        stage = await self._lifecycle.get_stage(run.project_id)
        if stage not in (ProjectStage.INSIGHTS_APPROVED, ProjectStage.POSTS_GENERATED):
            raise ValueError("no_approved_insights")
        return message, {"approved": approved}

    async def _generate(self, run: _Run, config: WorkflowConfig) -> StepOutcome:
        created = 0
        for insight_id in await self._review.ids_with_status(
            Insight, run.project_id, (InsightStatus.APPROVED.value,)
        ):
            created += len(await self._generator.generate_for_insight(insight_id, config.platforms))
        run.posts_generated = created
        open_posts = await self._review.ids_with_status(
            Post,
            run.project_id,
            (PostStatus.DRAFT.value, PostStatus.NEEDS_REVIEW.value, PostStatus.APPROVED.value),
        )
        if not open_posts:
            raise ValueError("no_posts_generated")
        await self._lifecycle.advance(
            run.project_id,
            ProjectTrigger.GENERATE_POSTS,
            actor=SYSTEM_ACTOR,
            only_from={ProjectStage.INSIGHTS_APPROVED},
        )
        return f"Generated {created} posts", {"count": created, "platforms": list(config.platforms)}

    async def _review_posts(self, run: _Run, config: WorkflowConfig) -> StepOutcome:
        await self._review.submit_drafts(Post, run.project_id, SYSTEM_ACTOR)
        if config.auto_approve_posts:
            await self._review.approve_pending(Post, run.project_id, AUTO_REVIEWER)
            message = "Posts auto-approved"
        else:
            await self._await_review(run, PipelineStage.POSTS_REVIEW, "Waiting for post review")
            message = "Posts reviewed and approved"
        await self._review.advance_on_approval(run.project_id, "posts", SYSTEM_ACTOR)
        approved = await self._review.count_with_status(Post, run.project_id, PostStatus.APPROVED.value)
        if await self._lifecycle.get_stage(run.project_id) is not ProjectStage.POSTS_APPROVED:
            raise ValueError("no_approved_posts")
        return message, {"approved": approved}

    async def _schedule(self, run: _Run, config: WorkflowConfig) -> StepOutcome:
        if not config.auto_schedule:
            return "Scheduling skipped (auto_schedule off)", {"count": 0}
        run.posts_scheduled = await self._scheduling.schedule_project_posts(run.project_id, actor=SYSTEM_ACTOR)
        return f"Scheduled {run.posts_scheduled} posts", {"count": run.posts_scheduled}

    # --- outcomes ---

    def _result(self, run: _Run, success: bool, final_stage: PipelineStage, **kwargs: Any) -> PipelineResult:
        now = self._clock()
        return PipelineResult(
            project_id=run.project_id,
            success=success,
            final_stage=final_stage,
            duration_seconds=(now - run.started_at).total_seconds(),
            insights_generated=run.insights_generated,
            posts_generated=run.posts_generated,
            posts_scheduled=run.posts_scheduled,
            steps=list(run.steps),
            completed_at=now,
            **kwargs,
        )

    async def _finish_completed(self, run: _Run) -> PipelineResult:
        run.stage = PipelineStage.COMPLETED
        await self._report(run, PipelineStage.COMPLETED, "Pipeline completed successfully", PipelineStatus.COMPLETED)
        result = self._result(run, True, PipelineStage.COMPLETED)
        await self._store.set_result(result, self.config.result_ttl_seconds)
        logger.info(
            "pipeline.completed",
            duration_seconds=round(result.duration_seconds, 3),
            insights=result.insights_generated,
            posts=result.posts_generated,
            scheduled=result.posts_scheduled,
        )
        return result

    async def _finish_cancelled(self, run: _Run, exc: PipelineCancelled) -> PipelineResult:
        reason = exc.reason or "cancelled"
        now = self._clock()

        def mark(s: PipelineRunStatus) -> None:
            s.status = PipelineStatus.CANCELLED
            s.current_stage = PipelineStage.CANCELLED
            s.message = reason
            s.updated_at = now

        await self._store.update_status(run.project_id, mark, self.config.status_ttl_seconds)
        result = self._result(run, False, run.stage, cancelled=True, error=reason)
        await self._store.set_result(result, self.config.result_ttl_seconds)
        await self._event(run.project_id, "pipeline_cancelled", SYSTEM_ACTOR, {"stage": run.stage.value, "reason": reason})
        logger.info("pipeline.cancelled", stage=run.stage.value, reason=reason)
        return result

    async def _finish_failed(self, run: _Run, exc: Exception) -> None:
        error = getattr(exc, "detail", None) or str(exc) or type(exc).__name__
        now = self._clock()

        def mark(s: PipelineRunStatus) -> None:
            s.status = PipelineStatus.FAILED
            s.current_stage = PipelineStage.FAILED
            s.progress = 0
            s.error = error
            s.message = f"Pipeline failed at {run.stage.value}: {error}"
            s.updated_at = now

        logger.error("pipeline.failed", stage=run.stage.value, error=error, error_type=type(exc).__name__)
        try:
            await self._store.update_status(run.project_id, mark, self.config.status_ttl_seconds)
            await self._lifecycle.advance(
                run.project_id,
                ProjectTrigger.FAIL,
                actor=SYSTEM_ACTOR,
                only_from=IN_FLIGHT_STAGES,
                error=error,
            )
            await self._event(
                run.project_id,
                "pipeline_failed",
                SYSTEM_ACTOR,
                {"stage": run.stage.value, "error": error[:500], "error_type": type(exc).__name__},
            )
            await self._store.set_result(
                self._result(run, False, run.stage, error=error), self.config.result_ttl_seconds
            )
        except Exception as e:
            logger.error("pipeline.failure_record_error", error=str(e), error_type=type(e).__name__)

    async def _event(self, project_id: UUID, event_type: str, actor: str, metadata: Dict[str, Any]) -> None:
        async with self._session_factory() as db:
            try:
                await log_project_event(db, project_id=project_id, event_type=event_type, actor=actor, metadata_=metadata)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
