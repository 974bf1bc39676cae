"""
Service graph for one process: built once in the app lifespan and kept on app.state.runtime.

Background jobs (ENV): publishing sweep every SCHEDULER_INTERVAL_SECONDS, failed-item
re-queue every RETRY_SWEEP_INTERVAL_SECONDS; both only when SCHEDULER_ENABLED.
Post generation for an approved insight is enqueued as a one-shot job.
"""
from dataclasses import dataclass
from typing import Optional
from uuid import UUID

from fastapi import Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from content_orchestrator.config import Settings, get_settings
from content_orchestrator.logging_config import get_logger
from content_orchestrator.services.completion_service import ContentCompletion, OpenAICompletionService
from content_orchestrator.services.job_runner import JobRunner, RetryPolicy
from content_orchestrator.services.lifecycle_service import LifecycleService
from content_orchestrator.services.pipeline_service import PipelineConfig, PipelineService
from content_orchestrator.services.post_generation_service import PostGenerator
from content_orchestrator.services.progress_sink import ProgressSink, build_progress_sink
from content_orchestrator.services.publishers import PublisherRegistry, build_publisher_registry
from content_orchestrator.services.publishing_engine import EngineConfig, PublishingEngine
from content_orchestrator.services.review_service import ReviewService
from content_orchestrator.services.review_waiter import ReviewWaiter
from content_orchestrator.services.run_status_store import RunStatusStore, build_run_status_store
from content_orchestrator.services.scheduling_service import SchedulingService

logger = get_logger(__name__)

PUBLISH_SWEEP_JOB = "publishing_sweep"
FAILED_RETRY_JOB = "failed_post_retry"


@dataclass
class Runtime:
    settings: Settings
    jobs: JobRunner
    store: RunStatusStore
    lifecycle: LifecycleService
    review: ReviewService
    generator: PostGenerator
    scheduling: SchedulingService
    engine: PublishingEngine
    pipeline: PipelineService
    generation_policy: RetryPolicy

    def enqueue_post_generation(self, insight_id: UUID, project_id: UUID) -> str:
        """ReviewService hook: one generation job per approved insight."""
        return self.jobs.enqueue(
            f"generate_posts:{insight_id}",
            self.generator.handle_insight_approved,
            insight_id,
            project_id,
            policy=self.generation_policy,
        )

    async def start(self) -> None:
        if self.settings.scheduler_enabled:
            self.jobs.recurring(PUBLISH_SWEEP_JOB, self.settings.scheduler_interval_seconds, self.engine.sweep)
            self.jobs.recurring(
                FAILED_RETRY_JOB,
                self.settings.retry_sweep_interval_seconds,
                self.engine.retry_failed_posts,
                initial_delay_seconds=min(60.0, float(self.settings.retry_sweep_interval_seconds)),
            )
        await self.jobs.start()
        logger.info(
            "runtime.started",
            scheduler_enabled=self.settings.scheduler_enabled,
            interval_seconds=self.settings.scheduler_interval_seconds,
        )

    async def stop(self) -> None:
        await self.jobs.stop()
        await self.store.close()
        logger.info("runtime.stopped")


def build_runtime(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker] = None,
    completion: Optional[ContentCompletion] = None,
    publishers: Optional[PublisherRegistry] = None,
    store: Optional[RunStatusStore] = None,
    sink: Optional[ProgressSink] = None,
    jobs: Optional[JobRunner] = None,
) -> Runtime:
    """Wire every service; tests pass fakes for the external capabilities and the session factory."""
    settings = settings or get_settings()
    if session_factory is None:
        from content_orchestrator.db import async_session_factory

        session_factory = async_session_factory
    completion = completion or OpenAICompletionService(settings)
    publishers = publishers or build_publisher_registry(settings)
    store = store or build_run_status_store(settings)
    sink = sink or build_progress_sink(settings)
    jobs = jobs or JobRunner()

    pipeline_config = PipelineConfig.from_settings(settings)
    external_policy = pipeline_config.external_policy()
    lifecycle = LifecycleService(session_factory, max_conflict_retries=settings.stage_conflict_retries)
    review = ReviewService(session_factory, lifecycle)
    generator = PostGenerator(session_factory, completion, lifecycle, external_policy=external_policy)
    scheduling = SchedulingService(session_factory, lifecycle)
    engine = PublishingEngine(
        session_factory,
        publishers,
        lifecycle,
        config=EngineConfig.from_settings(settings),
        enabled=settings.scheduler_enabled,
    )
    waiter = ReviewWaiter(
        store,
        timeout_seconds=settings.pipeline_review_timeout_seconds,
        check_interval_seconds=settings.pipeline_review_check_interval_seconds,
    )
    pipeline = PipelineService(
        session_factory,
        lifecycle=lifecycle,
        review=review,
        generator=generator,
        scheduling=scheduling,
        completion=completion,
        store=store,
        waiter=waiter,
        jobs=jobs,
        sink=sink,
        config=pipeline_config,
    )
    runtime = Runtime(
        settings=settings,
        jobs=jobs,
        store=store,
        lifecycle=lifecycle,
        review=review,
        generator=generator,
        scheduling=scheduling,
        engine=engine,
        pipeline=pipeline,
        generation_policy=pipeline_config.job_policy(),
    )
    review.set_insight_approved_hook(runtime.enqueue_post_generation)
    return runtime


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency."""
    return request.app.state.runtime
