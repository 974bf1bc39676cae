"""Orchestration services."""
from content_orchestrator.services.job_runner import JobRunner, RetryPolicy, call_with_retry
from content_orchestrator.services.lifecycle_service import LifecycleService
from content_orchestrator.services.pipeline_service import PipelineConfig, PipelineService
from content_orchestrator.services.publishing_engine import EngineConfig, PublishingEngine
from content_orchestrator.services.review_service import ReviewService
from content_orchestrator.services.scheduling_service import SchedulingService

__all__ = [
    "JobRunner",
    "RetryPolicy",
    "call_with_retry",
    "LifecycleService",
    "PipelineConfig",
    "PipelineService",
    "EngineConfig",
    "PublishingEngine",
    "ReviewService",
    "SchedulingService",
]
