"""Pydantic request/response schemas."""
from content_orchestrator.schemas.completion import CleanedContent, InsightDraft, PostDraft
from content_orchestrator.schemas.pipeline import (
    PipelineResult,
    PipelineRunStatus,
    PipelineStage,
    PipelineStatus,
    PipelineStepResult,
    ReviewDecision,
    ReviewSubmission,
)
from content_orchestrator.schemas.scheduler import SchedulerStatusResponse, SweepResponse
from content_orchestrator.schemas.workflow import PublishingSchedule, WorkflowConfig

__all__ = [
    "CleanedContent",
    "InsightDraft",
    "PostDraft",
    "PipelineResult",
    "PipelineRunStatus",
    "PipelineStage",
    "PipelineStatus",
    "PipelineStepResult",
    "ReviewDecision",
    "ReviewSubmission",
    "SchedulerStatusResponse",
    "SweepResponse",
    "PublishingSchedule",
    "WorkflowConfig",
]
