"""Pipeline run status/result (cache entries) and pipeline API schemas."""
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


class PipelineStage(str, Enum):
    IDLE = "idle"
    CLEANING_TRANSCRIPT = "cleaning_transcript"
    EXTRACTING_INSIGHTS = "extracting_insights"
    INSIGHTS_REVIEW = "insights_review"
    GENERATING_POSTS = "generating_posts"
    POSTS_REVIEW = "posts_review"
    SCHEDULING = "scheduling"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class PipelineStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    WAITING_FOR_REVIEW = "waiting_for_review"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


STAGE_PROGRESS: Dict[PipelineStage, int] = {
    PipelineStage.IDLE: 0,
    PipelineStage.CLEANING_TRANSCRIPT: 10,
    PipelineStage.EXTRACTING_INSIGHTS: 30,
    PipelineStage.INSIGHTS_REVIEW: 40,
    PipelineStage.GENERATING_POSTS: 60,
    PipelineStage.POSTS_REVIEW: 80,
    PipelineStage.SCHEDULING: 90,
    PipelineStage.COMPLETED: 100,
}


class ReviewDecision(str, Enum):
    APPROVED = "approved"
    REJECTED = "rejected"


class PipelineStepResult(BaseModel):
    stage: PipelineStage
    started_at: datetime
    completed_at: Optional[datetime] = None
    success: bool = True
    message: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class PipelineRunStatus(BaseModel):
    project_id: UUID
    job_id: Optional[str] = None
    current_stage: PipelineStage = PipelineStage.IDLE
    status: PipelineStatus = PipelineStatus.NOT_STARTED
    progress: int = 0
    message: Optional[str] = None
    error: Optional[str] = None
    completed_steps: List[PipelineStepResult] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_now)

    @property
    def is_terminal(self) -> bool:
        return self.status in (PipelineStatus.COMPLETED, PipelineStatus.FAILED, PipelineStatus.CANCELLED)


class PipelineResult(BaseModel):
    project_id: UUID
    success: bool
    cancelled: bool = False
    final_stage: PipelineStage
    duration_seconds: float = 0.0
    insights_generated: int = 0
    posts_generated: int = 0
    posts_scheduled: int = 0
    steps: List[PipelineStepResult] = Field(default_factory=list)
    error: Optional[str] = None
    completed_at: datetime = Field(default_factory=_now)


class ReviewSubmission(BaseModel):
    """Human decision for a review-wait (insights_review / posts_review)."""

    stage: PipelineStage
    decision: ReviewDecision
    reviewer: str = "user"
    feedback: Optional[str] = None
    submitted_at: datetime = Field(default_factory=_now)


class PipelineStartResponse(BaseModel):
    project_id: UUID
    job_id: str
    status: PipelineStatus


class PipelineCancelRequest(BaseModel):
    reason: Optional[str] = None
