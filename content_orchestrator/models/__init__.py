"""SQLAlchemy models for the content orchestrator."""
from content_orchestrator.models.project import Project
from content_orchestrator.models.insight import Insight
from content_orchestrator.models.post import Post, PostPublishRecord
from content_orchestrator.models.scheduled_post import ScheduledPost, ScheduledPostStatus
from content_orchestrator.models.stage_transition import StageTransition
from content_orchestrator.models.project_event import ProjectEvent

__all__ = [
    "Project",
    "Insight",
    "Post",
    "PostPublishRecord",
    "ScheduledPost",
    "ScheduledPostStatus",
    "StageTransition",
    "ProjectEvent",
]
