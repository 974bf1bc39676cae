"""Pure state machines: project lifecycle and entity review."""
from content_orchestrator.state.lifecycle import (
    ProjectLifecycle,
    ProjectStage,
    ProjectTrigger,
    TransitionRecord,
    can_fire,
    fire,
    permitted_triggers,
    progress_for_state,
)
from content_orchestrator.state.review import (
    InsightAction,
    InsightStatus,
    PostAction,
    PostStatus,
    can_transition_insight,
    can_transition_post,
    transition_insight,
    transition_post,
)

__all__ = [
    "ProjectLifecycle",
    "ProjectStage",
    "ProjectTrigger",
    "TransitionRecord",
    "can_fire",
    "fire",
    "permitted_triggers",
    "progress_for_state",
    "InsightAction",
    "InsightStatus",
    "PostAction",
    "PostStatus",
    "can_transition_insight",
    "can_transition_post",
    "transition_insight",
    "transition_post",
]
