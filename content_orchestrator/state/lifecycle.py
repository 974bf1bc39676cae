"""
Project lifecycle state machine (pure, no I/O).

raw_content -> processing_content -> insights_ready -> insights_approved -> posts_generated
-> posts_approved -> scheduled -> publishing -> published, plus failed and archived.
Persisting a transition is LifecycleService's job; this module only decides.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from content_orchestrator.errors import InvalidTransition


class ProjectStage(str, Enum):
    RAW_CONTENT = "raw_content"
    PROCESSING_CONTENT = "processing_content"
    INSIGHTS_READY = "insights_ready"
    INSIGHTS_APPROVED = "insights_approved"
    POSTS_GENERATED = "posts_generated"
    POSTS_APPROVED = "posts_approved"
    SCHEDULED = "scheduled"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    FAILED = "failed"
    ARCHIVED = "archived"


class ProjectTrigger(str, Enum):
    START_PROCESSING = "start_processing"
    COMPLETE_PROCESSING = "complete_processing"
    APPROVE_INSIGHTS = "approve_insights"
    GENERATE_POSTS = "generate_posts"
    APPROVE_POSTS = "approve_posts"
    SCHEDULE_POSTS = "schedule_posts"
    PUBLISH_NOW = "publish_now"
    START_PUBLISHING = "start_publishing"
    COMPLETE_PUBLISHING = "complete_publishing"
    FAIL = "fail"
    RETRY = "retry"
    REPROCESS = "reprocess"
    ARCHIVE = "archive"
    RESTORE = "restore"


S = ProjectStage
T = ProjectTrigger

# Stages where work is in flight and a FAIL can land.
IN_FLIGHT_STAGES: FrozenSet[ProjectStage] = frozenset({
    S.PROCESSING_CONTENT,
    S.INSIGHTS_READY,
    S.INSIGHTS_APPROVED,
    S.POSTS_GENERATED,
    S.POSTS_APPROVED,
    S.SCHEDULED,
    S.PUBLISHING,
})


def _build_transitions() -> Dict[Tuple[ProjectStage, ProjectTrigger], ProjectStage]:
    table = {
        (S.RAW_CONTENT, T.START_PROCESSING): S.PROCESSING_CONTENT,
        (S.PROCESSING_CONTENT, T.COMPLETE_PROCESSING): S.INSIGHTS_READY,
        (S.INSIGHTS_READY, T.APPROVE_INSIGHTS): S.INSIGHTS_APPROVED,
        (S.INSIGHTS_APPROVED, T.GENERATE_POSTS): S.POSTS_GENERATED,
        (S.POSTS_GENERATED, T.APPROVE_POSTS): S.POSTS_APPROVED,
        (S.POSTS_APPROVED, T.SCHEDULE_POSTS): S.SCHEDULED,
        (S.POSTS_APPROVED, T.PUBLISH_NOW): S.PUBLISHING,
        (S.SCHEDULED, T.START_PUBLISHING): S.PUBLISHING,
        (S.PUBLISHING, T.COMPLETE_PUBLISHING): S.PUBLISHED,
        (S.FAILED, T.RETRY): S.RAW_CONTENT,
        (S.FAILED, T.REPROCESS): S.PROCESSING_CONTENT,
        (S.ARCHIVED, T.RESTORE): S.RAW_CONTENT,
    }
    for stage in IN_FLIGHT_STAGES:
        table[(stage, T.FAIL)] = S.FAILED
    for stage in ProjectStage:
        if stage is not S.ARCHIVED:
            table[(stage, T.ARCHIVE)] = S.ARCHIVED
    return table


TRANSITIONS: Dict[Tuple[ProjectStage, ProjectTrigger], ProjectStage] = _build_transitions()

STAGE_PROGRESS: Dict[ProjectStage, int] = {
    S.RAW_CONTENT: 10,
    S.PROCESSING_CONTENT: 20,
    S.INSIGHTS_READY: 30,
    S.INSIGHTS_APPROVED: 40,
    S.POSTS_GENERATED: 55,
    S.POSTS_APPROVED: 70,
    S.SCHEDULED: 85,
    S.PUBLISHING: 95,
    S.PUBLISHED: 100,
    S.FAILED: 0,
    S.ARCHIVED: 100,
}


def can_fire(stage: ProjectStage, trigger: ProjectTrigger) -> bool:
    """True when (stage, trigger) is in the transition table."""
    return (ProjectStage(stage), ProjectTrigger(trigger)) in TRANSITIONS


def fire(stage: ProjectStage, trigger: ProjectTrigger) -> ProjectStage:
    """Target stage for trigger; raises InvalidTransition (nothing changes) when not permitted."""
    key = (ProjectStage(stage), ProjectTrigger(trigger))
    try:
        return TRANSITIONS[key]
    except KeyError:
        raise InvalidTransition(key[0], key[1]) from None


def permitted_triggers(stage: ProjectStage) -> List[ProjectTrigger]:
    stage = ProjectStage(stage)
    return [t for t in ProjectTrigger if (stage, t) in TRANSITIONS]


def progress_for_state(stage: ProjectStage) -> int:
    return STAGE_PROGRESS[ProjectStage(stage)]


@dataclass(frozen=True)
class TransitionRecord:
    from_stage: ProjectStage
    to_stage: ProjectStage
    trigger: ProjectTrigger
    actor: str
    at: datetime


@dataclass
class ProjectLifecycle:
    """In-memory lifecycle: current stage plus an append-only history of moves."""

    stage: ProjectStage = ProjectStage.RAW_CONTENT
    history: Tuple[TransitionRecord, ...] = field(default_factory=tuple)

    @property
    def progress(self) -> int:
        return progress_for_state(self.stage)

    def can_fire(self, trigger: ProjectTrigger) -> bool:
        return can_fire(self.stage, trigger)

    def permitted_triggers(self) -> List[ProjectTrigger]:
        return permitted_triggers(self.stage)

    def fire(self, trigger: ProjectTrigger, actor: str = "system", at: Optional[datetime] = None) -> TransitionRecord:
        target = fire(self.stage, trigger)
        record = TransitionRecord(
            from_stage=self.stage,
            to_stage=target,
            trigger=ProjectTrigger(trigger),
            actor=actor,
            at=at or datetime.now(timezone.utc),
        )
        self.stage = target
        self.history = self.history + (record,)
        return record
