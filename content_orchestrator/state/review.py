"""
Review state machines for Insight and Post entities (pure).

Every (status, action) pair has an answer in can_transition; transition() either returns
the next status or raises IllegalStateTransition naming the current status and action.
"""
from enum import Enum
from typing import Dict, List, Tuple

from content_orchestrator.errors import IllegalStateTransition


class InsightStatus(str, Enum):
    DRAFT = "draft"
    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    ARCHIVED = "archived"


class InsightAction(str, Enum):
    SUBMIT_FOR_REVIEW = "submit_for_review"
    APPROVE = "approve"
    REJECT = "reject"
    ARCHIVE = "archive"
    RESTORE = "restore"


class PostStatus(str, Enum):
    DRAFT = "draft"
    NEEDS_REVIEW = "needs_review"
    APPROVED = "approved"
    SCHEDULED = "scheduled"
    PUBLISHED = "published"
    FAILED = "failed"
    ARCHIVED = "archived"


class PostAction(str, Enum):
    SUBMIT_FOR_REVIEW = "submit_for_review"
    APPROVE = "approve"
    REJECT = "reject"
    EDIT = "edit"
    SCHEDULE = "schedule"
    UNSCHEDULE = "unschedule"
    PUBLISH = "publish"
    FAIL = "fail"
    ARCHIVE = "archive"
    RESTORE = "restore"


IS, IA = InsightStatus, InsightAction
PS, PA = PostStatus, PostAction

INSIGHT_TRANSITIONS: Dict[Tuple[InsightStatus, InsightAction], InsightStatus] = {
    (IS.DRAFT, IA.SUBMIT_FOR_REVIEW): IS.NEEDS_REVIEW,
    (IS.DRAFT, IA.ARCHIVE): IS.ARCHIVED,
    (IS.NEEDS_REVIEW, IA.APPROVE): IS.APPROVED,
    (IS.NEEDS_REVIEW, IA.REJECT): IS.REJECTED,
    (IS.NEEDS_REVIEW, IA.ARCHIVE): IS.ARCHIVED,
    (IS.APPROVED, IA.ARCHIVE): IS.ARCHIVED,
    # A rejected insight can be revised and re-enter review.
    (IS.REJECTED, IA.SUBMIT_FOR_REVIEW): IS.NEEDS_REVIEW,
    (IS.REJECTED, IA.ARCHIVE): IS.ARCHIVED,
    (IS.ARCHIVED, IA.RESTORE): IS.DRAFT,
}

POST_TRANSITIONS: Dict[Tuple[PostStatus, PostAction], PostStatus] = {
    (PS.DRAFT, PA.SUBMIT_FOR_REVIEW): PS.NEEDS_REVIEW,
    (PS.DRAFT, PA.EDIT): PS.DRAFT,
    (PS.DRAFT, PA.ARCHIVE): PS.ARCHIVED,
    (PS.NEEDS_REVIEW, PA.APPROVE): PS.APPROVED,
    (PS.NEEDS_REVIEW, PA.REJECT): PS.DRAFT,
    (PS.NEEDS_REVIEW, PA.EDIT): PS.NEEDS_REVIEW,
    (PS.NEEDS_REVIEW, PA.ARCHIVE): PS.ARCHIVED,
    (PS.APPROVED, PA.SCHEDULE): PS.SCHEDULED,
    (PS.APPROVED, PA.SUBMIT_FOR_REVIEW): PS.NEEDS_REVIEW,
    (PS.APPROVED, PA.EDIT): PS.APPROVED,
    (PS.APPROVED, PA.ARCHIVE): PS.ARCHIVED,
    (PS.SCHEDULED, PA.UNSCHEDULE): PS.APPROVED,
    (PS.SCHEDULED, PA.PUBLISH): PS.PUBLISHED,
    (PS.SCHEDULED, PA.FAIL): PS.FAILED,
    (PS.SCHEDULED, PA.ARCHIVE): PS.ARCHIVED,
    (PS.PUBLISHED, PA.ARCHIVE): PS.ARCHIVED,
    (PS.FAILED, PA.SUBMIT_FOR_REVIEW): PS.NEEDS_REVIEW,
    (PS.FAILED, PA.SCHEDULE): PS.SCHEDULED,
    (PS.FAILED, PA.EDIT): PS.FAILED,
    (PS.FAILED, PA.ARCHIVE): PS.ARCHIVED,
    (PS.ARCHIVED, PA.RESTORE): PS.DRAFT,
}


def can_transition_insight(status: InsightStatus, action: InsightAction) -> bool:
    return (InsightStatus(status), InsightAction(action)) in INSIGHT_TRANSITIONS


def transition_insight(status: InsightStatus, action: InsightAction) -> InsightStatus:
    key = (InsightStatus(status), InsightAction(action))
    if key not in INSIGHT_TRANSITIONS:
        raise IllegalStateTransition(key[0], key[1], entity="insight")
    return INSIGHT_TRANSITIONS[key]


def insight_actions(status: InsightStatus) -> List[InsightAction]:
    status = InsightStatus(status)
    return [a for a in InsightAction if (status, a) in INSIGHT_TRANSITIONS]


def can_transition_post(status: PostStatus, action: PostAction) -> bool:
    return (PostStatus(status), PostAction(action)) in POST_TRANSITIONS


def transition_post(status: PostStatus, action: PostAction) -> PostStatus:
    key = (PostStatus(status), PostAction(action))
    if key not in POST_TRANSITIONS:
        raise IllegalStateTransition(key[0], key[1], entity="post")
    return POST_TRANSITIONS[key]


def post_actions(status: PostStatus) -> List[PostAction]:
    status = PostStatus(status)
    return [a for a in PostAction if (status, a) in POST_TRANSITIONS]
