"""
Insight / Post review operations.

Status changes are conditional UPDATEs (WHERE status = <status we validated>), so two
concurrent approvals of the same entity cannot both win: the loser re-reads and gets
IllegalStateTransition. Side effects (post-generation enqueue, lifecycle advance) run only
after the winning commit.
"""
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple, Type
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from content_orchestrator.errors import EntityNotFound, IllegalStateTransition
from content_orchestrator.logging_config import get_logger
from content_orchestrator.models import Insight, Post, ProjectEvent
from content_orchestrator.services.lifecycle_service import LifecycleService
from content_orchestrator.state.lifecycle import ProjectStage, ProjectTrigger
from content_orchestrator.state.review import (
    InsightAction,
    InsightStatus,
    PostAction,
    PostStatus,
    transition_insight,
    transition_post,
)

logger = get_logger(__name__)

InsightApprovedHook = Callable[[UUID, UUID], Any]


async def log_project_event(
    db: AsyncSession,
    project_id: UUID,
    event_type: str,
    actor: str,
    entity_id: Optional[UUID] = None,
    metadata_: Optional[Dict[str, Any]] = None,
) -> ProjectEvent:
    """Add an audit event for the project (flush only; caller commits)."""
    ev = ProjectEvent(
        project_id=project_id,
        entity_id=entity_id,
        event_type=event_type,
        actor=actor,
        metadata_=metadata_,
    )
    db.add(ev)
    await db.flush()
    return ev


class ReviewService:
    """Review gate over insights and posts; the only writer of their review statuses."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        lifecycle: LifecycleService,
        on_insight_approved: Optional[InsightApprovedHook] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._lifecycle = lifecycle
        self._on_insight_approved = on_insight_approved
        self._clock = clock

    def set_insight_approved_hook(self, hook: Optional[InsightApprovedHook]) -> None:
        self._on_insight_approved = hook

    # --- insights ---

    async def submit_insight(self, insight_id: UUID, actor: str = "system") -> InsightStatus:
        _, status = await self._move(Insight, insight_id, InsightAction.SUBMIT_FOR_REVIEW, actor)
        return status

    async def approve_insight(
        self,
        insight_id: UUID,
        reviewer: str,
        enqueue_generation: bool = True,
    ) -> InsightStatus:
        """
        needs_review -> approved. Enqueues post generation once (hook) unless the caller
        generates itself, then runs the insights coupling point.
        """
        now = self._clock()
        project_id, status = await self._move(
            Insight,
            insight_id,
            InsightAction.APPROVE,
            reviewer,
            values={"reviewed_by": reviewer, "reviewed_at": now, "rejection_reason": None},
            event_type="insight_approved",
        )
        if enqueue_generation and self._on_insight_approved is not None:
            self._on_insight_approved(insight_id, project_id)
            logger.info("review.generation_enqueued", insight_id=str(insight_id), project_id=str(project_id))
        await self.advance_on_approval(project_id, "insights", reviewer)
        return status

    async def reject_insight(self, insight_id: UUID, reviewer: str, reason: Optional[str] = None) -> InsightStatus:
        _, status = await self._move(
            Insight,
            insight_id,
            InsightAction.REJECT,
            reviewer,
            values={"reviewed_by": reviewer, "reviewed_at": self._clock(), "rejection_reason": reason},
            event_type="insight_rejected",
            metadata={"reason": reason},
        )
        return status

    async def archive_insight(self, insight_id: UUID, actor: str, reason: Optional[str] = None) -> InsightStatus:
        _, status = await self._move(
            Insight,
            insight_id,
            InsightAction.ARCHIVE,
            actor,
            values={"archived_reason": reason},
            event_type="insight_archived",
            metadata={"reason": reason},
        )
        return status

    async def restore_insight(self, insight_id: UUID, actor: str) -> InsightStatus:
        _, status = await self._move(
            Insight,
            insight_id,
            InsightAction.RESTORE,
            actor,
            values={"archived_reason": None},
            event_type="insight_restored",
        )
        return status

    # --- posts ---

    async def submit_post(self, post_id: UUID, actor: str = "system") -> PostStatus:
        _, status = await self._move(Post, post_id, PostAction.SUBMIT_FOR_REVIEW, actor)
        return status

    async def approve_post(self, post_id: UUID, reviewer: str) -> PostStatus:
        project_id, status = await self._move(
            Post,
            post_id,
            PostAction.APPROVE,
            reviewer,
            values={"approved_by": reviewer, "approved_at": self._clock(), "rejected_reason": None},
            event_type="post_approved",
        )
        await self.advance_on_approval(project_id, "posts", reviewer)
        return status

    async def reject_post(self, post_id: UUID, reviewer: str, reason: Optional[str] = None) -> PostStatus:
        _, status = await self._move(
            Post,
            post_id,
            PostAction.REJECT,
            reviewer,
            values={"rejected_by": reviewer, "rejected_reason": reason},
            event_type="post_rejected",
            metadata={"reason": reason},
        )
        return status

    async def edit_post(
        self,
        post_id: UUID,
        actor: str,
        content: Optional[str] = None,
        title: Optional[str] = None,
    ) -> PostStatus:
        values: Dict[str, Any] = {}
        if content is not None:
            values["content"] = content
        if title is not None:
            values["title"] = title
        _, status = await self._move(Post, post_id, PostAction.EDIT, actor, values=values, event_type="post_edited")
        return status

    async def archive_post(self, post_id: UUID, actor: str) -> PostStatus:
        _, status = await self._move(Post, post_id, PostAction.ARCHIVE, actor, event_type="post_archived")
        return status

    async def restore_post(self, post_id: UUID, actor: str) -> PostStatus:
        _, status = await self._move(Post, post_id, PostAction.RESTORE, actor, event_type="post_restored")
        return status

    # --- bulk helpers used by the run-loop ---

    async def ids_with_status(self, model: Type, project_id: UUID, statuses: Tuple[str, ...]) -> List[UUID]:
        async with self._session_factory() as db:
            r = await db.execute(
                select(model.id)
                .where(model.project_id == project_id, model.status.in_(statuses))
                .order_by(model.created_at, model.id)
            )
            return list(r.scalars().all())

    async def submit_drafts(self, model: Type, project_id: UUID, actor: str = "system") -> int:
        """Move every draft insight/post of the project into needs_review."""
        ids = await self.ids_with_status(model, project_id, ("draft",))
        for entity_id in ids:
            if model is Insight:
                await self.submit_insight(entity_id, actor)
            else:
                await self.submit_post(entity_id, actor)
        return len(ids)

    async def approve_pending(self, model: Type, project_id: UUID, reviewer: str) -> int:
        """Approve every insight/post in needs_review; already-decided ones are skipped."""
        ids = await self.ids_with_status(model, project_id, ("needs_review",))
        approved = 0
        for entity_id in ids:
            try:
                if model is Insight:
                    await self.approve_insight(entity_id, reviewer, enqueue_generation=False)
                else:
                    await self.approve_post(entity_id, reviewer)
                approved += 1
            except IllegalStateTransition as e:
                logger.info("review.bulk_approve_skipped", entity_id=str(entity_id), status=str(e.current_status))
        return approved

    async def count_with_status(self, model: Type, project_id: UUID, status: str) -> int:
        async with self._session_factory() as db:
            r = await db.execute(
                select(func.count(model.id)).where(model.project_id == project_id, model.status == status)
            )
            return r.scalar() or 0

    async def advance_on_approval(self, project_id: UUID, kind: str, actor: str = "system") -> Optional[ProjectStage]:
        """
        Coupling point: once the approved count is positive, advance
        insights_ready -> insights_approved (kind="insights") or
        posts_generated -> posts_approved (kind="posts"). No-op if already advanced.
        """
        if kind == "insights":
            model, trigger, from_stage = Insight, ProjectTrigger.APPROVE_INSIGHTS, ProjectStage.INSIGHTS_READY
        elif kind == "posts":
            model, trigger, from_stage = Post, ProjectTrigger.APPROVE_POSTS, ProjectStage.POSTS_GENERATED
        else:
            raise ValueError("invalid_review_kind")
        approved = await self.count_with_status(model, project_id, "approved")
        if approved <= 0:
            return None
        return await self._lifecycle.advance(project_id, trigger, actor=actor, only_from={from_stage})

    async def _move(
        self,
        model: Type,
        entity_id: UUID,
        action: Any,
        actor: str,
        values: Optional[Dict[str, Any]] = None,
        event_type: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[UUID, Any]:
        entity = "insight" if model is Insight else "post"
        transition = transition_insight if model is Insight else transition_post
        async with self._session_factory() as db:
            try:
                r = await db.execute(select(model.project_id, model.status).where(model.id == entity_id))
                row = r.one_or_none()
                if row is None:
                    raise EntityNotFound(entity, entity_id)
                project_id, current = row
                target = transition(current, action)
                res = await db.execute(
                    update(model)
                    .where(model.id == entity_id, model.status == current)
                    .values(status=target.value, updated_at=self._clock(), **(values or {}))
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    await db.rollback()
                    r = await db.execute(select(model.status).where(model.id == entity_id))
                    raise IllegalStateTransition(r.scalar_one(), action, entity=entity)
                if event_type:
                    await log_project_event(
                        db,
                        project_id=project_id,
                        event_type=event_type,
                        actor=actor,
                        entity_id=entity_id,
                        metadata_={"from": current, "to": target.value, **(metadata or {})},
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info(
            "review.transition",
            entity=entity,
            entity_id=str(entity_id),
            action=getattr(action, "value", action),
            from_status=current,
            to_status=target.value,
            actor=actor,
        )
        return project_id, target


async def apply_post_action(
    db: AsyncSession,
    post_id: UUID,
    action: PostAction,
    now: datetime,
    **values: Any,
) -> Optional[PostStatus]:
    """
    Post transition inside the caller's transaction (publishing engine, scheduling).
    Returns None when the post no longer exists; scheduled posts only hold its id.
    """
    r = await db.execute(select(Post.status).where(Post.id == post_id))
    current = r.scalar_one_or_none()
    if current is None:
        return None
    target = transition_post(current, action)
    res = await db.execute(
        update(Post)
        .where(Post.id == post_id, Post.status == current)
        .values(status=target.value, updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        r = await db.execute(select(Post.status).where(Post.id == post_id))
        raise IllegalStateTransition(r.scalar_one_or_none(), action, entity="post")
    return target
