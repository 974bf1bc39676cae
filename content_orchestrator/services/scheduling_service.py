"""Turn approved posts into pending scheduled posts, and take them back out."""
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from content_orchestrator.errors import EntityNotFound, InvalidTransition
from content_orchestrator.logging_config import get_logger
from content_orchestrator.models import Post, Project, ScheduledPost, ScheduledPostStatus
from content_orchestrator.models.scheduled_post import DUE_STATUSES
from content_orchestrator.schemas.workflow import PublishingSchedule, WorkflowConfig
from content_orchestrator.services.lifecycle_service import LifecycleService
from content_orchestrator.services.review_service import apply_post_action, log_project_event
from content_orchestrator.state.lifecycle import ProjectStage, ProjectTrigger
from content_orchestrator.state.review import PostAction, PostStatus

logger = get_logger(__name__)


def plan_schedule_times(count: int, now: datetime, schedule: PublishingSchedule) -> List[datetime]:
    """First slot at now + start offset, then one slot every spacing minutes."""
    first = now + timedelta(minutes=schedule.start_offset_minutes)
    step = timedelta(minutes=schedule.spacing_minutes)
    return [first + i * step for i in range(count)]


class SchedulingService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        lifecycle: LifecycleService,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._lifecycle = lifecycle
        self._clock = clock

    async def schedule_project_posts(self, project_id: UUID, actor: str = "system") -> int:
        """
        posts_approved -> scheduled: one pending ScheduledPost per approved post, spaced per the
        project's publishing schedule. Returns the number of scheduled posts created.
        """
        now = self._clock()
        async with self._session_factory() as db:
            try:
                project = await db.get(Project, project_id)
                if project is None:
                    raise EntityNotFound("project", project_id)
                if project.stage != ProjectStage.POSTS_APPROVED.value:
                    raise InvalidTransition(ProjectStage(project.stage), ProjectTrigger.SCHEDULE_POSTS)
                config = WorkflowConfig.from_json(project.workflow_config)
                r = await db.execute(
                    select(Post)
                    .where(Post.project_id == project_id, Post.status == PostStatus.APPROVED.value)
                    .order_by(Post.created_at, Post.platform, Post.id)
                )
                posts = list(r.scalars().all())
                times = plan_schedule_times(len(posts), now, config.schedule)
                for post, when in zip(posts, times):
                    await apply_post_action(db, post.id, PostAction.SCHEDULE, now)
                    db.add(
                        ScheduledPost(
                            post_id=post.id,
                            project_id=project_id,
                            platform=post.platform,
                            content=post.content,
                            scheduled_time=when,
                        )
                    )
                await log_project_event(
                    db,
                    project_id=project_id,
                    event_type="posts_scheduled",
                    actor=actor,
                    metadata_={"count": len(posts), "first_at": times[0].isoformat() if times else None},
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        if not posts:
            logger.warning("scheduling.no_approved_posts", project_id=str(project_id))
            return 0
        await self._lifecycle.advance(
            project_id,
            ProjectTrigger.SCHEDULE_POSTS,
            actor=actor,
            only_from={ProjectStage.POSTS_APPROVED},
        )
        logger.info("scheduling.project_scheduled", project_id=str(project_id), count=len(posts))
        return len(posts)

    async def schedule_post(self, post_id: UUID, when: datetime, actor: str = "system") -> ScheduledPost:
        """Schedule a single approved (or failed) post at a given time."""
        now = self._clock()
        async with self._session_factory() as db:
            try:
                post = await db.get(Post, post_id)
                if post is None:
                    raise EntityNotFound("post", post_id)
                await apply_post_action(db, post_id, PostAction.SCHEDULE, now)
                sp = ScheduledPost(
                    post_id=post_id,
                    project_id=post.project_id,
                    platform=post.platform,
                    content=post.content,
                    scheduled_time=when,
                )
                db.add(sp)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info("scheduling.post_scheduled", post_id=str(post_id), at=when.isoformat())
        return sp

    async def unschedule_post(self, post_id: UUID, actor: str = "system", reason: Optional[str] = None) -> int:
        """scheduled -> approved; cancels its not-yet-claimed scheduled posts. Returns cancelled count."""
        now = self._clock()
        async with self._session_factory() as db:
            try:
                post = await db.get(Post, post_id)
                if post is None:
                    raise EntityNotFound("post", post_id)
                project_id = post.project_id
                await apply_post_action(db, post_id, PostAction.UNSCHEDULE, now)
                res = await db.execute(
                    update(ScheduledPost)
                    .where(ScheduledPost.post_id == post_id, ScheduledPost.status.in_(DUE_STATUSES))
                    .values(status=ScheduledPostStatus.CANCELLED.value, cancelled_at=now, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                cancelled = res.rowcount or 0
                await log_project_event(
                    db,
                    project_id=project_id,
                    event_type="post_unscheduled",
                    actor=actor,
                    entity_id=post_id,
                    metadata_={"cancelled": cancelled, "reason": reason},
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info("scheduling.post_unscheduled", post_id=str(post_id), cancelled=cancelled)
        return cancelled
