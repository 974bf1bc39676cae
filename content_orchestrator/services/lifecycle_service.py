"""
Persisted project lifecycle transitions.

Each transition is a short read-modify-write in its own session. Project.version is the
SQLAlchemy version_id_col: a concurrent writer makes the UPDATE match no row
(StaleDataError); we re-read and re-apply up to STAGE_CONFLICT_RETRIES, then raise
StoreConflict. Every successful move writes one StageTransition row.
"""
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from content_orchestrator.errors import EntityNotFound, StoreConflict
from content_orchestrator.logging_config import get_logger
from content_orchestrator.models import Insight, Post, Project, ScheduledPost, StageTransition
from content_orchestrator.state.lifecycle import ProjectStage, ProjectTrigger, fire, progress_for_state

logger = get_logger(__name__)

SYSTEM_ACTOR = "system"


class LifecycleService:
    """Fires lifecycle triggers against stored projects."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        max_conflict_retries: int = 3,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._session_factory = session_factory
        self._max_conflict_retries = max(1, max_conflict_retries)
        self._clock = clock

    async def get_stage(self, project_id: UUID) -> ProjectStage:
        async with self._session_factory() as db:
            r = await db.execute(select(Project.stage).where(Project.id == project_id))
            stage = r.scalar_one_or_none()
        if stage is None:
            raise EntityNotFound("project", project_id)
        return ProjectStage(stage)

    async def transition(
        self,
        project_id: UUID,
        trigger: ProjectTrigger,
        actor: str = SYSTEM_ACTOR,
        error: Optional[str] = None,
    ) -> ProjectStage:
        """Fire trigger; InvalidTransition if not permitted from the stored stage."""
        stage = await self._apply_with_retry(project_id, ProjectTrigger(trigger), actor, None, error)
        assert stage is not None
        return stage

    async def advance(
        self,
        project_id: UUID,
        trigger: ProjectTrigger,
        actor: str = SYSTEM_ACTOR,
        only_from: Optional[Iterable[ProjectStage]] = None,
        error: Optional[str] = None,
    ) -> Optional[ProjectStage]:
        """
        Idempotent variant: when the stored stage is not in only_from, do nothing and
        return None (already advanced, or not there yet).
        """
        allowed = frozenset(ProjectStage(s) for s in only_from) if only_from is not None else None
        return await self._apply_with_retry(project_id, ProjectTrigger(trigger), actor, allowed, error)

    async def _apply_with_retry(
        self,
        project_id: UUID,
        trigger: ProjectTrigger,
        actor: str,
        only_from: Optional[frozenset],
        error: Optional[str],
    ) -> Optional[ProjectStage]:
        for attempt in range(1, self._max_conflict_retries + 1):
            try:
                return await self._apply_once(project_id, trigger, actor, only_from, error)
            except StaleDataError:
                logger.info(
                    "lifecycle.conflict_retry",
                    project_id=str(project_id),
                    trigger=trigger.value,
                    attempt=attempt,
                )
        logger.warning("lifecycle.conflict_exhausted", project_id=str(project_id), trigger=trigger.value)
        raise StoreConflict("project", project_id, self._max_conflict_retries)

    async def _apply_once(
        self,
        project_id: UUID,
        trigger: ProjectTrigger,
        actor: str,
        only_from: Optional[frozenset],
        error: Optional[str],
    ) -> Optional[ProjectStage]:
        async with self._session_factory() as db:
            try:
                project = await db.get(Project, project_id)
                if project is None:
                    raise EntityNotFound("project", project_id)
                current = ProjectStage(project.stage)
                if only_from is not None and current not in only_from:
                    await db.rollback()
                    return None
                target = fire(current, trigger)
                now = self._clock()
                project.stage = target.value
                project.overall_progress = progress_for_state(target)
                project.last_activity_at = now
                if trigger is ProjectTrigger.FAIL:
                    project.last_error = error
                elif target in (ProjectStage.RAW_CONTENT, ProjectStage.PROCESSING_CONTENT):
                    project.last_error = None
                db.add(
                    StageTransition(
                        project_id=project_id,
                        from_stage=current.value,
                        to_stage=target.value,
                        trigger=trigger.value,
                        actor=actor,
                        created_at=now,
                    )
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info(
            "lifecycle.transition",
            project_id=str(project_id),
            from_stage=current.value,
            to_stage=target.value,
            trigger=trigger.value,
            actor=actor,
        )
        return target

    async def history(self, project_id: UUID) -> list:
        async with self._session_factory() as db:
            r = await db.execute(
                select(StageTransition)
                .where(StageTransition.project_id == project_id)
                .order_by(StageTransition.created_at, StageTransition.id)
            )
            return list(r.scalars().all())

    async def refresh_metrics(self, project_id: UUID) -> dict:
        """Recompute Project.metrics (status counts) and write it with a version check."""
        for attempt in range(1, self._max_conflict_retries + 1):
            try:
                async with self._session_factory() as db:
                    try:
                        metrics = await compute_metrics(db, project_id)
                        project = await db.get(Project, project_id)
                        if project is None:
                            raise EntityNotFound("project", project_id)
                        project.metrics = metrics
                        await db.commit()
                        return metrics
                    except Exception:
                        await db.rollback()
                        raise
            except StaleDataError:
                logger.info("lifecycle.metrics_conflict_retry", project_id=str(project_id), attempt=attempt)
        raise StoreConflict("project", project_id, self._max_conflict_retries)


async def compute_metrics(db: AsyncSession, project_id: UUID) -> dict:
    """Counts per insight / post / scheduled-post status, plus last publish time."""
    out: dict = {}
    for key, model in (("insights", Insight), ("posts", Post), ("scheduled_posts", ScheduledPost)):
        r = await db.execute(
            select(model.status, func.count(model.id)).where(model.project_id == project_id).group_by(model.status)
        )
        counts = Counter({status: n for status, n in r.all()})
        out[key] = dict(counts)
    r = await db.execute(select(func.max(ScheduledPost.published_at)).where(ScheduledPost.project_id == project_id))
    last = r.scalar()
    out["last_published_at"] = last.isoformat() if last else None
    return out
