"""
Post generation from approved insights. Idempotent per (insight, platform): an existing
post is kept, and a concurrent insert losing on uq_posts_insight_platform is a skip.
"""
import asyncio
from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from content_orchestrator.errors import EntityNotFound
from content_orchestrator.logging_config import get_logger
from content_orchestrator.models import Insight, Post, Project
from content_orchestrator.schemas.workflow import WorkflowConfig
from content_orchestrator.services.completion_service import ContentCompletion
from content_orchestrator.services.job_runner import RetryPolicy, SleepFunc, call_with_retry
from content_orchestrator.services.lifecycle_service import LifecycleService
from content_orchestrator.state.lifecycle import ProjectStage, ProjectTrigger
from content_orchestrator.state.review import InsightStatus

logger = get_logger(__name__)


class PostGenerator:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        completion: ContentCompletion,
        lifecycle: LifecycleService,
        external_policy: Optional[RetryPolicy] = None,
        sleep: SleepFunc = asyncio.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._completion = completion
        self._lifecycle = lifecycle
        self._policy = external_policy or RetryPolicy.none()
        self._sleep = sleep

    async def generate_for_insight(self, insight_id: UUID, platforms: Iterable[str]) -> List[UUID]:
        """Create missing draft posts for an approved insight; returns ids of new posts."""
        async with self._session_factory() as db:
            insight = await db.get(Insight, insight_id)
            if insight is None:
                raise EntityNotFound("insight", insight_id)
            if insight.status != InsightStatus.APPROVED.value:
                logger.info("post_generation.skipped_not_approved", insight_id=str(insight_id), status=insight.status)
                return []
            project_id = insight.project_id
            source = f"{insight.title}\n\n{insight.content}"
            r = await db.execute(select(Post.platform).where(Post.insight_id == insight_id))
            existing = set(r.scalars().all())

        created: List[UUID] = []
        for platform in platforms:
            if platform in existing:
                continue
            draft = await call_with_retry(
                self._policy,
                self._completion.generate_post,
                source,
                platform,
                sleep=self._sleep,
                label="completion.generate_post",
            )
            post = Post(
                project_id=project_id,
                insight_id=insight_id,
                platform=platform,
                title=draft.title,
                content=draft.body(),
            )
            async with self._session_factory() as db:
                db.add(post)
                try:
                    await db.commit()
                except IntegrityError:
                    await db.rollback()
                    logger.info("post_generation.duplicate_skipped", insight_id=str(insight_id), platform=platform)
                    continue
            created.append(post.id)
            logger.info("post_generation.created", insight_id=str(insight_id), post_id=str(post.id), platform=platform)
        return created

    async def handle_insight_approved(self, insight_id: UUID, project_id: UUID) -> List[UUID]:
        """Job handler enqueued once per insight approval."""
        async with self._session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise EntityNotFound("project", project_id)
            config = WorkflowConfig.from_json(project.workflow_config)
        created = await self.generate_for_insight(insight_id, config.platforms)
        await self._lifecycle.advance(
            project_id,
            ProjectTrigger.GENERATE_POSTS,
            only_from={ProjectStage.INSIGHTS_APPROVED},
        )
        return created
