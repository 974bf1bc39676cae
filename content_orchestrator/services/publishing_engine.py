"""
Scheduled publishing engine.

Each sweep selects due scheduled posts (pending/retry, scheduled_time <= now + lookahead),
groups them into fixed time buckets, and works through the buckets in time order, waiting
for a bucket that is still in the future. Items in a bucket are published concurrently
under a semaphore.

Per item: claim with a conditional UPDATE (retry_count += 1, status publishing /
republishing), commit, call the platform with a timeout and no transaction open, then
record success (published + publish record) or failure (retry with base**n minutes
backoff, or terminal failed at the ceiling). A published item is never claimed again.

ENV: SCHEDULER_*, PUBLISH_*, FAILED_RETRY_*, STALE_CLAIM_MINUTES.
"""
import asyncio
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar
from uuid import UUID

from sqlalchemy import case, func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from content_orchestrator.config import Settings
from content_orchestrator.errors import EntityNotFound, IllegalStateTransition, InvalidTransition, StoreConflict
from content_orchestrator.logging_config import get_logger, log_context
from content_orchestrator.models import Post, PostPublishRecord, Project, ScheduledPost, ScheduledPostStatus
from content_orchestrator.models.scheduled_post import DUE_STATUSES, IN_FLIGHT_STATUSES, OUTSTANDING_STATUSES
from content_orchestrator.services.job_runner import SleepFunc
from content_orchestrator.services.lifecycle_service import LifecycleService
from content_orchestrator.services.platform_content import optimize
from content_orchestrator.services.publishers import PublisherRegistry, PublishResult
from content_orchestrator.services.review_service import apply_post_action, log_project_event
from content_orchestrator.state.lifecycle import ProjectStage, ProjectTrigger
from content_orchestrator.state.review import PostAction, PostStatus

logger = get_logger(__name__)

SYSTEM_ACTOR = "publishing_engine"
SPS = ScheduledPostStatus

ItemT = TypeVar("ItemT")


def bucket_start(ts: datetime, granularity_minutes: int) -> datetime:
    """Floor ts to its bucket, e.g. 10:07:31 with 5 -> 10:05:00."""
    minute = (ts.minute // granularity_minutes) * granularity_minutes
    return ts.replace(minute=minute, second=0, microsecond=0)


def group_into_buckets(
    items: Iterable[ItemT],
    granularity_minutes: int,
    key: Callable[[ItemT], datetime] = lambda item: item.scheduled_time,  # type: ignore[attr-defined]
) -> List[Tuple[datetime, List[ItemT]]]:
    """[(bucket_start, items)] in ascending bucket order; item order inside a bucket is kept."""
    buckets: Dict[datetime, List[ItemT]] = {}
    for item in items:
        buckets.setdefault(bucket_start(key(item), granularity_minutes), []).append(item)
    return sorted(buckets.items(), key=lambda kv: kv[0])


def backoff_delay(retry_count: int, base: int) -> timedelta:
    """base**retry_count minutes: base=5 gives 5m after attempt 1, 25m after attempt 2."""
    return timedelta(minutes=base ** retry_count)


class PublishOutcome(str, Enum):
    PUBLISHED = "published"
    RETRY = "retry"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class EngineConfig:
    lookahead_minutes: int = 5
    batch_size: int = 20
    bucket_minutes: int = 5
    max_concurrency: int = 5
    max_retries: int = 3
    backoff_base: int = 5
    publish_timeout_seconds: float = 30.0
    failed_retry_cooldown_minutes: int = 60
    failed_retry_cap: int = 5
    failed_retry_batch: int = 10
    failed_retry_delay_minutes: int = 5
    stale_claim_minutes: int = 15

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineConfig":
        return cls(
            lookahead_minutes=settings.publish_lookahead_minutes,
            batch_size=settings.publish_batch_size,
            bucket_minutes=settings.publish_bucket_minutes,
            max_concurrency=settings.publish_max_concurrent,
            max_retries=settings.publish_max_retries,
            backoff_base=settings.publish_backoff_base,
            publish_timeout_seconds=settings.publish_timeout_seconds,
            failed_retry_cooldown_minutes=settings.failed_retry_cooldown_minutes,
            failed_retry_cap=settings.failed_retry_cap,
            failed_retry_batch=settings.failed_retry_batch,
            failed_retry_delay_minutes=settings.failed_retry_delay_minutes,
            stale_claim_minutes=settings.stale_claim_minutes,
        )


@dataclass
class SweepReport:
    selected: int = 0
    outcomes: Counter = field(default_factory=Counter)
    buckets: List[Tuple[datetime, List[UUID]]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "selected": self.selected,
            "published": self.outcomes[PublishOutcome.PUBLISHED],
            "retried": self.outcomes[PublishOutcome.RETRY],
            "failed": self.outcomes[PublishOutcome.FAILED],
            "skipped": self.outcomes[PublishOutcome.SKIPPED],
        }


@dataclass(frozen=True)
class _DueItem:
    id: UUID
    project_id: UUID
    scheduled_time: datetime


@dataclass(frozen=True)
class _Claim:
    id: UUID
    post_id: UUID
    project_id: UUID
    platform: str
    content: str
    retry_count: int


class PublishingEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        publishers: PublisherRegistry,
        lifecycle: LifecycleService,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        sleep: SleepFunc = asyncio.sleep,
        enabled: bool = True,
    ) -> None:
        self._session_factory = session_factory
        self._publishers = publishers
        self._lifecycle = lifecycle
        self.config = config or EngineConfig()
        self._clock = clock
        self._sleep = sleep
        self.enabled = enabled
        self.last_tick_at: Optional[datetime] = None

    # --- sweep ---

    async def sweep(self) -> SweepReport:
        """One poll tick. Store errors propagate (the recurring job retries next tick)."""
        report = SweepReport()
        if not self.enabled:
            return report
        now = self._clock()
        self.last_tick_at = now
        due = await self._select_due(now)
        report.selected = len(due)
        logger.info("publishing.tick", at=now.isoformat(), selected=len(due))
        if not due:
            return report
        await self._dispatch(group_into_buckets(due, self.config.bucket_minutes), report)
        await self._settle_projects(item.project_id for item in due)
        logger.info("publishing.sweep_done", **report.to_dict())
        return report

    async def _select_due(self, now: datetime) -> List[_DueItem]:
        horizon = now + timedelta(minutes=self.config.lookahead_minutes)
        async with self._session_factory() as db:
            q = (
                select(ScheduledPost.id, ScheduledPost.project_id, ScheduledPost.scheduled_time)
                .where(
                    ScheduledPost.status.in_(DUE_STATUSES),
                    ScheduledPost.scheduled_time <= horizon,
                )
                .order_by(ScheduledPost.scheduled_time, ScheduledPost.platform, ScheduledPost.id)
                .limit(self.config.batch_size)
                .with_for_update(skip_locked=True)
            )
            r = await db.execute(q)
            rows = [_DueItem(id=row[0], project_id=row[1], scheduled_time=row[2]) for row in r.all()]
            await db.commit()
        return rows

    async def _dispatch(self, buckets: Sequence[Tuple[datetime, List[_DueItem]]], report: SweepReport) -> None:
        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrency))

        async def run(item: _DueItem) -> PublishOutcome:
            async with semaphore:
                with log_context(scheduled_post_id=item.id, project_id=item.project_id):
                    return await self.publish_one(item.id)

        for start, items in buckets:
            wait = (start - self._clock()).total_seconds()
            if wait > 0:
                logger.info("publishing.bucket_wait", bucket=start.isoformat(), seconds=round(wait, 1))
                await self._sleep(wait)
            logger.info("publishing.bucket_dispatch", bucket=start.isoformat(), items=len(items))
            report.buckets.append((start, [i.id for i in items]))
            results = await asyncio.gather(*(run(i) for i in items), return_exceptions=True)
            store_error: Optional[BaseException] = None
            for item, res in zip(items, results):
                if isinstance(res, BaseException):
                    logger.error("publishing.item_store_error", scheduled_post_id=str(item.id), error=str(res))
                    store_error = store_error or res
                else:
                    report.outcomes[res] += 1
            if store_error is not None:
                raise store_error

    # --- single item ---

    async def publish_one(self, scheduled_post_id: UUID) -> PublishOutcome:
        """Claim and publish one item. Already published / claimed elsewhere -> SKIPPED, no external call."""
        claim = await self._claim(scheduled_post_id)
        if claim is None:
            return PublishOutcome.SKIPPED
        await self._mark_project_publishing(claim.project_id)
        try:
            content = optimize(claim.content, claim.platform)
            result = await asyncio.wait_for(
                self._publishers.publish(claim.platform, content, claim.post_id),
                timeout=self.config.publish_timeout_seconds,
            )
        except asyncio.TimeoutError:
            outcome = await self._record_failure(claim, f"timeout after {self.config.publish_timeout_seconds:g}s")
        except Exception as e:
            outcome = await self._record_failure(claim, getattr(e, "detail", None) or str(e) or type(e).__name__)
        else:
            outcome = await self._record_success(claim, result)
        await self.evaluate_project(claim.project_id)
        return outcome

    async def _claim(self, scheduled_post_id: UUID) -> Optional[_Claim]:
        now = self._clock()
        async with self._session_factory() as db:
            try:
                res = await db.execute(
                    update(ScheduledPost)
                    .where(ScheduledPost.id == scheduled_post_id, ScheduledPost.status.in_(DUE_STATUSES))
                    .values(
                        status=case(
                            (ScheduledPost.retry_count > 0, SPS.REPUBLISHING.value),
                            else_=SPS.PUBLISHING.value,
                        ),
                        retry_count=ScheduledPost.retry_count + 1,
                        last_attempt_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                r = await db.execute(select(ScheduledPost).where(ScheduledPost.id == scheduled_post_id))
                sp = r.scalar_one_or_none()
                if res.rowcount != 1 or sp is None:
                    # rollback expires sp
                    current = sp.status if sp is not None else None
                    await db.rollback()
                    logger.info(
                        "publishing.claim_skipped",
                        scheduled_post_id=str(scheduled_post_id),
                        status=current,
                    )
                    return None
                claim = _Claim(
                    id=sp.id,
                    post_id=sp.post_id,
                    project_id=sp.project_id,
                    platform=sp.platform,
                    content=sp.content,
                    retry_count=sp.retry_count,
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info(
            "publishing.claimed",
            scheduled_post_id=str(claim.id),
            platform=claim.platform,
            attempt=claim.retry_count,
        )
        return claim

    async def _mark_project_publishing(self, project_id: UUID) -> None:
        try:
            await self._lifecycle.advance(
                project_id,
                ProjectTrigger.START_PUBLISHING,
                actor=SYSTEM_ACTOR,
                only_from={ProjectStage.SCHEDULED},
            )
        except EntityNotFound:
            logger.warning("publishing.project_missing", project_id=str(project_id))

    async def _record_success(self, claim: _Claim, result: PublishResult) -> PublishOutcome:
        now = self._clock()
        async with self._session_factory() as db:
            try:
                await db.execute(
                    update(ScheduledPost)
                    .where(ScheduledPost.id == claim.id, ScheduledPost.status.in_(IN_FLIGHT_STATUSES))
                    .values(
                        status=SPS.PUBLISHED.value,
                        external_post_id=result.external_id,
                        published_at=now,
                        error_message=None,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                post_exists = await db.scalar(select(func.count(Post.id)).where(Post.id == claim.post_id))
                if post_exists:
                    try:
                        await apply_post_action(db, claim.post_id, PostAction.PUBLISH, now, published_at=now)
                    except IllegalStateTransition as e:
                        logger.warning(
                            "publishing.post_status_unexpected",
                            post_id=str(claim.post_id),
                            status=str(e.current_status),
                        )
                    db.add(
                        PostPublishRecord(
                            post_id=claim.post_id,
                            scheduled_post_id=claim.id,
                            platform=claim.platform,
                            external_id=result.external_id,
                            published_at=now,
                        )
                    )
                await log_project_event(
                    db,
                    project_id=claim.project_id,
                    event_type="post_published",
                    actor=SYSTEM_ACTOR,
                    entity_id=claim.post_id,
                    metadata_={"platform": claim.platform, "external_id": result.external_id, "url": result.url},
                )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        logger.info(
            "publishing.item_published",
            scheduled_post_id=str(claim.id),
            platform=claim.platform,
            external_id=result.external_id,
        )
        return PublishOutcome.PUBLISHED

    async def _record_failure(self, claim: _Claim, error: str) -> PublishOutcome:
        now = self._clock()
        terminal = claim.retry_count >= self.config.max_retries
        values = {"error_message": error[:2000], "updated_at": now}
        if terminal:
            values["status"] = SPS.FAILED.value
        else:
            values["status"] = SPS.RETRY.value
            values["scheduled_time"] = now + backoff_delay(claim.retry_count, self.config.backoff_base)
        async with self._session_factory() as db:
            try:
                await db.execute(
                    update(ScheduledPost)
                    .where(ScheduledPost.id == claim.id, ScheduledPost.status.in_(IN_FLIGHT_STATUSES))
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if terminal:
                    try:
                        await apply_post_action(db, claim.post_id, PostAction.FAIL, now)
                    except IllegalStateTransition as e:
                        logger.warning(
                            "publishing.post_status_unexpected",
                            post_id=str(claim.post_id),
                            status=str(e.current_status),
                        )
                    await log_project_event(
                        db,
                        project_id=claim.project_id,
                        event_type="post_publish_failed",
                        actor=SYSTEM_ACTOR,
                        entity_id=claim.post_id,
                        metadata_={"platform": claim.platform, "attempts": claim.retry_count, "error": error[:500]},
                    )
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        if terminal:
            logger.warning(
                "publishing.item_failed",
                scheduled_post_id=str(claim.id),
                attempts=claim.retry_count,
                error=error,
            )
            return PublishOutcome.FAILED
        logger.info(
            "publishing.retry_scheduled",
            scheduled_post_id=str(claim.id),
            attempt=claim.retry_count,
            next_at=values["scheduled_time"].isoformat(),
            error=error,
        )
        return PublishOutcome.RETRY

    # --- project roll-up ---

    async def evaluate_project(self, project_id: UUID) -> Optional[ProjectStage]:
        """
        Once no scheduled post of the project is outstanding and no failed one can still be
        re-queued: publishing -> published if anything went out, else -> failed.
        """
        async with self._session_factory() as db:
            r = await db.execute(
                select(ScheduledPost.status, func.count(ScheduledPost.id))
                .where(ScheduledPost.project_id == project_id)
                .group_by(ScheduledPost.status)
            )
            counts = Counter({status: n for status, n in r.all()})
            requeueable = await db.scalar(
                select(func.count(ScheduledPost.id)).where(
                    ScheduledPost.project_id == project_id,
                    ScheduledPost.status == SPS.FAILED.value,
                    ScheduledPost.retry_count < self.config.failed_retry_cap,
                )
            )
        try:
            await self._lifecycle.refresh_metrics(project_id)
        except EntityNotFound:
            return None
        except StoreConflict as e:
            # metrics are a snapshot; the next roll-up rewrites them
            logger.warning("publishing.metrics_conflict", project_id=str(project_id), error=e.detail)
        outstanding = sum(counts[s] for s in OUTSTANDING_STATUSES)
        if outstanding or requeueable:
            return None
        published = counts[SPS.PUBLISHED.value]
        failed = counts[SPS.FAILED.value]
        if published:
            if failed:
                logger.warning("publishing.project_partial", project_id=str(project_id), published=published, failed=failed)
            return await self._lifecycle.advance(
                project_id,
                ProjectTrigger.COMPLETE_PUBLISHING,
                actor=SYSTEM_ACTOR,
                only_from={ProjectStage.PUBLISHING},
            )
        if failed:
            return await self._lifecycle.advance(
                project_id,
                ProjectTrigger.FAIL,
                actor=SYSTEM_ACTOR,
                only_from={ProjectStage.PUBLISHING, ProjectStage.SCHEDULED},
                error=f"all {failed} scheduled posts failed to publish",
            )
        return None

    # --- failed-item sweep ---

    async def retry_failed_posts(self) -> int:
        """
        Re-queue failed items whose last attempt is older than the cool-down and whose
        retry_count is under the overall cap: pending at now + delay, error cleared.
        Also releases claims left in publishing/republishing by a crashed worker.
        """
        if not self.enabled:
            return 0
        now = self._clock()
        await self.release_stale_claims(now)
        cutoff = now - timedelta(minutes=self.config.failed_retry_cooldown_minutes)
        next_time = now + timedelta(minutes=self.config.failed_retry_delay_minutes)
        requeued: List[UUID] = []
        async with self._session_factory() as db:
            try:
                r = await db.execute(
                    select(ScheduledPost.id, ScheduledPost.post_id)
                    .where(
                        ScheduledPost.status == SPS.FAILED.value,
                        ScheduledPost.retry_count < self.config.failed_retry_cap,
                        ScheduledPost.last_attempt_at < cutoff,
                    )
                    .order_by(ScheduledPost.last_attempt_at, ScheduledPost.id)
                    .limit(self.config.failed_retry_batch)
                    .with_for_update(skip_locked=True)
                )
                for sp_id, post_id in r.all():
                    res = await db.execute(
                        update(ScheduledPost)
                        .where(ScheduledPost.id == sp_id, ScheduledPost.status == SPS.FAILED.value)
                        .values(
                            status=SPS.PENDING.value,
                            scheduled_time=next_time,
                            error_message=None,
                            updated_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        continue
                    try:
                        await apply_post_action(db, post_id, PostAction.SCHEDULE, now)
                    except IllegalStateTransition as e:
                        logger.info("publishing.requeue_post_status", post_id=str(post_id), status=str(e.current_status))
                    requeued.append(sp_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        if requeued:
            logger.info("publishing.failed_requeued", count=len(requeued), next_at=next_time.isoformat())
        return len(requeued)

    async def release_stale_claims(self, now: Optional[datetime] = None) -> int:
        """
        Claims left in publishing/republishing past STALE_CLAIM_MINUTES go back to retry, or
        to failed at the retry ceiling; projects with newly failed items are rolled up.
        """
        now = now or self._clock()
        cutoff = now - timedelta(minutes=self.config.stale_claim_minutes)
        released = 0
        failed_projects = set()
        async with self._session_factory() as db:
            try:
                r = await db.execute(
                    select(ScheduledPost.id, ScheduledPost.post_id, ScheduledPost.project_id, ScheduledPost.retry_count)
                    .where(
                        ScheduledPost.status.in_(IN_FLIGHT_STATUSES),
                        ScheduledPost.last_attempt_at < cutoff,
                    )
                    .with_for_update(skip_locked=True)
                )
                for sp_id, post_id, project_id, retry_count in r.all():
                    terminal = retry_count >= self.config.max_retries
                    values = {"error_message": "claim_expired", "updated_at": now}
                    if terminal:
                        values["status"] = SPS.FAILED.value
                    else:
                        values.update(status=SPS.RETRY.value, scheduled_time=now)
                    res = await db.execute(
                        update(ScheduledPost)
                        .where(ScheduledPost.id == sp_id, ScheduledPost.status.in_(IN_FLIGHT_STATUSES))
                        .values(**values)
                        .execution_options(synchronize_session=False)
                    )
                    if res.rowcount != 1:
                        continue
                    released += 1
                    if terminal:
                        try:
                            await apply_post_action(db, post_id, PostAction.FAIL, now)
                        except IllegalStateTransition as e:
                            logger.info("publishing.release_post_status", post_id=str(post_id), status=str(e.current_status))
                        failed_projects.add(project_id)
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        if released:
            logger.warning("publishing.stale_claims_released", count=released, failed=len(failed_projects))
        await self._settle_projects(failed_projects)
        return released

    async def _settle_projects(self, project_ids: Iterable[UUID]) -> None:
        """Roll up each project; one project's conflict does not stop the others."""
        for project_id in sorted(set(project_ids), key=str):
            try:
                await self.evaluate_project(project_id)
            except StoreConflict as e:
                logger.warning("publishing.evaluate_conflict", project_id=str(project_id), error=e.detail)

    # --- publish now ---

    async def publish_project_now(self, project_id: UUID, actor: str = "user") -> SweepReport:
        """posts_approved -> publishing: every approved post goes out now, bypassing the schedule."""
        now = self._clock()
        async with self._session_factory() as db:
            project = await db.get(Project, project_id)
            if project is None:
                raise EntityNotFound("project", project_id)
            if project.stage != ProjectStage.POSTS_APPROVED.value:
                raise InvalidTransition(ProjectStage(project.stage), ProjectTrigger.PUBLISH_NOW)
            approved = await db.scalar(
                select(func.count(Post.id)).where(
                    Post.project_id == project_id, Post.status == PostStatus.APPROVED.value
                )
            )
        if not approved:
            raise InvalidTransition(ProjectStage.POSTS_APPROVED, ProjectTrigger.PUBLISH_NOW)
        await self._lifecycle.transition(project_id, ProjectTrigger.PUBLISH_NOW, actor=actor)

        items: List[_DueItem] = []
        async with self._session_factory() as db:
            try:
                r = await db.execute(
                    select(Post)
                    .where(Post.project_id == project_id, Post.status == PostStatus.APPROVED.value)
                    .order_by(Post.created_at, Post.platform, Post.id)
                )
                for post in r.scalars().all():
                    await apply_post_action(db, post.id, PostAction.SCHEDULE, now)
                    sp = ScheduledPost(
                        post_id=post.id,
                        project_id=project_id,
                        platform=post.platform,
                        content=post.content,
                        scheduled_time=now,
                    )
                    db.add(sp)
                    await db.flush()
                    items.append(_DueItem(id=sp.id, project_id=project_id, scheduled_time=now))
                await db.commit()
            except Exception:
                await db.rollback()
                raise
        report = SweepReport(selected=len(items))
        await self._dispatch([(bucket_start(now, self.config.bucket_minutes), items)], report)
        logger.info("publishing.publish_now_done", project_id=str(project_id), **report.to_dict())
        return report

    # --- status ---

    async def status_counts(self) -> Dict[str, int]:
        async with self._session_factory() as db:
            r = await db.execute(
                select(ScheduledPost.status, func.count(ScheduledPost.id)).group_by(ScheduledPost.status)
            )
            return {status: n for status, n in r.all()}

    async def pending_count(self) -> int:
        """Items a sweep would pick up right now."""
        horizon = self._clock() + timedelta(minutes=self.config.lookahead_minutes)
        async with self._session_factory() as db:
            n = await db.scalar(
                select(func.count(ScheduledPost.id)).where(
                    ScheduledPost.status.in_(DUE_STATUSES),
                    ScheduledPost.scheduled_time <= horizon,
                )
            )
        return n or 0
