"""
Shared fixtures: a fresh in-memory SQLite database per test (aiosqlite + StaticPool),
a controllable clock, and fakes for the completion capability, publishers and job runner.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional, Tuple
from uuid import UUID

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import content_orchestrator.models  # noqa: F401  (register tables on Base.metadata)
from content_orchestrator.db import Base
from content_orchestrator.errors import ExternalCapabilityError
from content_orchestrator.models import Insight, Post, Project, ScheduledPost
from content_orchestrator.schemas.completion import CleanedContent, InsightDraft, PostDraft
from content_orchestrator.services.publishers import PublisherRegistry, PublishResult

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2026, 3, 2, 10, 4, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock; sleep() records the delay and moves time forward."""

    def __init__(self, start: datetime = T0) -> None:
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += timedelta(seconds=seconds)
        await asyncio.sleep(0)


class FakeCompletion:
    def __init__(self, insight_count: int = 2, fail_clean: Optional[Exception] = None) -> None:
        self.insight_count = insight_count
        self.fail_clean = fail_clean
        self.calls: List[Tuple[str, Any]] = []

    async def clean(self, raw_content: str) -> CleanedContent:
        self.calls.append(("clean", raw_content))
        if self.fail_clean is not None:
            raise self.fail_clean
        return CleanedContent(content=" ".join(raw_content.split()), title="Cleaned")

    async def extract_insights(self, content: str, max_count: int) -> List[InsightDraft]:
        self.calls.append(("extract_insights", max_count))
        return [
            InsightDraft(
                title=f"Insight {i + 1}",
                content=f"Point {i + 1} taken from: {content[:40]}",
                category="lesson",
                urgency=7,
                relatability=6,
                specificity=8,
                authority=5,
            )
            for i in range(min(self.insight_count, max_count))
        ]

    async def generate_post(self, insight_content: str, platform: str) -> PostDraft:
        self.calls.append(("generate_post", platform))
        return PostDraft(
            title=f"{platform} post",
            content=f"On {platform}: {insight_content[:60]}",
            hashtags=["growth"],
        )


class FakePublisher:
    """Records calls; raises for the first fail_times calls."""

    def __init__(self, platform: str = "linkedin", fail_times: int = 0, retryable: bool = True) -> None:
        self.platform = platform
        self.fail_times = fail_times
        self.retryable = retryable
        self.calls: List[Tuple[str, Optional[UUID]]] = []

    async def publish(self, content: str, post_id: Optional[UUID] = None) -> PublishResult:
        self.calls.append((content, post_id))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ExternalCapabilityError(f"publish:{self.platform}", "status=503 unavailable", retryable=self.retryable)
        return PublishResult(platform=self.platform, external_id=f"{self.platform}-{len(self.calls)}")

    async def test_connection(self) -> bool:
        return True


class RecordingJobRunner:
    """Stands in for JobRunner where a test drives the job function itself."""

    def __init__(self) -> None:
        self.enqueued: List[Tuple[str, Any, tuple]] = []
        self.recurring_jobs: List[str] = []
        self.started = False

    def enqueue(self, name: str, func: Any, *args: Any, policy: Any = None, **kwargs: Any) -> str:
        self.enqueued.append((name, func, args))
        return f"{name}:job{len(self.enqueued)}"

    def recurring(self, name: str, interval_seconds: float, func: Any, initial_delay_seconds: float = 0.0) -> None:
        self.recurring_jobs.append(name)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    def status(self) -> list:
        return []


@pytest_asyncio.fixture
async def session_factory():
    """Clean schema per test."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
    yield factory
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion()


@pytest.fixture
def linkedin_publisher() -> FakePublisher:
    return FakePublisher("linkedin")


@pytest.fixture
def registry(linkedin_publisher: FakePublisher) -> PublisherRegistry:
    return PublisherRegistry([linkedin_publisher, FakePublisher("x"), FakePublisher("facebook")])


async def create_project(factory, stage: str = "raw_content", **kwargs: Any) -> UUID:
    kwargs.setdefault("name", "Podcast episode 12")
    kwargs.setdefault("raw_content", "um so  today we talk about   pricing and churn")
    async with factory() as db:
        project = Project(stage=stage, **kwargs)
        db.add(project)
        await db.commit()
        return project.id


async def create_insight(factory, project_id: UUID, status: str = "draft", title: str = "Insight") -> UUID:
    async with factory() as db:
        insight = Insight(project_id=project_id, title=title, content=f"{title} body", status=status)
        insight.set_scores(6, 6, 6, 6)
        db.add(insight)
        await db.commit()
        return insight.id


async def create_post(
    factory,
    project_id: UUID,
    insight_id: UUID,
    platform: str = "linkedin",
    status: str = "draft",
    content: str = "Post body #growth",
) -> UUID:
    async with factory() as db:
        post = Post(
            project_id=project_id,
            insight_id=insight_id,
            platform=platform,
            title="Post",
            content=content,
            status=status,
        )
        db.add(post)
        await db.commit()
        return post.id


async def create_scheduled_post(
    factory,
    project_id: UUID,
    when: datetime,
    platform: str = "linkedin",
    content: Optional[str] = None,
    status: str = "pending",
    retry_count: int = 0,
    last_attempt_at: Optional[datetime] = None,
    post_status: str = "scheduled",
) -> Tuple[UUID, UUID]:
    """Insight + post (post_status) + scheduled post; returns (scheduled_post_id, post_id)."""
    insight_id = await create_insight(factory, project_id, status="approved", title=f"Insight {when:%H%M} {platform}")
    body = content or f"Post for {when:%H:%M} #growth"
    post_id = await create_post(factory, project_id, insight_id, platform=platform, status=post_status, content=body)
    async with factory() as db:
        sp = ScheduledPost(
            post_id=post_id,
            project_id=project_id,
            platform=platform,
            content=body,
            scheduled_time=when,
            status=status,
            retry_count=retry_count,
            last_attempt_at=last_attempt_at,
        )
        db.add(sp)
        await db.commit()
        return sp.id, post_id
