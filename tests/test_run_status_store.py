"""In-memory run status store (TTL, atomic updates, active set) and progress sinks."""
import asyncio
import json
from uuid import uuid4

import httpx
import pytest

from content_orchestrator.config import Settings
from content_orchestrator.schemas.pipeline import (
    PipelineResult,
    PipelineRunStatus,
    PipelineStage,
    PipelineStatus,
    ReviewDecision,
    ReviewSubmission,
)
from content_orchestrator.services.progress_sink import (
    LoggingProgressSink,
    WebhookProgressSink,
    build_progress_sink,
)
from content_orchestrator.services.run_status_store import (
    MemoryRunStatusStore,
    RedisRunStatusStore,
    build_run_status_store,
    result_key,
    review_key,
    status_key,
)


class Ticker:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_keys():
    project_id = uuid4()
    assert status_key(project_id) == f"pipeline:status:{project_id}"
    assert review_key(project_id, PipelineStage.INSIGHTS_REVIEW) == f"pipeline:review:{project_id}:insights_review"


@pytest.mark.asyncio
async def test_status_expires_after_ttl():
    ticker = Ticker()
    store = MemoryRunStatusStore(clock=ticker)
    project_id = uuid4()
    await store.set_status(PipelineRunStatus(project_id=project_id, status=PipelineStatus.IN_PROGRESS), 60)

    ticker.now += 59
    assert (await store.get_status(project_id)).status is PipelineStatus.IN_PROGRESS
    ticker.now += 2
    assert await store.get_status(project_id) is None


@pytest.mark.asyncio
async def test_expired_and_deleted_entries_do_not_accumulate():
    ticker = Ticker()
    store = MemoryRunStatusStore(clock=ticker)
    finished = [uuid4() for _ in range(3)]
    for project_id in finished:
        await store.set_status(PipelineRunStatus(project_id=project_id), 60)
        await store.set_cancelled(project_id, "stop", 60)

    ticker.now += 61
    live = uuid4()
    await store.set_status(PipelineRunStatus(project_id=live), 60)
    await store.set_result(PipelineResult(project_id=live, success=True, final_stage=PipelineStage.COMPLETED), 60)

    assert sorted(store._data) == sorted([status_key(live), result_key(live)])
    await store.delete_status(live)
    await store.delete_result(live)
    assert store._data == {}


@pytest.mark.asyncio
async def test_update_status_applies_mutations_in_order():
    store = MemoryRunStatusStore()
    project_id = uuid4()
    await store.set_status(PipelineRunStatus(project_id=project_id), 60)

    def bump(s: PipelineRunStatus) -> None:
        s.progress += 10

    await asyncio.gather(*(store.update_status(project_id, bump, 60) for _ in range(5)))

    assert (await store.get_status(project_id)).progress == 50
    assert await store.update_status(uuid4(), bump, 60) is None


@pytest.mark.asyncio
async def test_result_review_cancel_and_active_set():
    store = MemoryRunStatusStore()
    project_id = uuid4()

    await store.set_result(PipelineResult(project_id=project_id, success=True, final_stage=PipelineStage.COMPLETED), 60)
    await store.set_review(
        project_id, ReviewSubmission(stage=PipelineStage.POSTS_REVIEW, decision=ReviewDecision.APPROVED), 60
    )
    await store.set_cancelled(project_id, "stop", 60)
    await store.add_active(project_id)
    await store.add_active(project_id)

    assert (await store.get_result(project_id)).success is True
    assert await store.get_review(project_id, PipelineStage.INSIGHTS_REVIEW) is None
    assert (await store.get_review(project_id, PipelineStage.POSTS_REVIEW)).decision is ReviewDecision.APPROVED
    assert await store.get_cancelled(project_id) == "stop"
    assert await store.list_active() == [project_id]

    await store.delete_review(project_id, PipelineStage.POSTS_REVIEW)
    await store.clear_cancelled(project_id)
    await store.remove_active(project_id)
    await store.delete_result(project_id)
    assert await store.get_review(project_id, PipelineStage.POSTS_REVIEW) is None
    assert await store.get_cancelled(project_id) is None
    assert await store.list_active() == []
    assert await store.get_result(project_id) is None
    assert await store.ping() is True


def test_store_backend_follows_redis_url():
    assert isinstance(build_run_status_store(Settings(REDIS_URL=None)), MemoryRunStatusStore)
    assert isinstance(build_run_status_store(Settings(REDIS_URL="redis://localhost:6379/0")), RedisRunStatusStore)


@pytest.mark.asyncio
async def test_webhook_sink_posts_progress():
    received = []

    def handler(request: httpx.Request) -> httpx.Response:
        received.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True})

    sink = WebhookProgressSink("https://n8n.example/webhook/progress", transport=httpx.MockTransport(handler))
    project_id = uuid4()

    await sink.publish(project_id, "extracting_insights", 30, "Extracting insights")

    assert received == [
        {"project_id": str(project_id), "stage": "extracting_insights", "progress": 30, "message": "Extracting insights"}
    ]


@pytest.mark.asyncio
async def test_webhook_sink_never_raises():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url.path)
        if len(attempts) == 1:
            return httpx.Response(500, text="boom")
        raise httpx.ConnectError("refused", request=request)

    sink = WebhookProgressSink("https://n8n.example/webhook/progress", transport=httpx.MockTransport(handler))

    await sink.publish(uuid4(), "scheduling", 90)

    assert len(attempts) == 2


def test_progress_sink_selection():
    assert isinstance(build_progress_sink(Settings(PROGRESS_WEBHOOK_URL=None)), LoggingProgressSink)
    sink = build_progress_sink(Settings(PROGRESS_WEBHOOK_URL="https://n8n.example/hook", PROGRESS_WEBHOOK_TIMEOUT_SECONDS=30))
    assert isinstance(sink, WebhookProgressSink)
    assert sink.timeout == 10.0
