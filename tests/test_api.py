"""HTTP surface: health, pipeline and scheduler routers over httpx.ASGITransport."""
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from content_orchestrator.config import Settings
from content_orchestrator.db import get_db
from content_orchestrator.main import create_app
from content_orchestrator.runtime import build_runtime
from content_orchestrator.services.progress_sink import LoggingProgressSink
from content_orchestrator.services.run_status_store import MemoryRunStatusStore
from tests.conftest import RecordingJobRunner, create_project


@pytest_asyncio.fixture
async def api(session_factory, completion, registry):
    """(client, runtime) with the service graph on app.state; the lifespan is not run."""
    app = create_app()
    jobs = RecordingJobRunner()
    runtime = build_runtime(
        Settings(SCHEDULER_ENABLED=False, REDIS_URL=None),
        session_factory=session_factory,
        completion=completion,
        publishers=registry,
        store=MemoryRunStatusStore(),
        sink=LoggingProgressSink(),
        jobs=jobs,
    )
    app.state.runtime = runtime

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, runtime
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_health_endpoints(api):
    client, _ = api

    assert (await client.get("/health")).json() == {"status": "ok", "service": "content_orchestrator"}
    assert (await client.get("/api/healthz")).json() == {"status": "ok"}
    ready = await client.get("/api/readyz")
    assert ready.status_code == 200
    assert ready.json() == {"status": "ok", "db": "ok", "store": "ok"}


@pytest.mark.asyncio
async def test_correlation_id_is_echoed_or_generated(api):
    client, _ = api

    echoed = await client.get("/health", headers={"X-Correlation-ID": "req-123"})
    generated = await client.get("/health")

    assert echoed.headers["X-Correlation-ID"] == "req-123"
    assert len(generated.headers["X-Correlation-ID"]) == 36


@pytest.mark.asyncio
async def test_start_pipeline_accepts_and_reports_status(api, session_factory):
    client, runtime = api
    project_id = await create_project(session_factory)

    resp = await client.post(f"/pipeline/{project_id}/start")

    assert resp.status_code == 202
    body = resp.json()
    assert body["status"] == "in_progress"
    assert body["job_id"] == f"pipeline:{project_id}:job1"
    assert runtime.jobs.enqueued[0][0] == f"pipeline:{project_id}"

    status = (await client.get(f"/pipeline/{project_id}/status")).json()
    assert status["status"] == "in_progress"
    active = (await client.get("/pipeline/active")).json()
    assert [a["project_id"] for a in active] == [str(project_id)]


@pytest.mark.asyncio
async def test_start_from_wrong_stage_is_conflict(api, session_factory):
    client, _ = api
    project_id = await create_project(session_factory, stage="scheduled")

    resp = await client.post(f"/pipeline/{project_id}/start")

    assert resp.status_code == 409
    assert resp.json()["detail"]["code"] == "invalid_transition"


@pytest.mark.asyncio
async def test_unknown_project_and_missing_result(api):
    client, _ = api
    project_id = uuid4()

    assert (await client.post(f"/pipeline/{project_id}/start")).status_code == 404
    assert (await client.get(f"/pipeline/{project_id}/result")).status_code == 404
    status = (await client.get(f"/pipeline/{project_id}/status")).json()
    assert status["status"] == "not_started"


@pytest.mark.asyncio
async def test_review_for_non_review_stage_is_unprocessable(api, session_factory):
    client, _ = api
    project_id = await create_project(session_factory)

    resp = await client.post(
        f"/pipeline/{project_id}/review",
        json={"stage": "scheduling", "decision": "approved"},
    )

    assert resp.status_code == 422
    assert resp.json()["detail"]["code"] == "invalid_review_stage"


@pytest.mark.asyncio
async def test_cancel_without_a_run_reports_false(api, session_factory):
    client, _ = api
    project_id = await create_project(session_factory)

    resp = await client.post(f"/pipeline/{project_id}/cancel", json={"reason": "changed my mind"})

    assert resp.json() == {"project_id": str(project_id), "cancelled": False}


@pytest.mark.asyncio
async def test_scheduler_status_and_publish_now_conflict(api, session_factory):
    client, _ = api
    project_id = await create_project(session_factory, stage="posts_generated")

    status = (await client.get("/scheduler/status")).json()
    assert status["enabled"] is False
    assert status["pending_count"] == 0
    assert status["jobs"] == []

    resp = await client.post(f"/scheduler/projects/{project_id}/publish-now")
    assert resp.status_code == 409
