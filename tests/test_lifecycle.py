"""Project lifecycle: transition table, progress, persisted transitions and version conflicts."""
import uuid
from unittest.mock import patch

import pytest
from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from content_orchestrator.errors import EntityNotFound, InvalidTransition, StoreConflict
from content_orchestrator.models import Project
from content_orchestrator.services.lifecycle_service import LifecycleService
from content_orchestrator.state.lifecycle import (
    IN_FLIGHT_STAGES,
    ProjectLifecycle,
    ProjectStage,
    ProjectTrigger,
    can_fire,
    fire,
    permitted_triggers,
    progress_for_state,
)
from tests.conftest import create_insight, create_project

S = ProjectStage
T = ProjectTrigger

HAPPY_PATH = [
    (T.START_PROCESSING, S.PROCESSING_CONTENT),
    (T.COMPLETE_PROCESSING, S.INSIGHTS_READY),
    (T.APPROVE_INSIGHTS, S.INSIGHTS_APPROVED),
    (T.GENERATE_POSTS, S.POSTS_GENERATED),
    (T.APPROVE_POSTS, S.POSTS_APPROVED),
    (T.SCHEDULE_POSTS, S.SCHEDULED),
    (T.START_PUBLISHING, S.PUBLISHING),
    (T.COMPLETE_PUBLISHING, S.PUBLISHED),
]


def test_happy_path_reaches_published_with_full_history():
    lc = ProjectLifecycle()
    for trigger, expected in HAPPY_PATH:
        record = lc.fire(trigger, actor="tester")
        assert record.to_stage is expected
        assert lc.stage is expected
    assert lc.progress == 100
    assert [r.trigger for r in lc.history] == [t for t, _ in HAPPY_PATH]
    assert lc.history[0].from_stage is S.RAW_CONTENT


def test_invalid_trigger_raises_and_leaves_stage_unchanged():
    lc = ProjectLifecycle(stage=S.INSIGHTS_READY)
    with pytest.raises(InvalidTransition) as exc_info:
        lc.fire(T.SCHEDULE_POSTS)
    assert lc.stage is S.INSIGHTS_READY
    assert lc.history == ()
    assert str(exc_info.value) == "invalid_transition"
    assert exc_info.value.stage is S.INSIGHTS_READY
    assert exc_info.value.trigger is T.SCHEDULE_POSTS


@pytest.mark.parametrize("stage", sorted(IN_FLIGHT_STAGES, key=lambda s: s.value))
def test_fail_permitted_from_every_in_flight_stage(stage):
    assert fire(stage, T.FAIL) is S.FAILED


@pytest.mark.parametrize("stage", [S.RAW_CONTENT, S.PUBLISHED, S.FAILED, S.ARCHIVED])
def test_fail_not_permitted_outside_in_flight_stages(stage):
    assert not can_fire(stage, T.FAIL)


def test_recovery_paths():
    assert fire(S.FAILED, T.RETRY) is S.RAW_CONTENT
    assert fire(S.FAILED, T.REPROCESS) is S.PROCESSING_CONTENT
    assert fire(S.POSTS_APPROVED, T.PUBLISH_NOW) is S.PUBLISHING
    assert fire(S.PUBLISHED, T.ARCHIVE) is S.ARCHIVED
    assert fire(S.ARCHIVED, T.RESTORE) is S.RAW_CONTENT
    assert not can_fire(S.ARCHIVED, T.ARCHIVE)


def test_permitted_triggers_for_posts_approved():
    assert set(permitted_triggers(S.POSTS_APPROVED)) == {T.SCHEDULE_POSTS, T.PUBLISH_NOW, T.FAIL, T.ARCHIVE}


def test_progress_values():
    assert progress_for_state(S.RAW_CONTENT) == 10
    assert progress_for_state(S.POSTS_APPROVED) == 70
    assert progress_for_state(S.FAILED) == 0
    assert progress_for_state(S.ARCHIVED) == 100


# --- persisted ---


@pytest.mark.asyncio
async def test_transition_persists_stage_progress_and_history(session_factory, clock):
    project_id = await create_project(session_factory)
    lifecycle = LifecycleService(session_factory, clock=clock)

    stage = await lifecycle.transition(project_id, T.START_PROCESSING, actor="alice")

    assert stage is S.PROCESSING_CONTENT
    async with session_factory() as db:
        project = await db.get(Project, project_id)
        assert project.stage == "processing_content"
        assert project.overall_progress == 20
        assert project.last_activity_at == clock.now
        assert project.version == 2
    history = await lifecycle.history(project_id)
    assert [(h.from_stage, h.to_stage, h.trigger, h.actor) for h in history] == [
        ("raw_content", "processing_content", "start_processing", "alice")
    ]


@pytest.mark.asyncio
async def test_invalid_transition_writes_nothing(session_factory):
    project_id = await create_project(session_factory)
    lifecycle = LifecycleService(session_factory)

    with pytest.raises(InvalidTransition):
        await lifecycle.transition(project_id, T.APPROVE_POSTS)

    assert await lifecycle.get_stage(project_id) is S.RAW_CONTENT
    assert await lifecycle.history(project_id) == []


@pytest.mark.asyncio
async def test_fail_records_error_and_reprocess_clears_it(session_factory):
    project_id = await create_project(session_factory, stage="insights_ready")
    lifecycle = LifecycleService(session_factory)

    await lifecycle.transition(project_id, T.FAIL, error="completion down")
    async with session_factory() as db:
        assert (await db.get(Project, project_id)).last_error == "completion down"

    await lifecycle.transition(project_id, T.REPROCESS)
    async with session_factory() as db:
        project = await db.get(Project, project_id)
        assert project.stage == "processing_content"
        assert project.last_error is None


@pytest.mark.asyncio
async def test_advance_is_noop_outside_only_from(session_factory):
    project_id = await create_project(session_factory, stage="insights_approved")
    lifecycle = LifecycleService(session_factory)

    assert await lifecycle.advance(project_id, T.APPROVE_INSIGHTS, only_from={S.INSIGHTS_READY}) is None
    assert await lifecycle.get_stage(project_id) is S.INSIGHTS_APPROVED
    assert await lifecycle.history(project_id) == []


@pytest.mark.asyncio
async def test_unknown_project_raises_not_found(session_factory):
    lifecycle = LifecycleService(session_factory)

    with pytest.raises(EntityNotFound):
        await lifecycle.transition(uuid.uuid4(), T.START_PROCESSING)


@pytest.mark.asyncio
async def test_concurrent_write_is_detected_by_version(session_factory):
    project_id = await create_project(session_factory)

    async with session_factory() as first:
        stale = await first.get(Project, project_id)
        async with session_factory() as second:
            fresh = await second.get(Project, project_id)
            fresh.name = "renamed elsewhere"
            await second.commit()
        stale.stage = "processing_content"
        with pytest.raises(StaleDataError):
            await first.commit()


@pytest.mark.asyncio
async def test_conflict_is_retried_then_applied(session_factory):
    project_id = await create_project(session_factory)
    lifecycle = LifecycleService(session_factory, max_conflict_retries=3)
    real_apply = lifecycle._apply_once
    calls = []

    async def flaky(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StaleDataError("version mismatch")
        return await real_apply(*args, **kwargs)

    with patch.object(lifecycle, "_apply_once", side_effect=flaky):
        stage = await lifecycle.transition(project_id, T.START_PROCESSING)

    assert stage is S.PROCESSING_CONTENT
    assert len(calls) == 2
    assert len(await lifecycle.history(project_id)) == 1


@pytest.mark.asyncio
async def test_conflict_exhausted_raises_store_conflict(session_factory):
    project_id = await create_project(session_factory)
    lifecycle = LifecycleService(session_factory, max_conflict_retries=3)

    with patch.object(lifecycle, "_apply_once", side_effect=StaleDataError("version mismatch")) as apply_once:
        with pytest.raises(StoreConflict) as exc_info:
            await lifecycle.transition(project_id, T.START_PROCESSING)

    assert apply_once.call_count == 3
    assert exc_info.value.attempts == 3
    assert await lifecycle.get_stage(project_id) is S.RAW_CONTENT


@pytest.mark.asyncio
async def test_refresh_metrics_counts_statuses(session_factory):
    project_id = await create_project(session_factory, stage="insights_ready")
    await create_insight(session_factory, project_id, status="needs_review", title="A")
    await create_insight(session_factory, project_id, status="needs_review", title="B")
    await create_insight(session_factory, project_id, status="approved", title="C")
    lifecycle = LifecycleService(session_factory)

    metrics = await lifecycle.refresh_metrics(project_id)

    assert metrics["insights"] == {"needs_review": 2, "approved": 1}
    assert metrics["posts"] == {}
    assert metrics["last_published_at"] is None
    async with session_factory() as db:
        r = await db.execute(select(Project.metrics).where(Project.id == project_id))
        assert r.scalar_one()["insights"]["approved"] == 1
