"""RetryPolicy, call_with_retry and the in-process JobRunner."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from content_orchestrator.errors import ExternalCapabilityError, InvalidTransition
from content_orchestrator.services.job_runner import JobRunner, RetryPolicy, call_with_retry
from content_orchestrator.state.lifecycle import ProjectStage, ProjectTrigger


class Sleeps:
    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


class Flaky:
    def __init__(self, failures: int, error: Exception) -> None:
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self, value: str = "done") -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return value


def test_fixed_policy_has_one_retry_per_delay():
    policy = RetryPolicy.fixed([60, 300, 900])
    assert policy.max_attempts == 4
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [60.0, 300.0, 900.0]


def test_exponential_policy():
    policy = RetryPolicy.exponential(3, base=2.0, unit_seconds=1.0)
    assert [policy.delay_for(n) for n in (1, 2)] == [2.0, 4.0]


def test_should_retry_rules():
    policy = RetryPolicy.fixed([1, 1], retry_on=(ExternalCapabilityError, OSError))
    assert policy.should_retry(1, ExternalCapabilityError("completion", "503"))
    assert not policy.should_retry(1, ExternalCapabilityError("completion", "bad key", retryable=False))
    assert not policy.should_retry(1, InvalidTransition(ProjectStage.RAW_CONTENT, ProjectTrigger.FAIL))
    assert not policy.should_retry(1, ValueError("no_insights_extracted"))
    assert not policy.should_retry(3, OSError("reset"))


@pytest.mark.asyncio
async def test_call_with_retry_recovers_from_transient_errors():
    sleeps = Sleeps()
    func = Flaky(2, ExternalCapabilityError("completion", "timeout"))

    result = await call_with_retry(RetryPolicy.fixed([60, 300, 900]), func, "ok", sleep=sleeps)

    assert result == "ok"
    assert func.calls == 3
    assert sleeps.delays == [60.0, 300.0]


@pytest.mark.asyncio
async def test_call_with_retry_gives_up_after_max_attempts():
    sleeps = Sleeps()
    func = Flaky(10, ExternalCapabilityError("completion", "timeout"))

    with pytest.raises(ExternalCapabilityError):
        await call_with_retry(RetryPolicy.exponential(3, base=2.0), func, sleep=sleeps)

    assert func.calls == 3
    assert sleeps.delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_caller_errors_are_never_retried():
    func = Flaky(1, InvalidTransition(ProjectStage.RAW_CONTENT, ProjectTrigger.FAIL))

    with pytest.raises(InvalidTransition):
        await call_with_retry(RetryPolicy.fixed([1, 1, 1]), func, sleep=Sleeps())
    assert func.calls == 1


@pytest.mark.asyncio
async def test_enqueued_job_retries_under_policy():
    sleeps = Sleeps()
    runner = JobRunner(sleep=sleeps)
    func = Flaky(1, OSError("connection reset"))

    job_id = runner.enqueue("generate_posts", func, policy=RetryPolicy.fixed([5]))
    await runner.join(timeout=5)

    assert job_id.startswith("generate_posts:")
    assert func.calls == 2
    assert sleeps.delays == [5.0]
    assert runner.status() == []


@pytest.mark.asyncio
async def test_failed_job_is_logged_not_raised():
    runner = JobRunner(sleep=Sleeps())
    func = Flaky(5, ValueError("raw_content_empty"))

    runner.enqueue("pipeline", func)
    await runner.join(timeout=5)

    assert func.calls == 1


@pytest.mark.asyncio
async def test_recurring_job_runs_until_stopped():
    runner = JobRunner()
    ticks = []

    async def tick() -> None:
        ticks.append(1)

    runner.recurring("publishing_sweep", 1, tick)
    with pytest.raises(ValueError, match="recurring_job_exists"):
        runner.recurring("publishing_sweep", 1, tick)
    await runner.start()
    await asyncio.sleep(0.05)
    statuses = {s.name: s for s in runner.status()}
    await runner.stop()

    assert ticks == [1]
    assert statuses["publishing_sweep"].runs == 1
    assert statuses["publishing_sweep"].kind == "recurring"
    assert not runner.started


@pytest.mark.asyncio
async def test_cancel_one_shot_job():
    runner = JobRunner()
    started = asyncio.Event()

    async def long_job() -> None:
        started.set()
        await asyncio.sleep(60)

    job_id = runner.enqueue("pipeline", long_job)
    await started.wait()

    assert runner.cancel(job_id) is True
    await runner.join(timeout=1)
    assert runner.cancel(job_id) is False


@pytest.mark.asyncio
async def test_schedule_at_waits_until_due():
    sleeps = Sleeps()
    runner = JobRunner(sleep=sleeps)
    done = []

    async def job(tag: str) -> None:
        done.append(tag)

    runner.schedule_at(datetime.now(timezone.utc) + timedelta(hours=1), "reminder", job, "later")
    runner.schedule_at(datetime.now(timezone.utc) - timedelta(minutes=1), "reminder", job, "overdue")
    await runner.join(timeout=5)

    assert sorted(done) == ["later", "overdue"]
    assert len(sleeps.delays) == 1
    assert 3500 < sleeps.delays[0] <= 3600
