"""
Background job runner: one-shot jobs (enqueue / schedule_at) and recurring interval loops,
all as asyncio tasks inside the FastAPI process (started/stopped from lifespan).

Retry behaviour is an explicit RetryPolicy passed with each job, not metadata on the handler.
"""
import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Type

from content_orchestrator.errors import (
    EntityNotFound,
    ExternalCapabilityError,
    IllegalStateTransition,
    InvalidTransition,
    PipelineCancelled,
    ReviewTimeout,
)
from content_orchestrator.logging_config import get_logger

logger = get_logger(__name__)

JobFunc = Callable[..., Awaitable[Any]]
SleepFunc = Callable[[float], Awaitable[None]]

# Caller errors and human-gated outcomes: retrying cannot change the answer.
NEVER_RETRY: Tuple[Type[BaseException], ...] = (
    InvalidTransition,
    IllegalStateTransition,
    EntityNotFound,
    ReviewTimeout,
    PipelineCancelled,
)


def _no_delay(attempt: int) -> float:
    return 0.0


@dataclass(frozen=True)
class RetryPolicy:
    """
    max_attempts: total tries including the first.
    backoff(n): seconds to wait after failed attempt n (1-based) before the next one.
    """

    max_attempts: int = 1
    backoff: Callable[[int], float] = _no_delay
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    @classmethod
    def none(cls) -> "RetryPolicy":
        return cls(max_attempts=1)

    @classmethod
    def fixed(cls, delays_seconds: Sequence[float], **kwargs: Any) -> "RetryPolicy":
        """One retry per listed delay, e.g. fixed([60, 300, 900]) = 4 attempts."""
        delays = tuple(float(d) for d in delays_seconds)

        def backoff(attempt: int) -> float:
            if not delays:
                return 0.0
            return delays[min(attempt, len(delays)) - 1]

        return cls(max_attempts=len(delays) + 1, backoff=backoff, **kwargs)

    @classmethod
    def exponential(cls, max_attempts: int, base: float, unit_seconds: float = 1.0, **kwargs: Any) -> "RetryPolicy":
        """Delay after attempt n is base**n units."""

        def backoff(attempt: int) -> float:
            return (base ** attempt) * unit_seconds

        return cls(max_attempts=max_attempts, backoff=backoff, **kwargs)

    def delay_for(self, attempt: int) -> float:
        return max(0.0, float(self.backoff(attempt)))

    def should_retry(self, attempt: int, exc: BaseException) -> bool:
        if attempt >= self.max_attempts:
            return False
        if isinstance(exc, NEVER_RETRY):
            return False
        if isinstance(exc, ExternalCapabilityError) and not exc.retryable:
            return False
        return isinstance(exc, self.retry_on)


async def call_with_retry(
    policy: RetryPolicy,
    func: JobFunc,
    *args: Any,
    sleep: SleepFunc = asyncio.sleep,
    label: Optional[str] = None,
    **kwargs: Any,
) -> Any:
    """Run func under policy; the last error propagates once attempts are exhausted."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not policy.should_retry(attempt, e):
                raise
            delay = policy.delay_for(attempt)
            logger.warning(
                "retry.scheduled",
                label=label or getattr(func, "__name__", "call"),
                attempt=attempt,
                max_attempts=policy.max_attempts,
                delay_seconds=delay,
                error=str(e),
            )
            await sleep(delay)


@dataclass
class JobStatus:
    name: str
    kind: str
    running: bool = False
    runs: int = 0
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind,
            "running": self.running,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "last_error": self.last_error,
        }


@dataclass
class _RecurringJob:
    name: str
    interval_seconds: float
    func: JobFunc
    initial_delay_seconds: float = 0.0
    task: Optional["asyncio.Task[None]"] = None
    status: JobStatus = field(init=False)

    def __post_init__(self) -> None:
        self.status = JobStatus(name=self.name, kind="recurring")


class JobRunner:
    """enqueue(name, func), schedule_at(when, name, func), recurring(name, interval, func)."""

    def __init__(self, sleep: SleepFunc = asyncio.sleep) -> None:
        self._sleep = sleep
        self._jobs: Dict[str, "asyncio.Task[Any]"] = {}
        self._job_status: Dict[str, JobStatus] = {}
        self._recurring: Dict[str, _RecurringJob] = {}
        self._stop_event: Optional[asyncio.Event] = None
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def enqueue(
        self,
        name: str,
        func: JobFunc,
        *args: Any,
        policy: Optional[RetryPolicy] = None,
        **kwargs: Any,
    ) -> str:
        """Start func now as a background task; returns the job id."""
        job_id = f"{name}:{uuid.uuid4().hex[:12]}"
        self._job_status[job_id] = JobStatus(name=name, kind="one_shot")
        task = asyncio.create_task(self._run_job(job_id, None, func, args, kwargs, policy or RetryPolicy.none()))
        self._jobs[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._jobs.pop(jid, None))
        logger.info("job_runner.enqueued", job_id=job_id)
        return job_id

    def schedule_at(
        self,
        when: datetime,
        name: str,
        func: JobFunc,
        *args: Any,
        policy: Optional[RetryPolicy] = None,
        **kwargs: Any,
    ) -> str:
        """Run func once `when` (UTC) has passed."""
        job_id = f"{name}:{uuid.uuid4().hex[:12]}"
        self._job_status[job_id] = JobStatus(name=name, kind="scheduled")
        task = asyncio.create_task(self._run_job(job_id, when, func, args, kwargs, policy or RetryPolicy.none()))
        self._jobs[job_id] = task
        task.add_done_callback(lambda _t, jid=job_id: self._jobs.pop(jid, None))
        logger.info("job_runner.scheduled", job_id=job_id, run_at=when.isoformat())
        return job_id

    def recurring(
        self,
        name: str,
        interval_seconds: float,
        func: JobFunc,
        initial_delay_seconds: float = 0.0,
    ) -> None:
        """Register an interval loop; it starts with start() (or now, if already started)."""
        if name in self._recurring:
            raise ValueError("recurring_job_exists")
        job = _RecurringJob(
            name=name,
            interval_seconds=max(1.0, float(interval_seconds)),
            func=func,
            initial_delay_seconds=initial_delay_seconds,
        )
        self._recurring[name] = job
        if self._started:
            job.task = asyncio.create_task(self._recurring_loop(job))

    def cancel(self, job_id: str) -> bool:
        task = self._jobs.get(job_id)
        if task is None or task.done():
            return False
        task.cancel()
        return True

    async def start(self) -> None:
        if self._started:
            return
        self._stop_event = asyncio.Event()
        self._started = True
        for job in self._recurring.values():
            job.task = asyncio.create_task(self._recurring_loop(job))
        logger.info("job_runner.started", recurring=list(self._recurring))

    async def stop(self) -> None:
        """Stop recurring loops and cancel outstanding one-shot jobs."""
        if self._stop_event:
            self._stop_event.set()
        tasks = [j.task for j in self._recurring.values() if j.task] + list(self._jobs.values())
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        for job in self._recurring.values():
            job.task = None
            job.status.running = False
        self._jobs.clear()
        self._started = False
        logger.info("job_runner.stopped")

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the current one-shot jobs (jobs they enqueue included)."""
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while self._jobs:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            await asyncio.wait(list(self._jobs.values()), timeout=remaining)
            if deadline is not None and loop.time() >= deadline:
                break

    def status(self) -> List[JobStatus]:
        out = [j.status for j in self._recurring.values()]
        out.extend(s for jid, s in self._job_status.items() if jid in self._jobs)
        return out

    async def _run_job(
        self,
        job_id: str,
        when: Optional[datetime],
        func: JobFunc,
        args: tuple,
        kwargs: dict,
        policy: RetryPolicy,
    ) -> None:
        status = self._job_status[job_id]
        try:
            if when is not None:
                delay = (when - datetime.now(timezone.utc)).total_seconds()
                if delay > 0:
                    await self._sleep(delay)
            status.running = True
            status.last_run_at = datetime.now(timezone.utc)
            await call_with_retry(policy, func, *args, sleep=self._sleep, label=job_id, **kwargs)
            status.runs += 1
            logger.info("job_runner.completed", job_id=job_id)
        except asyncio.CancelledError:
            logger.info("job_runner.cancelled", job_id=job_id)
            raise
        except Exception as e:
            status.last_error = str(e)
            logger.error("job_runner.failed", job_id=job_id, error=str(e), error_type=type(e).__name__)
        finally:
            status.running = False
            self._job_status.pop(job_id, None)

    async def _recurring_loop(self, job: _RecurringJob) -> None:
        stop = self._stop_event
        if job.initial_delay_seconds and await self._wait_stop(stop, job.initial_delay_seconds):
            return
        while not stop.is_set():
            job.status.running = True
            job.status.last_run_at = datetime.now(timezone.utc)
            try:
                await job.func()
                job.status.runs += 1
                job.status.last_error = None
            except Exception as e:
                job.status.last_error = str(e)
                logger.warning("job_runner.recurring_error", job=job.name, error=str(e))
            finally:
                job.status.running = False
            if await self._wait_stop(stop, job.interval_seconds):
                return

    @staticmethod
    async def _wait_stop(stop: asyncio.Event, seconds: float) -> bool:
        """Sleep up to seconds; True if stop was requested meanwhile."""
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
            return True
        except asyncio.TimeoutError:
            return False
