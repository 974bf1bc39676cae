"""
Review-wait for the pipeline run-loop.

The waiter suspends on an asyncio.Event per (project, stage) that submit_review sets, and
re-checks the shared run store every check interval so decisions or cancellations made
by another process are seen too. A CancellationToken ends the wait at once.
"""
import asyncio
import time
from typing import Callable, Dict, Optional, Tuple
from uuid import UUID

from content_orchestrator.errors import PipelineCancelled, ReviewTimeout
from content_orchestrator.logging_config import get_logger
from content_orchestrator.schemas.pipeline import PipelineStage, ReviewSubmission
from content_orchestrator.services.run_status_store import RunStatusStore

logger = get_logger(__name__)


class CancellationToken:
    """One per pipeline run. cancel() is sticky; the first reason wins."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self, project_id: UUID) -> None:
        if self._event.is_set():
            raise PipelineCancelled(project_id, self.reason)


class ReviewWaiter:
    def __init__(
        self,
        store: RunStatusStore,
        timeout_seconds: float = 86400.0,
        check_interval_seconds: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self.timeout_seconds = timeout_seconds
        self.check_interval_seconds = max(0.01, check_interval_seconds)
        self._clock = clock
        self._events: Dict[Tuple[UUID, PipelineStage], asyncio.Event] = {}

    def notify(self, project_id: UUID, stage: PipelineStage) -> None:
        """Wake a local waiter for (project, stage), if any."""
        event = self._events.get((project_id, PipelineStage(stage)))
        if event is not None:
            event.set()

    async def wait_for_decision(
        self,
        project_id: UUID,
        stage: PipelineStage,
        token: CancellationToken,
        timeout_seconds: Optional[float] = None,
    ) -> ReviewSubmission:
        """Block until a decision is stored; PipelineCancelled / ReviewTimeout otherwise."""
        stage = PipelineStage(stage)
        timeout = self.timeout_seconds if timeout_seconds is None else timeout_seconds
        key = (project_id, stage)
        event = self._events.setdefault(key, asyncio.Event())
        deadline = self._clock() + timeout
        logger.info("review_wait.started", project_id=str(project_id), stage=stage.value, timeout_seconds=timeout)
        try:
            while True:
                event.clear()
                token.raise_if_cancelled(project_id)
                decision = await self._store.get_review(project_id, stage)
                if decision is not None:
                    logger.info(
                        "review_wait.decided",
                        project_id=str(project_id),
                        stage=stage.value,
                        decision=decision.decision.value,
                    )
                    return decision
                reason = await self._store.get_cancelled(project_id)
                if reason is not None:
                    token.cancel(reason)
                    token.raise_if_cancelled(project_id)
                remaining = deadline - self._clock()
                if remaining <= 0:
                    logger.warning("review_wait.timeout", project_id=str(project_id), stage=stage.value)
                    raise ReviewTimeout(project_id, stage, timeout)
                await self._wait_any(event, token, min(self.check_interval_seconds, remaining))
        finally:
            if self._events.get(key) is event:
                del self._events[key]

    @staticmethod
    async def _wait_any(event: asyncio.Event, token: CancellationToken, timeout: float) -> None:
        waiters = [asyncio.ensure_future(event.wait()), asyncio.ensure_future(token.wait())]
        try:
            await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()
