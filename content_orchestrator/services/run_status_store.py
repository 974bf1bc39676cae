"""
Pipeline run cache: run status (24h), final result (7d), active-run set, review decisions
and cancellation markers. Redis when REDIS_URL is set (shared across processes), else an
in-memory store for single-process deployments and tests.

Values are pydantic models stored as JSON.
"""
import json
import time
from typing import Callable, Dict, List, Optional, Protocol, Tuple
from uuid import UUID

from content_orchestrator.config import Settings
from content_orchestrator.logging_config import get_logger
from content_orchestrator.schemas.pipeline import (
    PipelineResult,
    PipelineRunStatus,
    PipelineStage,
    ReviewSubmission,
)

logger = get_logger(__name__)

KEY_PREFIX = "pipeline:"
ACTIVE_KEY = KEY_PREFIX + "active"

StatusMutator = Callable[[PipelineRunStatus], None]


def status_key(project_id: UUID) -> str:
    return f"{KEY_PREFIX}status:{project_id}"


def result_key(project_id: UUID) -> str:
    return f"{KEY_PREFIX}result:{project_id}"


def review_key(project_id: UUID, stage: PipelineStage) -> str:
    return f"{KEY_PREFIX}review:{project_id}:{PipelineStage(stage).value}"


def cancel_key(project_id: UUID) -> str:
    return f"{KEY_PREFIX}cancel:{project_id}"


class RunStatusStore(Protocol):
    async def get_status(self, project_id: UUID) -> Optional[PipelineRunStatus]:
        ...

    async def set_status(self, status: PipelineRunStatus, ttl_seconds: int) -> None:
        ...

    async def update_status(
        self, project_id: UUID, mutate: StatusMutator, ttl_seconds: int
    ) -> Optional[PipelineRunStatus]:
        ...

    async def delete_status(self, project_id: UUID) -> None:
        ...

    async def get_result(self, project_id: UUID) -> Optional[PipelineResult]:
        ...

    async def set_result(self, result: PipelineResult, ttl_seconds: int) -> None:
        ...

    async def delete_result(self, project_id: UUID) -> None:
        ...

    async def add_active(self, project_id: UUID) -> None:
        ...

    async def remove_active(self, project_id: UUID) -> None:
        ...

    async def list_active(self) -> List[UUID]:
        ...

    async def set_review(self, project_id: UUID, review: ReviewSubmission, ttl_seconds: int) -> None:
        ...

    async def get_review(self, project_id: UUID, stage: PipelineStage) -> Optional[ReviewSubmission]:
        ...

    async def delete_review(self, project_id: UUID, stage: PipelineStage) -> None:
        ...

    async def set_cancelled(self, project_id: UUID, reason: str, ttl_seconds: int) -> None:
        ...

    async def get_cancelled(self, project_id: UUID) -> Optional[str]:
        ...

    async def clear_cancelled(self, project_id: UUID) -> None:
        ...

    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        ...


class MemoryRunStatusStore:
    """
    Single-process store. Reads and read-modify-writes never await, so each one is atomic
    on the event loop. Expired entries are dropped on read and swept on every write.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._data: Dict[str, Tuple[float, str]] = {}
        self._active: List[UUID] = []

    def _get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at <= self._clock():
            del self._data[key]
            return None
        return raw

    def _set(self, key: str, raw: str, ttl_seconds: int) -> None:
        now = self._clock()
        for stale in [k for k, (expires_at, _) in self._data.items() if expires_at <= now]:
            del self._data[stale]
        self._data[key] = (now + ttl_seconds, raw)

    async def get_status(self, project_id: UUID) -> Optional[PipelineRunStatus]:
        raw = self._get(status_key(project_id))
        return PipelineRunStatus.model_validate_json(raw) if raw else None

    async def set_status(self, status: PipelineRunStatus, ttl_seconds: int) -> None:
        self._set(status_key(status.project_id), status.model_dump_json(), ttl_seconds)

    async def update_status(
        self, project_id: UUID, mutate: StatusMutator, ttl_seconds: int
    ) -> Optional[PipelineRunStatus]:
        key = status_key(project_id)
        raw = self._get(key)
        if raw is None:
            return None
        status = PipelineRunStatus.model_validate_json(raw)
        mutate(status)
        self._set(key, status.model_dump_json(), ttl_seconds)
        return status

    async def delete_status(self, project_id: UUID) -> None:
        self._data.pop(status_key(project_id), None)

    async def get_result(self, project_id: UUID) -> Optional[PipelineResult]:
        raw = self._get(result_key(project_id))
        return PipelineResult.model_validate_json(raw) if raw else None

    async def set_result(self, result: PipelineResult, ttl_seconds: int) -> None:
        self._set(result_key(result.project_id), result.model_dump_json(), ttl_seconds)

    async def delete_result(self, project_id: UUID) -> None:
        self._data.pop(result_key(project_id), None)

    async def add_active(self, project_id: UUID) -> None:
        if project_id not in self._active:
            self._active.append(project_id)

    async def remove_active(self, project_id: UUID) -> None:
        if project_id in self._active:
            self._active.remove(project_id)

    async def list_active(self) -> List[UUID]:
        return list(self._active)

    async def set_review(self, project_id: UUID, review: ReviewSubmission, ttl_seconds: int) -> None:
        self._set(review_key(project_id, review.stage), review.model_dump_json(), ttl_seconds)

    async def get_review(self, project_id: UUID, stage: PipelineStage) -> Optional[ReviewSubmission]:
        raw = self._get(review_key(project_id, stage))
        return ReviewSubmission.model_validate_json(raw) if raw else None

    async def delete_review(self, project_id: UUID, stage: PipelineStage) -> None:
        self._data.pop(review_key(project_id, stage), None)

    async def set_cancelled(self, project_id: UUID, reason: str, ttl_seconds: int) -> None:
        self._set(cancel_key(project_id), reason, ttl_seconds)

    async def get_cancelled(self, project_id: UUID) -> Optional[str]:
        return self._get(cancel_key(project_id))

    async def clear_cancelled(self, project_id: UUID) -> None:
        self._data.pop(cancel_key(project_id), None)

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        self._data.clear()
        self._active.clear()


class RedisRunStatusStore:
    """
    Shared store on redis.asyncio. Status updates are read-modify-write under a Redis lock
    so the run-loop and a cancel from another process do not overwrite each other.
    """

    def __init__(self, redis_url: str, lock_timeout_seconds: float = 5.0, client=None) -> None:  # noqa: ANN001
        if client is None:
            from redis.asyncio import Redis

            client = Redis.from_url(redis_url, decode_responses=True)
        self._client = client
        self._lock_timeout = lock_timeout_seconds

    async def _get_model(self, key: str, model):  # noqa: ANN001, ANN202
        raw = await self._client.get(key)
        return model.model_validate_json(raw) if raw else None

    async def get_status(self, project_id: UUID) -> Optional[PipelineRunStatus]:
        return await self._get_model(status_key(project_id), PipelineRunStatus)

    async def set_status(self, status: PipelineRunStatus, ttl_seconds: int) -> None:
        await self._client.setex(status_key(status.project_id), ttl_seconds, status.model_dump_json())

    async def update_status(
        self, project_id: UUID, mutate: StatusMutator, ttl_seconds: int
    ) -> Optional[PipelineRunStatus]:
        key = status_key(project_id)
        async with self._client.lock(key + ":lock", timeout=self._lock_timeout, blocking_timeout=self._lock_timeout):
            status = await self._get_model(key, PipelineRunStatus)
            if status is None:
                return None
            mutate(status)
            await self._client.setex(key, ttl_seconds, status.model_dump_json())
            return status

    async def delete_status(self, project_id: UUID) -> None:
        await self._client.delete(status_key(project_id))

    async def get_result(self, project_id: UUID) -> Optional[PipelineResult]:
        return await self._get_model(result_key(project_id), PipelineResult)

    async def set_result(self, result: PipelineResult, ttl_seconds: int) -> None:
        await self._client.setex(result_key(result.project_id), ttl_seconds, result.model_dump_json())

    async def delete_result(self, project_id: UUID) -> None:
        await self._client.delete(result_key(project_id))

    async def add_active(self, project_id: UUID) -> None:
        await self._client.sadd(ACTIVE_KEY, str(project_id))

    async def remove_active(self, project_id: UUID) -> None:
        await self._client.srem(ACTIVE_KEY, str(project_id))

    async def list_active(self) -> List[UUID]:
        members = await self._client.smembers(ACTIVE_KEY)
        return sorted(UUID(m) for m in members)

    async def set_review(self, project_id: UUID, review: ReviewSubmission, ttl_seconds: int) -> None:
        await self._client.setex(review_key(project_id, review.stage), ttl_seconds, review.model_dump_json())

    async def get_review(self, project_id: UUID, stage: PipelineStage) -> Optional[ReviewSubmission]:
        return await self._get_model(review_key(project_id, stage), ReviewSubmission)

    async def delete_review(self, project_id: UUID, stage: PipelineStage) -> None:
        await self._client.delete(review_key(project_id, stage))

    async def set_cancelled(self, project_id: UUID, reason: str, ttl_seconds: int) -> None:
        await self._client.setex(cancel_key(project_id), ttl_seconds, json.dumps({"reason": reason}))

    async def get_cancelled(self, project_id: UUID) -> Optional[str]:
        raw = await self._client.get(cancel_key(project_id))
        if raw is None:
            return None
        return json.loads(raw).get("reason") or "cancelled"

    async def clear_cancelled(self, project_id: UUID) -> None:
        await self._client.delete(cancel_key(project_id))

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except Exception as e:
            logger.warning("run_status_store.ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        await self._client.aclose()


def build_run_status_store(settings: Settings) -> RunStatusStore:
    if settings.redis_url:
        logger.info("run_status_store.backend", backend="redis")
        return RedisRunStatusStore(settings.redis_url)
    logger.info("run_status_store.backend", backend="memory")
    return MemoryRunStatusStore()
