"""
Run progress notifications. The logging sink is the default; the webhook sink POSTs
{project_id, stage, progress, message} to PROGRESS_WEBHOOK_URL (e.g. an n8n workflow).
Timeout from PROGRESS_WEBHOOK_TIMEOUT_SECONDS, retry 1. Errors are logged, never raised.
"""
from typing import Optional, Protocol
from uuid import UUID

import httpx

from content_orchestrator.config import Settings
from content_orchestrator.logging_config import get_logger

logger = get_logger(__name__)

WEBHOOK_RETRIES = 1


class ProgressSink(Protocol):
    async def publish(self, project_id: UUID, stage: str, progress: int, message: Optional[str] = None) -> None:
        ...


class LoggingProgressSink:
    async def publish(self, project_id: UUID, stage: str, progress: int, message: Optional[str] = None) -> None:
        logger.info("pipeline.progress", project_id=str(project_id), stage=stage, progress=progress, message=message)


class WebhookProgressSink:
    def __init__(
        self,
        url: str,
        timeout_seconds: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.url = url
        self.timeout = max(1.0, min(10.0, timeout_seconds))
        self._transport = transport

    async def publish(self, project_id: UUID, stage: str, progress: int, message: Optional[str] = None) -> None:
        body = {"project_id": str(project_id), "stage": stage, "progress": progress, "message": message}
        for attempt in range(WEBHOOK_RETRIES + 1):
            try:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.post(self.url, json=body)
                if resp.status_code < 400:
                    logger.debug("progress_webhook.sent", project_id=str(project_id), stage=stage)
                    return
                logger.warning(
                    "progress_webhook.failed",
                    project_id=str(project_id),
                    attempt=attempt + 1,
                    status=resp.status_code,
                    body=resp.text[:300],
                )
            except Exception as e:
                logger.warning("progress_webhook.error", project_id=str(project_id), attempt=attempt + 1, error=str(e))


def build_progress_sink(settings: Settings) -> ProgressSink:
    url = (settings.progress_webhook_url or "").strip()
    if not url:
        return LoggingProgressSink()
    return WebhookProgressSink(url, timeout_seconds=settings.progress_webhook_timeout_seconds)
