"""X (Twitter) publishing via API v2 /tweets with a user-context bearer token."""
from typing import Optional
from uuid import UUID

import httpx

from content_orchestrator.logging_config import get_logger
from content_orchestrator.services.publishers.base import HTTP_TIMEOUT, HttpPublisher, PublishResult

logger = get_logger(__name__)

X_API_BASE = "https://api.twitter.com/2"


class XPublisher(HttpPublisher):
    platform = "x"

    def __init__(
        self,
        bearer_token: Optional[str],
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.bearer_token = bearer_token

    @property
    def is_configured(self) -> bool:
        return bool(self.bearer_token)

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return super()._client(
            base_url=X_API_BASE,
            headers={"Authorization": f"Bearer {self.bearer_token}"},
            **kwargs,
        )

    async def publish(self, content: str, post_id: Optional[UUID] = None) -> PublishResult:
        self._require_configured()
        async with self._client() as client:
            resp = await client.post("/tweets", json={"text": content})
        if resp.status_code >= 400:
            raise self._error(resp)
        data = resp.json().get("data") or {}
        external_id = str(data.get("id") or "")
        if not external_id:
            raise self._error(resp)
        logger.info("x_publish.success", post_id=str(post_id) if post_id else None, external_id=external_id)
        return PublishResult(
            platform=self.platform,
            external_id=external_id,
            url=f"https://x.com/i/web/status/{external_id}",
        )

    async def _probe(self) -> bool:
        async with self._client() as client:
            resp = await client.get("/users/me")
        return resp.status_code == 200
