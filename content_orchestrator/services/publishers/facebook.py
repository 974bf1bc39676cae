"""Facebook Page publishing via Graph API (/{page_id}/feed)."""
from typing import Optional
from uuid import UUID

import httpx

from content_orchestrator.logging_config import get_logger
from content_orchestrator.services.publishers.base import HTTP_TIMEOUT, HttpPublisher, PublishResult

logger = get_logger(__name__)

GRAPH_BASE = "https://graph.facebook.com"


class FacebookPublisher(HttpPublisher):
    platform = "facebook"

    def __init__(
        self,
        page_id: Optional[str],
        access_token: Optional[str],
        api_version: str = "v20.0",
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.page_id = page_id
        self.access_token = access_token
        self.api_version = api_version

    @property
    def is_configured(self) -> bool:
        return bool(self.page_id and self.access_token)

    async def publish(self, content: str, post_id: Optional[UUID] = None) -> PublishResult:
        self._require_configured()
        url = f"{GRAPH_BASE}/{self.api_version}/{self.page_id}/feed"
        async with self._client() as client:
            resp = await client.post(url, data={"message": content, "access_token": self.access_token})
        if resp.status_code >= 400:
            raise self._error(resp)
        external_id = str(resp.json().get("id") or "")
        if not external_id:
            raise self._error(resp)
        logger.info("facebook_publish.success", post_id=str(post_id) if post_id else None, external_id=external_id)
        return PublishResult(
            platform=self.platform,
            external_id=external_id,
            url=f"https://www.facebook.com/{external_id}",
        )

    async def _probe(self) -> bool:
        url = f"{GRAPH_BASE}/{self.api_version}/{self.page_id}"
        async with self._client() as client:
            resp = await client.get(url, params={"fields": "id,name", "access_token": self.access_token})
        return resp.status_code == 200
