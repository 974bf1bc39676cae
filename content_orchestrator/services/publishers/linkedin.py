"""LinkedIn publishing via the UGC posts API (w_member_social scope)."""
from typing import Optional
from uuid import UUID

import httpx

from content_orchestrator.logging_config import get_logger
from content_orchestrator.services.publishers.base import HTTP_TIMEOUT, HttpPublisher, PublishResult

logger = get_logger(__name__)

LINKEDIN_API_BASE = "https://api.linkedin.com/v2"


class LinkedInPublisher(HttpPublisher):
    platform = "linkedin"

    def __init__(
        self,
        access_token: Optional[str],
        author_urn: Optional[str],
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(timeout=timeout, transport=transport)
        self.access_token = access_token
        self.author_urn = author_urn

    @property
    def is_configured(self) -> bool:
        return bool(self.access_token and self.author_urn)

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return super()._client(
            base_url=LINKEDIN_API_BASE,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "X-Restli-Protocol-Version": "2.0.0",
            },
            **kwargs,
        )

    async def publish(self, content: str, post_id: Optional[UUID] = None) -> PublishResult:
        self._require_configured()
        payload = {
            "author": self.author_urn,
            "lifecycleState": "PUBLISHED",
            "specificContent": {
                "com.linkedin.ugc.ShareContent": {
                    "shareCommentary": {"text": content},
                    "shareMediaCategory": "NONE",
                }
            },
            "visibility": {"com.linkedin.ugc.MemberNetworkVisibility": "PUBLIC"},
        }
        async with self._client() as client:
            resp = await client.post("/ugcPosts", json=payload)
        if resp.status_code >= 400:
            raise self._error(resp)
        external_id = resp.headers.get("x-restli-id") or ""
        if not external_id:
            try:
                external_id = str(resp.json().get("id") or "")
            except ValueError:
                external_id = ""
        if not external_id:
            raise self._error(resp)
        logger.info("linkedin_publish.success", post_id=str(post_id) if post_id else None, external_id=external_id)
        return PublishResult(
            platform=self.platform,
            external_id=external_id,
            url=f"https://www.linkedin.com/feed/update/{external_id}",
        )

    async def _probe(self) -> bool:
        async with self._client() as client:
            resp = await client.get("/me")
        return resp.status_code == 200
