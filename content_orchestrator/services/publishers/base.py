"""Platform publish capability: protocol, result type and registry."""
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Protocol, runtime_checkable
from uuid import UUID

import httpx

from content_orchestrator.errors import ExternalCapabilityError
from content_orchestrator.logging_config import get_logger

logger = get_logger(__name__)

HTTP_TIMEOUT = 30.0


@dataclass(frozen=True)
class PublishResult:
    platform: str
    external_id: str
    url: Optional[str] = None


@runtime_checkable
class PlatformPublisher(Protocol):
    platform: str

    async def publish(self, content: str, post_id: Optional[UUID] = None) -> PublishResult:
        ...

    async def test_connection(self) -> bool:
        ...


class HttpPublisher:
    """Shared httpx plumbing: one AsyncClient per call, error body -> ExternalCapabilityError."""

    platform = "unknown"

    def __init__(
        self,
        timeout: float = HTTP_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return False

    def _client(self, **kwargs) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, **kwargs)

    def _require_configured(self) -> None:
        if not self.is_configured:
            raise ExternalCapabilityError(f"publish:{self.platform}", "credentials_not_configured", retryable=False)

    def _error(self, resp: httpx.Response) -> ExternalCapabilityError:
        try:
            body = resp.json()
            err = body.get("error") if isinstance(body, dict) else None
            if isinstance(err, dict):
                detail = err.get("message") or resp.text
            else:
                detail = (body.get("message") or body.get("detail") or resp.text) if isinstance(body, dict) else resp.text
        except ValueError:
            detail = resp.text or f"HTTP {resp.status_code}"
        # 4xx other than rate limiting will not get better by retrying
        retryable = resp.status_code >= 500 or resp.status_code == 429
        return ExternalCapabilityError(
            f"publish:{self.platform}",
            f"status={resp.status_code} {str(detail)[:300]}",
            retryable=retryable,
        )

    async def test_connection(self) -> bool:
        if not self.is_configured:
            return False
        try:
            return await self._probe()
        except httpx.HTTPError as e:
            logger.warning("publisher.test_connection_error", platform=self.platform, error=str(e))
            return False

    async def _probe(self) -> bool:
        raise NotImplementedError


class PublisherRegistry:
    """platform name -> publisher. 'twitter' is accepted as an alias of 'x'."""

    def __init__(self, publishers: Iterable[PlatformPublisher] = ()) -> None:
        self._publishers: Dict[str, PlatformPublisher] = {}
        for p in publishers:
            self.register(p)

    def register(self, publisher: PlatformPublisher) -> None:
        self._publishers[publisher.platform.lower()] = publisher

    @staticmethod
    def _key(platform: str) -> str:
        key = (platform or "").lower()
        return "x" if key == "twitter" else key

    def get(self, platform: str) -> PlatformPublisher:
        publisher = self._publishers.get(self._key(platform))
        if publisher is None:
            raise ExternalCapabilityError(f"publish:{platform}", "unsupported_platform", retryable=False)
        return publisher

    @property
    def platforms(self) -> list:
        return sorted(self._publishers)

    async def publish(self, platform: str, content: str, post_id: Optional[UUID] = None) -> PublishResult:
        publisher = self.get(platform)
        try:
            return await publisher.publish(content, post_id)
        except ExternalCapabilityError:
            raise
        except httpx.TimeoutException as e:
            raise ExternalCapabilityError(f"publish:{platform}", f"timeout: {e}") from e
        except httpx.HTTPError as e:
            raise ExternalCapabilityError(f"publish:{platform}", str(e)) from e

    async def test_connection(self, platform: str) -> bool:
        try:
            publisher = self.get(platform)
        except ExternalCapabilityError:
            return False
        return await publisher.test_connection()
