"""Platform publishers (Facebook, LinkedIn, X) behind a registry."""
from content_orchestrator.config import Settings
from content_orchestrator.services.publishers.base import (
    HttpPublisher,
    PlatformPublisher,
    PublisherRegistry,
    PublishResult,
)
from content_orchestrator.services.publishers.facebook import FacebookPublisher
from content_orchestrator.services.publishers.linkedin import LinkedInPublisher
from content_orchestrator.services.publishers.x import XPublisher


def build_publisher_registry(settings: Settings) -> PublisherRegistry:
    """Registry with every supported platform; unconfigured ones fail with credentials_not_configured."""
    timeout = settings.publish_timeout_seconds
    return PublisherRegistry(
        [
            FacebookPublisher(
                page_id=settings.facebook_page_id,
                access_token=settings.facebook_access_token,
                api_version=settings.facebook_api_version,
                timeout=timeout,
            ),
            LinkedInPublisher(
                access_token=settings.linkedin_access_token,
                author_urn=settings.linkedin_author_urn,
                timeout=timeout,
            ),
            XPublisher(bearer_token=settings.x_bearer_token, timeout=timeout),
        ]
    )


__all__ = [
    "HttpPublisher",
    "PlatformPublisher",
    "PublisherRegistry",
    "PublishResult",
    "FacebookPublisher",
    "LinkedInPublisher",
    "XPublisher",
    "build_publisher_registry",
]
