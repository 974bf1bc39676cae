"""Scheduled post: execution record for one (post, platform) publish."""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from content_orchestrator.db import Base, UTCDateTime, utcnow


class ScheduledPostStatus(str, Enum):
    PENDING = "pending"
    PUBLISHING = "publishing"
    REPUBLISHING = "republishing"
    PUBLISHED = "published"
    FAILED = "failed"
    RETRY = "retry"
    CANCELLED = "cancelled"


# Eligible for the next sweep once scheduled_time is due.
DUE_STATUSES = (ScheduledPostStatus.PENDING.value, ScheduledPostStatus.RETRY.value)
# Claimed by a worker, external call in flight.
IN_FLIGHT_STATUSES = (ScheduledPostStatus.PUBLISHING.value, ScheduledPostStatus.REPUBLISHING.value)
OUTSTANDING_STATUSES = DUE_STATUSES + IN_FLIGHT_STATUSES


class ScheduledPost(Base):
    """
    post_id / project_id are plain ids (no FK): history survives post deletion.
    retry_count is incremented when an attempt is claimed, before the external call.
    """

    __tablename__ = "scheduled_posts"
    __table_args__ = (Index("ix_scheduled_posts_status_time", "status", "scheduled_time"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    post_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[str] = mapped_column(
        String(32), default=ScheduledPostStatus.PENDING.value, nullable=False
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    external_post_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
