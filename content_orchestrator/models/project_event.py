"""Audit log model: review, publishing and pipeline events."""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from content_orchestrator.db import Base, UTCDateTime, utcnow


class ProjectEvent(Base):
    """
    Audit log for project activity: insight_approved, post_rejected, post_published,
    post_publish_failed, pipeline_failed, ...
    entity_id points at the insight/post/scheduled post the event is about (nullable).
    """

    __tablename__ = "project_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    entity_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
