"""Post model and its append-only publish records."""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, String, Text, UniqueConstraint, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from content_orchestrator.db import Base, UTCDateTime, utcnow
from content_orchestrator.state.review import PostStatus


class Post(Base):
    """
    Platform post generated from one insight.
    status: draft | needs_review | approved | scheduled | published | failed | archived.
    One post per (insight, platform).
    """

    __tablename__ = "posts"
    __table_args__ = (UniqueConstraint("insight_id", "platform", name="uq_posts_insight_platform"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    insight_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("insights.id", ondelete="CASCADE"),
        nullable=False,
    )
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), default=PostStatus.DRAFT.value, nullable=False)
    approved_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejected_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rejected_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    published_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    project = relationship("Project", back_populates="posts")
    insight = relationship("Insight", back_populates="posts")
    publish_records = relationship(
        "PostPublishRecord",
        back_populates="post",
        order_by="PostPublishRecord.published_at",
        passive_deletes=True,
    )


class PostPublishRecord(Base):
    """One successful platform publish of a post. Rows are only ever inserted."""

    __tablename__ = "post_publish_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    post_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("posts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    scheduled_post_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False)
    published_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)

    post = relationship("Post", back_populates="publish_records")


@event.listens_for(PostPublishRecord, "before_update")
def _publish_record_no_update(mapper, connection, target) -> None:
    raise ValueError("publish_record_immutable")


@event.listens_for(PostPublishRecord, "before_delete")
def _publish_record_no_delete(mapper, connection, target) -> None:
    raise ValueError("publish_record_immutable")
