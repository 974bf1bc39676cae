"""Insight model: scored idea extracted from a project's content."""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from content_orchestrator.db import Base, UTCDateTime, utcnow
from content_orchestrator.state.review import InsightStatus


def overall_score(urgency: int, relatability: int, specificity: int, authority: int) -> int:
    """Mean of the four scores, rounded half up."""
    return (urgency + relatability + specificity + authority + 2) // 4


class Insight(Base):
    """
    Insight. status: draft | needs_review | approved | rejected | archived.
    Scores are 1-10; overall_score is derived on write.
    """

    __tablename__ = "insights"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("projects.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(512), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default=InsightStatus.DRAFT.value, nullable=False)
    urgency_score: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    relatability_score: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    specificity_score: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    authority_score: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    overall_score: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    reviewed_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    archived_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    project = relationship("Project", back_populates="insights")
    posts = relationship("Post", back_populates="insight", passive_deletes=True)

    def set_scores(self, urgency: int, relatability: int, specificity: int, authority: int) -> None:
        self.urgency_score = urgency
        self.relatability_score = relatability
        self.specificity_score = specificity
        self.authority_score = authority
        self.overall_score = overall_score(urgency, relatability, specificity, authority)
