"""Project model: aggregate root of the content lifecycle."""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from content_orchestrator.db import Base, UTCDateTime, utcnow
from content_orchestrator.state.lifecycle import ProjectStage, progress_for_state


class Project(Base):
    """
    Content project.
    stage: ProjectStage value; only changed through LifecycleService (version-checked).
    workflow_config: WorkflowConfig JSON. metrics: status-count snapshot (refresh_metrics).
    """

    __tablename__ = "projects"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    source_type: Mapped[str] = mapped_column(String(32), default="text", nullable=False)
    stage: Mapped[str] = mapped_column(
        String(32), default=ProjectStage.RAW_CONTENT.value, nullable=False, index=True
    )
    overall_progress: Mapped[int] = mapped_column(
        Integer, default=progress_for_state(ProjectStage.RAW_CONTENT), nullable=False
    )
    raw_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cleaned_content: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    workflow_config: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    metrics: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    last_activity_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    insights = relationship(
        "Insight", back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )
    posts = relationship(
        "Post", back_populates="project", cascade="all, delete-orphan", passive_deletes=True
    )

    __mapper_args__ = {"version_id_col": version}
