"""Lifecycle history: one immutable row per fired trigger."""
import uuid
from datetime import datetime

from sqlalchemy import String, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column

from content_orchestrator.db import Base, UTCDateTime, utcnow


class StageTransition(Base):
    """project_id has no FK so the audit trail outlives the project row."""

    __tablename__ = "stage_transitions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    project_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    from_stage: Mapped[str] = mapped_column(String(32), nullable=False)
    to_stage: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger: Mapped[str] = mapped_column(String(32), nullable=False)
    actor: Mapped[str] = mapped_column(String(64), nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


@event.listens_for(StageTransition, "before_update")
def _transition_no_update(mapper, connection, target) -> None:
    raise ValueError("stage_transition_immutable")


@event.listens_for(StageTransition, "before_delete")
def _transition_no_delete(mapper, connection, target) -> None:
    raise ValueError("stage_transition_immutable")
