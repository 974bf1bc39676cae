"""Project workflow configuration (stored as Project.workflow_config JSON)."""
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

SUPPORTED_PLATFORMS = ("linkedin", "x", "facebook")


class PublishingSchedule(BaseModel):
    """Preferred publishing cadence: first slot after start offset, then every spacing minutes."""

    start_offset_minutes: int = Field(default=60, ge=0)
    spacing_minutes: int = Field(default=240, ge=1)


class WorkflowConfig(BaseModel):
    insight_count_target: int = Field(default=5, ge=1, le=20)
    platforms: List[str] = Field(default_factory=lambda: ["linkedin", "x"])
    auto_approve_insights: bool = False
    auto_approve_posts: bool = False
    # False: the run stops at posts_approved and scheduling is left to the user.
    auto_schedule: bool = True
    schedule: PublishingSchedule = Field(default_factory=PublishingSchedule)

    @field_validator("platforms")
    @classmethod
    def _known_platforms(cls, v: List[str]) -> List[str]:
        out: List[str] = []
        for p in v:
            p = p.strip().lower()
            if p == "twitter":
                p = "x"
            if p not in SUPPORTED_PLATFORMS:
                raise ValueError(f"unsupported platform: {p}")
            if p not in out:
                out.append(p)
        if not out:
            raise ValueError("at least one platform required")
        return out

    @classmethod
    def from_json(cls, raw: Optional[Any]) -> "WorkflowConfig":
        if not raw:
            return cls()
        return cls.model_validate(raw)
