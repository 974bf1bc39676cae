"""Scheduler (publishing engine) API schemas."""
from typing import Dict, List, Optional

from pydantic import BaseModel


class JobStatusOut(BaseModel):
    name: str
    kind: str
    running: bool
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None


class SchedulerStatusResponse(BaseModel):
    """GET /scheduler/status."""

    enabled: bool
    interval_seconds: int
    last_tick_at: Optional[str] = None
    pending_count: Optional[int] = None
    status_counts: Dict[str, int] = {}
    jobs: List[JobStatusOut] = []


class SweepResponse(BaseModel):
    """POST /scheduler/sweep and /scheduler/retry-failed."""

    selected: int
    published: int
    retried: int
    failed: int
    skipped: int
