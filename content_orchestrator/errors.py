"""
Domain errors. Each carries a short snake_case `code` (str(err) == code) so routers
and logs can match on it the same way as plain ValueError("code") errors.
"""
from typing import Any, Optional


class OrchestratorError(ValueError):
    """Base error; `code` is the machine-readable reason, `detail` the human message."""

    code = "orchestrator_error"

    def __init__(self, detail: Optional[str] = None, **context: Any) -> None:
        self.detail = detail or self.code
        self.context = context
        super().__init__(self.code)

    def to_dict(self) -> dict:
        out = {"code": self.code, "detail": self.detail}
        if self.context:
            out["context"] = {k: str(v) for k, v in self.context.items()}
        return out


class InvalidTransition(OrchestratorError):
    """Lifecycle trigger not permitted from the current stage."""

    code = "invalid_transition"

    def __init__(self, stage: Any, trigger: Any) -> None:
        self.stage = stage
        self.trigger = trigger
        super().__init__(
            f"trigger {_value(trigger)!r} not permitted from stage {_value(stage)!r}",
            stage=_value(stage),
            trigger=_value(trigger),
        )


class IllegalStateTransition(OrchestratorError):
    """Review action not permitted from the entity's current status."""

    code = "illegal_state_transition"

    def __init__(self, current_status: Any, action: Any, entity: str = "entity") -> None:
        self.current_status = current_status
        self.action = action
        self.entity = entity
        super().__init__(
            f"cannot {_value(action)} {entity} in status {_value(current_status)!r}",
            entity=entity,
            current_status=_value(current_status),
            action=_value(action),
        )


class EntityNotFound(OrchestratorError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any) -> None:
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found", entity=entity, entity_id=entity_id)


class ExternalCapabilityError(OrchestratorError):
    """Completion or platform call failed (after the caller's retry policy, if any)."""

    code = "external_capability_failed"

    def __init__(self, capability: str, detail: str, retryable: bool = True) -> None:
        self.capability = capability
        self.retryable = retryable
        super().__init__(f"{capability}: {detail}", capability=capability)


class ReviewTimeout(OrchestratorError):
    code = "review_timeout"

    def __init__(self, project_id: Any, stage: Any, timeout_seconds: float) -> None:
        self.project_id = project_id
        self.stage = stage
        super().__init__(
            f"no review decision for {_value(stage)} within {timeout_seconds:g}s",
            project_id=project_id,
            stage=_value(stage),
        )


class PipelineCancelled(OrchestratorError):
    code = "pipeline_cancelled"

    def __init__(self, project_id: Any, reason: Optional[str] = None) -> None:
        self.project_id = project_id
        self.reason = reason
        super().__init__(reason or "pipeline cancelled", project_id=project_id)


class StoreConflict(OrchestratorError):
    """Optimistic write lost the race after all conflict retries."""

    code = "store_conflict"

    def __init__(self, entity: str, entity_id: Any, attempts: int) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(
            f"{entity} {entity_id} changed concurrently ({attempts} attempts)",
            entity=entity,
            entity_id=entity_id,
        )


def _value(v: Any) -> Any:
    return getattr(v, "value", v)
