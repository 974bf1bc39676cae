"""Map domain errors (ValueError codes) to HTTP errors."""
from fastapi import HTTPException, status

from content_orchestrator.errors import (
    EntityNotFound,
    ExternalCapabilityError,
    IllegalStateTransition,
    InvalidTransition,
    OrchestratorError,
    PipelineCancelled,
    StoreConflict,
)

CONFLICT_CODES = {"pipeline_already_running"}
UNPROCESSABLE_CODES = {"invalid_review_stage", "invalid_review_kind"}


def to_http_exception(e: ValueError) -> HTTPException:
    """404 not found, 409 state conflicts, 422 bad input, 503 external capability down."""
    if isinstance(e, EntityNotFound):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, (InvalidTransition, IllegalStateTransition, StoreConflict, PipelineCancelled)):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, ExternalCapabilityError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
    elif str(e) in CONFLICT_CODES:
        code = status.HTTP_409_CONFLICT
    elif str(e) in UNPROCESSABLE_CODES:
        code = status.HTTP_422_UNPROCESSABLE_ENTITY
    else:
        code = status.HTTP_400_BAD_REQUEST
    if isinstance(e, OrchestratorError):
        return HTTPException(status_code=code, detail=e.to_dict())
    return HTTPException(status_code=code, detail={"code": str(e), "detail": str(e)})
