"""HTTP middleware."""
from content_orchestrator.middleware.correlation_id import CorrelationIdMiddleware

__all__ = ["CorrelationIdMiddleware"]
