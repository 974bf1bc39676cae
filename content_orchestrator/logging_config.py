"""structlog setup. Events are dotted (`publishing.item_published`) with key-value context."""
import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog

from content_orchestrator.config import get_settings

# Per-request HTTP lines from the platform clients and SQL echo are noise outside local runs.
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "openai")


def configure_logging(level_name: Optional[str] = None) -> None:
    """Console output locally, JSON lines elsewhere. Call once at startup."""
    settings = get_settings()
    level = getattr(logging, (level_name or settings.log_level).upper(), logging.INFO)
    local = settings.app_env == "local"

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer() if local else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    if not local:
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


@contextmanager
def log_context(**values: Any) -> Iterator[None]:
    """Bind values (project_id, scheduled_post_id, ...) to every log line inside the block."""
    clean = {k: str(v) for k, v in values.items() if v is not None}
    with structlog.contextvars.bound_contextvars(**clean):
        yield


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
