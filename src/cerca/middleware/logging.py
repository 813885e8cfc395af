"""structlog setup shared by the API and the recompute command.

Request-scoped keys (``request_id``, ``method``, ``path``) are bound by
:class:`cerca.middleware.request_id.RequestContextMiddleware` and merged
into every record through the contextvars processor.
"""

import logging
from typing import Any

import structlog

from cerca.config import Settings

# Chatty third-party loggers kept at WARNING unless the root level is stricter.
_QUIET_LOGGERS = ("uvicorn.access", "aiosqlite", "httpx", "httpcore")


def _add_service(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:  # noqa: ANN401
    event_dict.setdefault("service", "cerca")
    return event_dict


def setup_logging(settings: Settings) -> None:
    """Configure structlog for JSON in deployed environments and console output locally."""
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if settings.log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=settings.environment == "development")
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            _add_service,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(message)s")
    logging.getLogger("cerca").setLevel(level)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.log_sql else logging.WARNING)
