"""
Logging Configuration for the Retail Fulfillment Core

Structured logging routed through the standard library. Every event carries
the application name and environment; events emitted inside
`operation_context` also carry the boundary operation and its attempt
number, so a retried order placement reads as one story in the logs.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Dict, Iterator, Optional

import structlog
from structlog.processors import JSONRenderer, TimeStamper
from structlog.stdlib import add_log_level, ProcessorFormatter

from fulfillment.config.settings import Settings, get_settings

# Third-party loggers that are noisy at INFO
QUIET_LIBRARIES = ("httpx", "httpcore", "redis", "aiosqlite", "asyncio")


def _app_context(settings: Settings):
    def add_app_context(logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        event_dict.setdefault("app", settings.app_name)
        event_dict.setdefault("env", settings.app_env)
        return event_dict

    return add_app_context


def _library_levels(settings: Settings, numeric_level: int) -> Dict[str, int]:
    levels = {name: max(numeric_level, logging.WARNING) for name in QUIET_LIBRARIES}
    # SQLAlchemy echoes through its own loggers
    levels["sqlalchemy.engine"] = logging.INFO if settings.database.echo else logging.WARNING
    return levels


def configure_logging(log_level: Optional[str] = None) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Override log level (DEBUG, INFO, WARNING, ERROR)
    """
    settings = get_settings()
    level = log_level or settings.monitoring.log_level
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors = [
        structlog.contextvars.merge_contextvars,
        _app_context(settings),
        structlog.stdlib.add_logger_name,
        add_log_level,
        TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    structlog.configure(
        processors=shared_processors + [ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if settings.monitoring.log_format == "json":
        renderer = JSONRenderer(sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ProcessorFormatter(processor=renderer, foreign_pre_chain=shared_processors))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(numeric_level)

    for name, library_level in _library_levels(settings, numeric_level).items():
        logging.getLogger(name).setLevel(library_level)

    get_logger(__name__).info(
        "Logging configured",
        level=level,
        format=settings.monitoring.log_format,
    )


@contextmanager
def operation_context(operation: str, **fields: Any) -> Iterator[None]:
    """Bind the boundary operation to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(operation=operation, **fields):
        yield


def get_logger(name: str):
    """Get a logger instance with the given name."""
    return structlog.get_logger(name)
