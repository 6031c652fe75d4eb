"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any

import structlog
from structlog.contextvars import (
    bind_contextvars,
    merge_contextvars,
)


def configure_logging(
    level: str = "INFO",
    json_format: bool = True,
    add_timestamps: bool = True,
) -> None:
    """Configure structured logging for the service.

    Standard library loggers (``logging.getLogger(__name__)``) and structlog
    loggers share one processor chain, so records from aiokafka, httpx and
    uvicorn come out in the same format as ours.

    Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR).
            json_format: Output logs as JSON (True) or human-readable (False).
            add_timestamps: Include timestamps in log output.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if add_timestamps:
        shared_processors.insert(
            1,  # After merge_contextvars
            structlog.processors.TimeStamper(fmt="iso", utc=True),
        )

    renderer: Any
    if json_format:
        renderer = structlog.processors.JSONRenderer(indent=None, sort_keys=True)
    else:
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(log_level)

    # aiokafka is chatty at INFO during rebalances
    logging.getLogger("aiokafka").setLevel(max(log_level, logging.WARNING))

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger instance.

    Args:
            name: Logger name (defaults to caller module).

    Returns:
            Configured structlog logger (BoundLogger).
    """
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context variables to the current context.

    These values will be included in all subsequent log messages
    within the same async context (each partition worker binds its
    topic and partition).

    Args:
            **kwargs: Key-value pairs to bind to context.
    """
    bind_contextvars(**kwargs)
