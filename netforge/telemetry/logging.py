"""
Netforge -- Structured Logging

All logging via structlog. Every log entry includes system context, and every
line emitted during a lifecycle operation carries its operation id.
"""

from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from netforge.config import LoggingConfig


def setup_logging(config: LoggingConfig) -> None:
    """
    Configure structured logging for the entire application.
    """
    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: Any
    if config.format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))

    # Quiet noisy libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def bind_operation(operation_id: str, operation: str, **extra: Any) -> None:
    """
    Bind the lifecycle operation to the logging context.

    Everything logged from the current task (and tasks it spawns) carries
    ``operation_id`` and ``operation`` until ``clear_operation`` is called.
    """
    structlog.contextvars.bind_contextvars(
        operation_id=operation_id,
        operation=operation,
        **extra,
    )


def clear_operation() -> None:
    structlog.contextvars.unbind_contextvars("operation_id", "operation", "node_id")
