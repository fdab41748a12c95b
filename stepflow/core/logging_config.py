"""Structured logging configuration using structlog.

Engine modules only call ``structlog.get_logger(__name__)``. A host process
calls ``setup_logging()`` once to route those loggers through a stdlib
handler: readable console lines in development or text mode, one JSON
object per line otherwise. Every line logged inside ``run_context()``
carries the run id.
"""

import logging
import sys
from typing import IO, Optional

import structlog

from stepflow.config import get_settings

ENGINE_LOGGER = "stepflow"
HANDLER_NAME = "stepflow"


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]


def _final_processors(log_format: str, colors: bool) -> list:
    processors: list = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if log_format == "text":
        processors.append(structlog.dev.ConsoleRenderer(colors=colors))
    else:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer(sort_keys=True))
    return processors


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    stream: Optional[IO[str]] = None,
    root: bool = True,
) -> logging.Handler:
    """Install the engine's log handler and return it.

    Args:
        log_level: Overrides STEPFLOW_LOG_LEVEL.
        log_format: "json" or "text". Defaults to text in development and
            to STEPFLOW_LOG_FORMAT elsewhere.
        stream: Destination of log lines (stdout by default).
        root: Replace the root logger's handlers so host and library logs
            share the format. With False only the ``stepflow`` logger tree
            gets the handler and stops propagating.
    """
    settings = get_settings()
    level = getattr(logging, (log_level or settings.LOG_LEVEL).upper(), logging.INFO)
    log_format = (log_format or ("text" if settings.is_development else settings.LOG_FORMAT)).lower()
    stream = stream or sys.stdout
    colors = bool(getattr(stream, "isatty", lambda: False)())

    shared_processors = _shared_processors()
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.set_name(HANDLER_NAME)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=_final_processors(log_format, colors),
            foreign_pre_chain=shared_processors,
        )
    )

    # Per-node trace lines are debug events
    engine_logger = logging.getLogger(ENGINE_LOGGER)
    engine_logger.setLevel(logging.DEBUG if settings.TRACE_LOGS else level)

    if root:
        root_logger = logging.getLogger()
        root_logger.handlers.clear()
        root_logger.addHandler(handler)
        root_logger.setLevel(level)
        engine_logger.propagate = True
    else:
        engine_logger.handlers = [h for h in engine_logger.handlers if h.get_name() != HANDLER_NAME]
        engine_logger.addHandler(handler)
        engine_logger.propagate = False

    logging.getLogger("asyncio").setLevel(logging.WARNING)
    return handler


def run_context(run_id: str, **extra):
    """Bind run identifiers for the duration of a ``with`` block.

    Keys the caller already bound are restored on exit; the rest of the
    caller's context is left alone.
    """
    return structlog.contextvars.bound_contextvars(run_id=run_id, **extra)
