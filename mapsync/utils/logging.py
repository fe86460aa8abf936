"""
Structured logging configuration using structlog.
"""

import logging
import sys
import time
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.typing import Processor


def setup_logging(log_level: str = "INFO") -> None:
    """Configure structured logging for the sync engine."""

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    # Development: colored console output
    # Production: JSON output
    if sys.stderr.isatty():
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True)
        ]
    else:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer()
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance with optional name binding."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(module=name)
    return logger


class LoggerMixin:
    """Mixin class to add logging to any class."""

    @property
    def log(self) -> structlog.BoundLogger:
        """Get a logger bound to this class name."""
        if not hasattr(self, "_logger"):
            self._logger = get_logger(self.__class__.__name__)
        return self._logger


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """Context manager to add context to all log messages in scope."""
    return structlog.contextvars.bound_contextvars(**kwargs)


@contextmanager
def timed(
    logger: structlog.BoundLogger,
    event: str,
    slow_ms: Optional[float] = None,
    **fields: Any,
) -> Iterator[dict]:
    """Log how long the block took; warn when it exceeds ``slow_ms``.

    The yielded dict can be filled with extra fields (e.g. result counts)
    that end up on the completion log line.
    """
    extra: dict = {}
    start = time.perf_counter()
    try:
        yield extra
    finally:
        elapsed_ms = round((time.perf_counter() - start) * 1000, 1)
        if slow_ms is not None and elapsed_ms > slow_ms:
            logger.warning(f"Slow {event}", elapsed_ms=elapsed_ms, **fields, **extra)
        else:
            logger.debug(f"{event} completed", elapsed_ms=elapsed_ms, **fields, **extra)
