# ==== STRUCTURED LOGGING WITH LOGURU ==== #

"""
Structured logging with loguru for the approval workflow service.

This module provides JSON logging, stdlib interception, trace correlation
and two helpers used by the engine: ``log_business_event`` for committed
workflow transitions and ``audit_log`` for failures on the notification
path that must leave a durable trace without failing the transition.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor


# ==== LOGGING INITIALIZATION ==== #


class InterceptHandler(logging.Handler):
    """Route standard library log records through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def init_logging(level: str = "INFO", log_dir: str | None = None) -> None:
    """Initialize structured logging with loguru.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Optional directory for rotated JSON log files
    """
    logger.remove()

    # Console handler with JSON formatting for production
    logger.add(
        sys.stdout,
        format="{message}",
        serialize=True,
        level=level.upper(),
        enqueue=True,
        colorize=False,
        backtrace=True,
        diagnose=False,
    )

    if log_dir:
        logs_path = Path(log_dir)
        logs_path.mkdir(parents=True, exist_ok=True)

        logger.add(
            logs_path / "approvals_{time:YYYY-MM-DD}.log",
            rotation="100 MB",
            retention="30 days",
            compression="gz",
            serialize=True,
            level="DEBUG",
            enqueue=True,
        )

        # Audit trail of notification failures is kept longer
        logger.add(
            logs_path / "approvals_audit_{time:YYYY-MM-DD}.log",
            rotation="50 MB",
            retention="180 days",
            compression="gz",
            serialize=True,
            level="INFO",
            enqueue=True,
            filter=lambda record: record["extra"].get("audit", False),
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    LoggingInstrumentor().instrument(set_logging_format=False)

    logger.info("Structured logging initialized", level=level)


# ==== CONTEXTUAL LOGGER ==== #


class ContextualLogger:
    """Logger wrapper that binds keyword context and the active trace ids."""

    def __init__(self, name: str):
        self.name = name
        self.logger = logger.bind(logger_name=name)

    def _add_context(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        context: Dict[str, Any] = {"logger_name": self.name}

        if extra:
            context.update(extra)

        span = trace.get_current_span()
        if span.is_recording():
            span_context = span.get_span_context()
            if span_context.is_valid:
                context["trace_id"] = format(span_context.trace_id, "032x")
                context["span_id"] = format(span_context.span_id, "016x")

        return context

    def debug(self, msg: str, **kwargs: Any) -> None:
        """Log debug message with context."""
        self.logger.bind(**self._add_context(kwargs)).debug(msg)

    def info(self, msg: str, **kwargs: Any) -> None:
        """Log info message with context."""
        self.logger.bind(**self._add_context(kwargs)).info(msg)

    def warning(self, msg: str, **kwargs: Any) -> None:
        """Log warning message with context."""
        self.logger.bind(**self._add_context(kwargs)).warning(msg)

    def error(self, msg: str, **kwargs: Any) -> None:
        """Log error message with context."""
        self.logger.bind(**self._add_context(kwargs)).error(msg)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log exception with full traceback and context."""
        self.logger.bind(**self._add_context(kwargs)).exception(msg)


# ==== LOGGING UTILITIES ==== #


def get_logger(name: str) -> ContextualLogger:
    """Get a contextual logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextualLogger instance
    """
    return ContextualLogger(name)


def log_business_event(event_type: str, tenant: str, **context: Any) -> None:
    """Log a committed workflow transition with structured data.

    Args:
        event_type: Type of business event (e.g. ``request_approved``)
        tenant: Tenant identifier
        **context: Additional business context
    """
    logger.bind(
        event_type=event_type,
        tenant=tenant,
        business_event=True,
        **context
    ).info(f"Business event: {event_type}")


def audit_log(entry_type: str, **context: Any) -> None:
    """Write an audit record for a failure that must not fail the caller.

    Args:
        entry_type: Kind of audit record (e.g. ``notification_failed``)
        **context: Record fields
    """
    logger.bind(
        audit=True,
        audit_type=entry_type,
        **context
    ).warning(f"Audit: {entry_type}")
