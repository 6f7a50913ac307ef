"""
release-spine logging - structured logging for pipeline runs.

Configures structlog once per process so every module logs dotted event
names with key/value context (``stage.started``, ``stage.retry``,
``run.finished``). Run-scoped fields such as ``run_id`` and ``pipeline``
are bound with :class:`LogContext` and merged into every event emitted
while the run is active.

Architecture:
    ::

        configure_logging(level="INFO", json_format=None)
            │
            ▼
        structlog processor chain:
          1. merge_contextvars      (run_id, pipeline, stage)
          2. TimeStamper(iso)
          3. add_log_level, logger name (bound lazily by get_logger)
          4. redact_secrets         (password/token/secret/... keys)
          5. JSONRenderer (non-tty) or ConsoleRenderer (tty)

Guardrails:
    ❌ DON'T: log credential values, even at DEBUG
    ✅ DO: wrap credentials in ``SecretValue``; the redaction processor is
       a second line, not the first

Tags:
    logging, structlog, observability, release-spine
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "release-spine"

REDACTED = "[REDACTED]"

_SECRET_KEY_MARKERS = ("password", "passwd", "secret", "token", "credential", "api_key", "private_key")


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def _add_logger_name(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Render the name bound by :func:`get_logger` as ``logger``."""
    name = event_dict.pop("logger_name", None)
    if name is not None:
        event_dict.setdefault("logger", name)
    return event_dict


def redact_secrets(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Replace values of secret-looking keys with ``[REDACTED]``."""
    for key in list(event_dict):
        lowered = key.lower()
        if any(marker in lowered for marker in _SECRET_KEY_MARKERS):
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "release-spine",
) -> None:
    """Configure structured logging for the process.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name included in every event
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stderr.isatty()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.add_log_level,
        _add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
        redact_secrets,
    ]

    if json_format:
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, level.upper()),
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    if name:
        # initial values on the lazy proxy; the wrapped logger is built per call
        return structlog.get_logger(logger_name=name)
    return structlog.get_logger()


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs on this thread/task."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove specific keys from logging context."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context."""
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(run_id="abc123", pipeline="web"):
            logger.info("stage.started", stage="build")
        # Context cleared here
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs

    def __enter__(self) -> LogContext:
        bind_context(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        unbind_context(*self._context.keys())


__all__ = [
    "LogContext",
    "REDACTED",
    "bind_context",
    "clear_context",
    "configure_logging",
    "get_logger",
    "redact_secrets",
    "unbind_context",
]
