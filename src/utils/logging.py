"""Structured logging for migration runs, built on structlog."""

import logging
import sys
from typing import Any, MutableMapping, Optional

import structlog

# Event keys whose values identify a person and are masked before rendering.
MASKED_KEYS = frozenset({"email", "user_email"})


def mask_personal_data(
    _logger: Any, _method: str, event_dict: MutableMapping[str, Any]
) -> MutableMapping[str, Any]:
    """Mask e-mail addresses so user records can be logged during a run.

    ``alice@example.com`` becomes ``a***@example.com``.
    """
    for key in MASKED_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and "@" in value:
            local, _, domain = value.partition("@")
            event_dict[key] = f"{local[:1]}***@{domain}"
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    correlation_id: Optional[str] = None,
) -> structlog.BoundLogger:
    """Configure structured logging for the migrator.

    Log lines go to stderr so that CLI reports written to stdout stay clean.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: 'json' for machine-readable lines, anything else for console output
        correlation_id: Bound to every log line of this run when given

    Returns:
        Logger named ``migrator``
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            mask_personal_data,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    if correlation_id:
        structlog.contextvars.bind_contextvars(correlation_id=correlation_id)

    return structlog.get_logger("migrator")


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Return a structlog logger, named after the component when ``name`` is given."""
    return structlog.get_logger(name) if name else structlog.get_logger()


def bind_operation(operation_id: str, operation: str) -> None:
    """Attach the running orchestrator operation to all subsequent log lines.

    Args:
        operation_id: Operation identifier
        operation: Operation name (migration, health_check, rollback, ...)
    """
    structlog.contextvars.bind_contextvars(operation_id=operation_id, operation=operation)


def unbind_operation() -> None:
    """Remove the operation context bound by :func:`bind_operation`."""
    structlog.contextvars.unbind_contextvars("operation_id", "operation")
