"""
Tiller Logging - structured logging for capability and saga execution.

Manifesto:
    Saga runs are long, multi-step and replayed; the only way to follow one
    after the fact is a consistent structured log.  This module provides:

    - **Standardizes:** one processor chain for runtime, orchestrator and CLI
    - **Correlates:** run_id, blueprint_id, capability_id and trace_id via
      contextvars
    - **Redacts:** values of secrets mounted for the current invocation are
      replaced with ``[REDACTED]`` in every event before rendering
    - **Flexes:** JSON for production, console renderer for development

Architecture:
    ::

        configure_logging(level="INFO", json_format=True, service="tiller")
            │
            ▼
        structlog processor chain:
            1. merge_contextvars
            2. add_log_level / add_logger_name
            3. TimeStamper(iso)
            4. add_service_metadata
            5. redact_secrets            ← active secret values scrubbed
            6. JSONRenderer | ConsoleRenderer

Examples:
    >>> from tiller.core.logging import configure_logging, get_logger
    >>> configure_logging(level="INFO", json_format=True)
    >>> logger = get_logger(__name__)
    >>> logger.info("saga.step.completed", capability_id="golden.k8s.apply")

Tags:
    logging, structlog, observability, redaction, tiller

Doc-Types:
    - API Reference
    - Observability Guide
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

REDACTED = "[REDACTED]"

_SERVICE_NAME = "tiller"

# Secret values mounted for the invocation running in this context.
_ACTIVE_SECRETS: ContextVar[tuple[str, ...]] = ContextVar("tiller_active_secrets", default=())


def _add_logger_name(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Name of the wrapped logger, when it has one (PrintLogger does not)."""
    name = getattr(logger, "name", None)
    if name:
        event_dict.setdefault("logger", name)
    return event_dict


def _add_service_metadata(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add service-level metadata to all logs."""
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def scrub(text: str, secrets: tuple[str, ...] | list[str] | None = None) -> str:
    """Replace every occurrence of a secret value in ``text``."""
    values = _ACTIVE_SECRETS.get() if secrets is None else secrets
    for value in sorted(values, key=len, reverse=True):
        if value:
            text = text.replace(value, REDACTED)
    return text


def scrub_value(value: Any, secrets: tuple[str, ...]) -> Any:
    """Recursively scrub secret values from strings inside ``value``."""
    if isinstance(value, str):
        return scrub(value, secrets)
    if isinstance(value, dict):
        return {k: scrub_value(v, secrets) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(scrub_value(v, secrets) for v in value)
    if isinstance(value, BaseException):
        return scrub(f"{type(value).__name__}: {value}", secrets)
    return value


def redact_secrets(
    logger: WrappedLogger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Scrub secret values registered with :func:`secret_scope` from an event."""
    secrets = _ACTIVE_SECRETS.get()
    if not secrets:
        return event_dict
    return {key: scrub_value(value, secrets) for key, value in event_dict.items()}


@contextmanager
def secret_scope(values: list[str] | tuple[str, ...]) -> Iterator[None]:
    """Register secret values for redaction for the duration of the block."""
    token = _ACTIVE_SECRETS.set(_ACTIVE_SECRETS.get() + tuple(v for v in values if v))
    try:
        yield
    finally:
        _ACTIVE_SECRETS.reset(token)


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "tiller",
    add_timestamp: bool = True,
) -> None:
    """Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_format: True for JSON, False for console, None for auto (JSON if not tty)
        service: Service name to include in logs
        add_timestamp: Include ISO timestamp in logs
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service

    if json_format is None:
        json_format = not sys.stdout.isatty()

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        _add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _add_service_metadata,
    ]

    if add_timestamp:
        shared_processors.insert(0, structlog.processors.TimeStamper(fmt="iso"))

    if json_format:
        shared_processors.append(structlog.processors.format_exc_info)
        shared_processors.append(redact_secrets)
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        shared_processors.append(redact_secrets)
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


def bind_context(**kwargs: Any) -> None:
    """Bind context to include in all subsequent logs in this context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


class LogContext:
    """Context manager for scoped logging context.

    Example:
        with LogContext(run_id="abc123", blueprint_id="blueprints.deploy.blue-green"):
            logger.info("saga.started")
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: Any = None

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)


__all__ = [
    "REDACTED",
    "configure_logging",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "LogContext",
    "redact_secrets",
    "secret_scope",
    "scrub",
    "scrub_value",
]
