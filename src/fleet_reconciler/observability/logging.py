"""Structured logging configuration.

Features:
- JSON and text format support
- Reconcile correlation (reconcile_id, namespace, component)
- Service context injection
- Cluster API call logging helpers
"""

import logging
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from fleet_reconciler.config import LogFormat, LogLevel, get_settings

# Context variables for reconcile tracking
reconcile_id_var: ContextVar[str | None] = ContextVar("reconcile_id", default=None)
namespace_var: ContextVar[str | None] = ContextVar("namespace", default=None)
component_var: ContextVar[str | None] = ContextVar("component", default=None)


def add_service_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add service context to log events."""
    settings = get_settings()
    event_dict["service"] = settings.app_name
    event_dict["version"] = settings.app_version
    event_dict["environment"] = settings.environment.value
    return event_dict


def add_reconcile_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add reconcile context from context variables."""
    if reconcile_id := reconcile_id_var.get():
        event_dict["reconcile_id"] = reconcile_id
    if namespace := namespace_var.get():
        event_dict.setdefault("namespace", namespace)
    if component := component_var.get():
        event_dict["component"] = component
    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add ISO 8601 timestamp."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def setup_logging(
    log_level: LogLevel | None = None,
    log_format: LogFormat | None = None,
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Override log level (defaults to settings.log_level)
        log_format: Override log format (defaults to settings.log_format)
    """
    settings = get_settings()

    level = LogLevel(log_level or settings.log_level)
    fmt = LogFormat(log_format or settings.log_format)

    logging.basicConfig(
        level=getattr(logging, level.value),
        stream=sys.stdout,
        format="%(message)s",
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_timestamp,
        add_service_context,
        add_reconcile_context,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if fmt == LogFormat.JSON:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            ),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # The kubernetes client logs every request body at debug level
    logging.getLogger("kubernetes").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (defaults to module name)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)


class ReconcileContext:
    """Context manager for reconcile-scoped logging context.

    Usage:
        async with ReconcileContext(namespace="shoot--foo--bar", component="dependency-watchdog"):
            logger.info("Deploying")  # Includes namespace and component
    """

    def __init__(
        self,
        reconcile_id: str | None = None,
        namespace: str | None = None,
        component: str | None = None,
    ):
        self.reconcile_id = reconcile_id
        self.namespace = namespace
        self.component = component
        self._tokens: list[tuple[ContextVar[str | None], Any]] = []

    def __enter__(self) -> "ReconcileContext":
        for var, value in (
            (reconcile_id_var, self.reconcile_id),
            (namespace_var, self.namespace),
            (component_var, self.component),
        ):
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        for var, token in reversed(self._tokens):
            var.reset(token)
        self._tokens.clear()

    async def __aenter__(self) -> "ReconcileContext":
        return self.__enter__()

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


def log_api_call_start(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    kind: str,
    namespace: str,
    name: str,
) -> None:
    """Log start of a cluster API call."""
    logger.debug(
        "API call started",
        api_operation=operation,
        kind=kind,
        namespace=namespace,
        name=name,
    )


def log_api_call_end(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    kind: str,
    namespace: str,
    name: str,
    success: bool,
    duration_ms: float,
    error: str | None = None,
) -> None:
    """Log completion of a cluster API call."""
    log_data = {
        "api_operation": operation,
        "kind": kind,
        "namespace": namespace,
        "name": name,
        "success": success,
        "duration_ms": round(duration_ms, 2),
    }
    if error:
        log_data["error"] = error

    logger.debug("API call completed" if success else "API call failed", **log_data)
