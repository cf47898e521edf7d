"""Observability module for structured logging."""

from .logging import (
    ReconcileContext,
    component_var,
    get_logger,
    log_api_call_end,
    log_api_call_start,
    namespace_var,
    reconcile_id_var,
    setup_logging,
)

__all__ = [
    # Setup
    "setup_logging",
    "get_logger",
    # Context
    "ReconcileContext",
    "reconcile_id_var",
    "namespace_var",
    "component_var",
    # Logging helpers
    "log_api_call_start",
    "log_api_call_end",
]
