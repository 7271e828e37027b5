"""Utility modules for the passkey authentication service."""

from .logging_utils import (
    RequestLoggingMiddleware,
    get_client_ip,
    log_application_lifecycle,
    log_error_with_context,
    log_performance,
    log_security_event,
)

__all__ = [
    "RequestLoggingMiddleware",
    "get_client_ip",
    "log_application_lifecycle",
    "log_error_with_context",
    "log_performance",
    "log_security_event",
]
