"""Logging utilities for application-wide structured logging.

This module provides decorators, middleware, and helpers that add timing,
security context and error context to the logs of every ceremony step.
"""

import asyncio
from contextvars import ContextVar
from datetime import datetime, timezone
import functools
import os
import time
import traceback
from typing import Any, Callable, Dict, Optional
import uuid

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from passkey_auth.managers.logging_manager import get_logger

# Context variables for request tracing
request_id_context: ContextVar[str] = ContextVar("request_id", default="")

SLOW_OPERATION_SECONDS = 2.0
SLOW_REQUEST_SECONDS = 1.0

SENSITIVE_KEYS = {
    "password",
    "token",
    "secret",
    "key",
    "auth",
    "credential",
    "private",
    "hash",
    "signature",
    "assertion",
    "registration",
}


def get_client_ip(request: Request) -> str:
    """Extract client IP address from request headers."""
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip

    return getattr(request.client, "host", "unknown")


def _host_fields() -> Dict[str, Any]:
    return {
        "process": os.getpid(),
        "host": os.getenv("HOSTNAME", "unknown"),
        "app": os.getenv("APP_NAME", "Passkey_Auth"),
        "env": os.getenv("ENV", "dev"),
    }


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Request/response logging middleware for FastAPI.

    Logs every incoming request and outgoing response with a short request id,
    timing and status code.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)
        self.logger = get_logger(name="Passkey_Auth_Requests", prefix="[REQUEST]")

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        token = request_id_context.set(request_id)
        start_time = time.time()

        client_ip = get_client_ip(request)
        method = request.method
        path = str(request.url.path)

        self.logger.info(
            {
                "event": "request_received",
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "request_id": request_id,
                "method": method,
                "path": path,
                "client_ip": client_ip,
                "user_agent": request.headers.get("user-agent", "unknown"),
                **_host_fields(),
            }
        )

        try:
            response = await call_next(request)
        except Exception as e:
            self.logger.error(
                {
                    "event": "request_error",
                    "request_id": request_id,
                    "method": method,
                    "path": path,
                    "duration": time.time() - start_time,
                    "exception": str(e),
                    "stack_trace": traceback.format_exc(),
                    **_host_fields(),
                }
            )
            raise
        finally:
            request_id_context.reset(token)

        duration = time.time() - start_time
        response_log = {
            "event": "response_sent",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "request_id": request_id,
            "method": method,
            "path": path,
            "status_code": response.status_code,
            "duration": duration,
            "client_ip": client_ip,
            **_host_fields(),
        }
        self.logger.info(response_log)

        if duration > SLOW_REQUEST_SECONDS:
            self.logger.warning({**response_log, "event": "slow_request"})

        response.headers["X-Request-ID"] = request_id
        return response


def log_performance(operation_name: str, log_args: bool = False):
    """
    Decorator for logging function/method performance with timing.

    Args:
        operation_name: Name of the operation for logging
        log_args: Whether to log function arguments (sanitized)
    """

    def decorator(func: Callable) -> Callable:
        logger = get_logger(name="Passkey_Auth_Performance", prefix="[PERFORMANCE]")

        def _start(args, kwargs) -> str:
            operation_id = str(uuid.uuid4())[:8]
            if log_args and (args or kwargs):
                logger.info("[%s] Starting %s with args: %s", operation_id, operation_name, _sanitize_args(args, kwargs))
            else:
                logger.info("[%s] Starting %s", operation_id, operation_name)
            return operation_id

        def _finish(operation_id: str, start_time: float) -> None:
            duration = time.time() - start_time
            logger.info("[%s] Completed %s in %.3fs", operation_id, operation_name, duration)
            if duration > SLOW_OPERATION_SECONDS:
                logger.warning("[%s] SLOW OPERATION: %s took %.3fs", operation_id, operation_name, duration)

        def _fail(operation_id: str, start_time: float, error: Exception) -> None:
            logger.error(
                "[%s] Failed %s after %.3fs: %s",
                operation_id,
                operation_name,
                time.time() - start_time,
                type(error).__name__,
            )

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _fail(operation_id, start_time, e)
                raise
            _finish(operation_id, start_time)
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs):
            start_time = time.time()
            operation_id = _start(args, kwargs)
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _fail(operation_id, start_time, e)
                raise
            _finish(operation_id, start_time)
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def log_security_event(
    event_type: str,
    user_id: Optional[str] = None,
    ip_address: Optional[str] = None,
    success: bool = True,
    details: Optional[Dict[str, Any]] = None,
):
    """
    Log security-related events with proper context.

    Args:
        event_type: Type of security event (passkey_registration_completed, ...)
        user_id: User identifier if available
        ip_address: Client IP address if available
        success: Whether the security event was successful
        details: Additional event details, sanitized before logging
    """
    logger = get_logger(name="Passkey_Auth_Security", prefix="[SECURITY]")

    event_data = {
        "event_type": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "success": success,
        "user_id": user_id or "anonymous",
        "ip_address": ip_address or "unknown",
        "request_id": request_id_context.get() or None,
    }

    if details:
        event_data["details"] = _sanitize_security_details(details)

    status = "SUCCESS" if success else "FAILURE"
    logger.info("SECURITY EVENT [%s]: %s - %s", status, event_type, event_data)


def log_application_lifecycle(event: str, details: Optional[Dict[str, Any]] = None):
    """
    Log application lifecycle events (startup, shutdown, etc.).

    Args:
        event: Lifecycle event name
        details: Additional event details
    """
    logger = get_logger(name="Passkey_Auth_Lifecycle", prefix="[LIFECYCLE]")

    event_data = {"event": event, "timestamp": datetime.now(timezone.utc).isoformat()}
    if details:
        event_data.update(details)

    logger.info("APPLICATION LIFECYCLE: %s - %s", event, event_data)


def log_error_with_context(error: Exception, context: Optional[Dict[str, Any]] = None, operation: Optional[str] = None):
    """
    Log errors with full context and stack trace.

    Args:
        error: The exception that occurred
        context: Additional context information
        operation: Name of the operation that failed
    """
    logger = get_logger(name="Passkey_Auth_Errors", prefix="[ERROR]")

    error_data = {
        "error_type": type(error).__name__,
        "error_message": str(error),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id_context.get() or None,
        "stack_trace": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }

    if operation:
        error_data["operation"] = operation

    if context:
        error_data["context"] = _sanitize_args((), context)

    logger.error("ERROR OCCURRED: %s", error_data)


def _is_sensitive(name: str) -> bool:
    lowered = name.lower()
    return any(key in lowered for key in SENSITIVE_KEYS)


def _truncate(value: Any, limit: int = 100) -> str:
    text = str(value)
    return text[:limit] + ("..." if len(text) > limit else "")


def _sanitize_args(args: tuple, kwargs: dict) -> dict:
    """
    Sanitize function arguments to avoid logging sensitive data.

    Positional arguments are truncated; keyword arguments whose name looks
    sensitive are replaced with "<REDACTED>".
    """
    sanitized: Dict[str, Any] = {}

    if args:
        sanitized["args"] = ["<REDACTED>" if _is_sensitive(str(arg)) else _truncate(arg) for arg in args]

    if kwargs:
        sanitized["kwargs"] = {
            key: "<REDACTED>" if _is_sensitive(key) else _truncate(value) for key, value in kwargs.items()
        }

    return sanitized


def _sanitize_security_details(details: Dict[str, Any]) -> Dict[str, Any]:
    """Replace values of sensitive-looking keys with "<REDACTED>"."""
    return {key: "<REDACTED>" if _is_sensitive(key) else value for key, value in details.items()}
