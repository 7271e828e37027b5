"""
Main application module for the passkey authentication API.

This module sets up the FastAPI application with lifespan management, the
database connection, request logging, error rendering and routing. Errors
are always rendered as ``{"error": message, "code": code}``; stack traces
never reach the client.
"""

from contextlib import asynccontextmanager
import time

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

from passkey_auth import __version__
from passkey_auth.config import build_relying_party, settings
from passkey_auth.database import db_manager
from passkey_auth.errors import PasskeyError
from passkey_auth.managers.logging_manager import get_logger
from passkey_auth.routes import main_router, passkeys_router
from passkey_auth.utils.logging_utils import (
    RequestLoggingMiddleware,
    log_application_lifecycle,
    log_error_with_context,
)

logger = get_logger()


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """
    Application lifespan manager.

    Connects to MongoDB and ensures indexes on startup, disconnects on
    shutdown. Startup fails if the database cannot be reached.
    """
    startup_start_time = time.time()
    relying_party = build_relying_party(settings)

    log_application_lifecycle(
        "startup_initiated",
        {
            "app_name": settings.APP_NAME,
            "version": __version__,
            "environment": "production" if settings.is_production else "development",
            "debug_mode": settings.DEBUG,
            "rp_id": relying_party.id,
            "rp_origin": relying_party.origin,
        },
    )

    try:
        db_connect_start = time.time()
        logger.info("Initiating database connection...")
        await db_manager.connect()
        log_application_lifecycle(
            "database_connected",
            {
                "connection_duration": f"{time.time() - db_connect_start:.3f}s",
                "database_name": settings.MONGODB_DATABASE,
                "connection_url": settings.MONGODB_URL.split("@")[-1],
            },
        )

        indexes_start = time.time()
        logger.info("Creating/verifying database indexes...")
        await db_manager.create_indexes()
        log_application_lifecycle("database_indexes_ready", {"indexes_duration": f"{time.time() - indexes_start:.3f}s"})
    except Exception as e:
        log_application_lifecycle(
            "startup_failed",
            {
                "error": str(e),
                "error_type": type(e).__name__,
                "startup_duration": f"{time.time() - startup_start_time:.3f}s",
            },
        )
        log_error_with_context(e, {"phase": "database_connection"}, operation="application_startup")
        raise

    log_application_lifecycle("startup_completed", {"startup_duration": f"{time.time() - startup_start_time:.3f}s"})

    yield

    shutdown_start_time = time.time()
    log_application_lifecycle("shutdown_initiated")
    await db_manager.disconnect()
    log_application_lifecycle("shutdown_completed", {"shutdown_duration": f"{time.time() - shutdown_start_time:.3f}s"})


app = FastAPI(
    title="Passkey Auth API",
    description="Passwordless authentication with WebAuthn passkeys.",
    version=__version__,
    debug=settings.DEBUG,
    lifespan=lifespan,
)


def _validation_message(exc: RequestValidationError) -> str:
    """Turn the first pydantic error into a field-level message."""
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    if first.get("type") == "json_invalid":
        return "Invalid JSON body"

    fields = [str(part) for part in first.get("loc", ()) if part != "body" and not isinstance(part, int)]
    if not fields:
        return "Request body is required"
    field = fields[0]
    if first.get("type") in ("missing", "string_too_short") or first.get("input") in ("", None):
        return f"{field} is required"
    return f"{field} is invalid"


@app.exception_handler(PasskeyError)
async def passkey_error_handler(request: Request, exc: PasskeyError):
    if exc.status_code >= 500:
        log_error_with_context(exc, {"path": request.url.path, "method": request.method}, operation="passkey_request")
    else:
        logger.warning("%s %s rejected: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return JSONResponse(exc.to_response(), status_code=exc.status_code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    message = _validation_message(exc)
    logger.warning("%s %s invalid body: %s", request.method, request.url.path, message)
    return JSONResponse({"error": message, "code": "validation_error"}, status_code=400)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code in (404, 405):
        return JSONResponse({"error": "Endpoint not found", "code": "endpoint_not_found"}, status_code=404)
    return JSONResponse({"error": str(exc.detail)}, status_code=exc.status_code)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    log_error_with_context(exc, {"path": request.url.path, "method": request.method}, operation="unhandled_request")
    return JSONResponse({"error": "Internal server error", "code": "internal_error"}, status_code=500)


logger.info("Adding request logging middleware...")
app.add_middleware(RequestLoggingMiddleware)

routers_config = [
    ("main", main_router, "Demo page, liveness and health endpoints"),
    ("passkeys", passkeys_router, "Passkey registration and authentication ceremonies"),
]
for router_name, router, description in routers_config:
    app.include_router(router)
    logger.info("Included %s router: %s", router_name, description)

log_application_lifecycle(
    "routers_configured",
    {"routers": [{"name": name, "description": description} for name, _, description in routers_config]},
)

if settings.METRICS_ENABLED:
    instrumentator = Instrumentator(
        should_group_status_codes=True,
        should_ignore_untemplated=True,
        should_respect_env_var=False,
        should_instrument_requests_inprogress=True,
    )
    instrumentator.instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")
    log_application_lifecycle("prometheus_configured", {"metrics_endpoint": "/metrics"})


def run():
    """Console entry point: serve the app with uvicorn."""
    uvicorn.run(
        "passkey_auth.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    run()
