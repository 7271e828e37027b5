"""System routes: the bundled demo page, liveness and health."""

from pathlib import Path

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse

from passkey_auth.database import db_manager
from passkey_auth.managers.logging_manager import get_logger
from passkey_auth.utils.logging_utils import log_error_with_context

logger = get_logger(prefix="[System Routes]")

router = APIRouter(tags=["System"])

STATIC_DIR = Path(__file__).resolve().parent.parent / "static"
INDEX_PAGE = STATIC_DIR / "index.html"


@router.get(
    "/",
    response_class=HTMLResponse,
    summary="Passkey demo page",
    description="Serves a static page that drives both ceremonies from the browser.",
)
async def index(request: Request):
    try:
        return HTMLResponse(INDEX_PAGE.read_text(encoding="utf-8"))
    except OSError as e:
        log_error_with_context(e, {"path": str(INDEX_PAGE)}, operation="serve_index_page")
        raise


@router.get("/ping", response_class=PlainTextResponse, summary="Liveness probe")
async def ping():
    return PlainTextResponse("Pong")


@router.get(
    "/health",
    summary="Health check",
    description="Reports database connectivity. Responds 503 when MongoDB is unreachable.",
    responses={
        200: {"content": {"application/json": {"example": {"status": "healthy", "database": "connected"}}}},
        503: {"content": {"application/json": {"example": {"status": "unhealthy", "database": "disconnected"}}}},
    },
)
async def health_check():
    """Check database connectivity for load balancers and monitoring."""
    db_healthy = await db_manager.health_check()
    if not db_healthy:
        logger.warning("Health check failed: database disconnected")
        return JSONResponse({"status": "unhealthy", "database": "disconnected"}, status_code=503)
    return {"status": "healthy", "database": "connected"}
