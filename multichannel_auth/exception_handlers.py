"""
Exception handlers.

Register these on a FastAPI app instance via `register_exception_handlers(app)`.
"""
import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .core.config import settings
from .core.errors import AuthServiceError, InternalError, RateLimitedError, ValidationError

logger = logging.getLogger(__name__)


async def auth_error_handler(request: Request, exc: AuthServiceError):
    """Render service errors as {"error": {...}} with the error's status"""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")

    headers = {}
    if isinstance(exc, RateLimitedError) and exc.retry_after:
        headers["Retry-After"] = str(exc.retry_after)

    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    """Request body validation failures use the same shape as service validation errors"""
    details = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        details.append({"field": field or "body", "message": error.get("msg", "Invalid value")})
    return JSONResponse(
        status_code=400,
        content=ValidationError("Invalid request", details=details).to_dict(),
    )


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled errors"""
    # Full traceback goes to the logs only
    logger.error(f"Unhandled exception on {request.method} {request.url.path}: {exc}", exc_info=True)

    if settings.is_local:
        body = InternalError(f"Internal server error: {exc}").to_dict()
    else:
        body = InternalError().to_dict()
    return JSONResponse(status_code=500, content=body)


def register_exception_handlers(app):
    """Register all exception handlers on the given FastAPI app."""
    app.add_exception_handler(AuthServiceError, auth_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, global_exception_handler)
