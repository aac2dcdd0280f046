"""Exception handlers that render HTTP errors in the OpenAI error shape.

FastAPI answers unknown routes, ``HTTPException`` and request validation
failures with ``{"detail": ...}``. OpenAI clients expect
``{"error": {"message", "type", "code"}}`` instead, so both are re-rendered.

Usage:
    app = FastAPI()
    configure_exception_handlers(app)
"""

import structlog
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from models.schemas import ErrorDetail, ErrorResponse

logger = structlog.get_logger(__name__)

# status -> (error.type, error.code)
_HTTP_ERRORS: dict[int, tuple[str, str | None]] = {
    status.HTTP_400_BAD_REQUEST: ("invalid_request_error", None),
    status.HTTP_404_NOT_FOUND: ("not_found", "not_found"),
    status.HTTP_405_METHOD_NOT_ALLOWED: ("invalid_request_error", "method_not_allowed"),
    status.HTTP_429_TOO_MANY_REQUESTS: ("rate_limit_error", None),
}


def error_body(message: str, error_type: str, code: str | None = None) -> dict:
    """Build an OpenAI-style error body."""
    return ErrorResponse(
        error=ErrorDetail(message=message, type=error_type, code=code)
    ).model_dump()


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Render ``HTTPException`` (including unknown routes) as an OpenAI error."""
    default_type = "server_error" if exc.status_code >= 500 else "invalid_request_error"
    error_type, code = _HTTP_ERRORS.get(exc.status_code, (default_type, None))
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(str(exc.detail), error_type, code),
        headers=getattr(exc, "headers", None),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render a request body that failed validation as a 400 invalid request."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    logger.info(
        "request_validation_failed",
        path=request.url.path,
        errors=len(errors),
        first_error=message,
    )
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_body(f"Invalid request body ({message})", "invalid_request_error", "invalid_request"),
    )


def configure_exception_handlers(app: FastAPI) -> None:
    """Register the OpenAI-shaped error handlers on ``app``.

    Args:
        app: The FastAPI application instance.
    """
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
