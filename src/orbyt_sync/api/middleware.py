"""API error handling: integration errors become the standard JSON envelope.

Status code mapping:
- ``PreconditionFailedError`` → 412 (provider not configured)
- ``ConfigurationError`` → 503
- ``AuthenticationError`` → 401
- ``ValidationError`` → 400
- ``RateLimitedError`` → 429
- ``RemoteProviderError`` → 502
- ``NotFoundError`` → 404
- ``ForbiddenError`` → 403
- anything else → 500 ``INTERNAL_ERROR``
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from orbyt_sync.api.models import ErrorDetail, ErrorResponse
from orbyt_sync.errors import (
    AuthenticationError,
    ConfigurationError,
    ForbiddenError,
    IntegrationError,
    NotFoundError,
    PreconditionFailedError,
    RateLimitedError,
    RemoteProviderError,
    ValidationError,
    safe_error_text,
)

logger = logging.getLogger(__name__)

# Subclasses before their bases
_STATUS_CODES: tuple[tuple[type[IntegrationError], int], ...] = (
    (PreconditionFailedError, 412),
    (ConfigurationError, 503),
    (AuthenticationError, 401),
    (ValidationError, 400),
    (RateLimitedError, 429),
    (RemoteProviderError, 502),
    (NotFoundError, 404),
    (ForbiddenError, 403),
)


def status_code_for(exc: IntegrationError) -> int:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _error_response(status_code: int, code: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_integration_error(
    request: Request,
    exc: IntegrationError,
) -> JSONResponse:
    status_code = status_code_for(exc)
    message = safe_error_text(exc)
    if status_code >= 500:
        logger.warning(
            "%s %s failed with %s: %s", request.method, request.url.path, exc.code, message
        )
        if status_code == 500:
            message = "Internal server error"
    else:
        logger.info("%s %s rejected with %s", request.method, request.url.path, exc.code)
    return _error_response(status_code, exc.code, message)


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """Convert any unhandled exception into a 500 with the standard envelope."""

    async def dispatch(self, request: Request, call_next):
        try:
            return await call_next(request)
        except Exception:
            logger.error(
                "Unhandled exception on %s %s",
                request.method,
                request.url.path,
                exc_info=True,
            )
            return _error_response(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach the exception handlers and the catch-all middleware to *app*."""
    app.add_exception_handler(IntegrationError, _handle_integration_error)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
