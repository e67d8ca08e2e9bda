"""API error handling: sync exceptions to a consistent JSON envelope.

Registers FastAPI exception handlers that convert domain exceptions into
standardised ``{"error": {"code": "...", "message": "...", "event_id": "..."}}``
JSON responses.

Status code mapping:
- ``EventNotFoundError`` → 404 Not Found
- ``UnknownWatchChannelError`` → 404 Not Found
- ``ValidationError`` / ``ValueError`` → 400 Bad Request
- ``AuthExpiredError`` → 401 Unauthorized
- ``ProviderRequestError`` → 502 Bad Gateway
- ``CalendarSyncError`` → 500 Internal Server Error
- Any other ``Exception`` → 500 Internal Server Error
"""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from hearth.api.models import ErrorDetail, ErrorResponse
from hearth.calendar.errors import (
    AuthExpiredError,
    CalendarSyncError,
    EventNotFoundError,
    ProviderRequestError,
    UnknownWatchChannelError,
    ValidationError,
    redact_credential_values,
)

logger = logging.getLogger(__name__)


def _error(status_code: int, code: str, message: str, **extra) -> JSONResponse:
    body = ErrorResponse(error=ErrorDetail(code=code, message=message, **extra))
    return JSONResponse(status_code=status_code, content=body.model_dump())


async def _handle_event_not_found(request: Request, exc: EventNotFoundError) -> JSONResponse:
    """Return 404 when the local event does not exist."""
    logger.info("Event not found: %s", exc.event_id)
    return _error(404, "EVENT_NOT_FOUND", str(exc), event_id=exc.event_id)


async def _handle_unknown_channel(
    request: Request, exc: UnknownWatchChannelError
) -> JSONResponse:
    return _error(404, "UNKNOWN_CHANNEL", str(exc), details={"channel_id": exc.channel_id})


async def _handle_value_error(request: Request, exc: ValueError) -> JSONResponse:
    """Return 400 for validation / value errors."""
    logger.info("Validation error: %s", exc)
    return _error(400, "VALIDATION_ERROR", str(exc))


async def _handle_auth_expired(request: Request, exc: AuthExpiredError) -> JSONResponse:
    logger.warning("Provider credentials rejected: %s", exc.message)
    return _error(401, "AUTH_EXPIRED", "Provider credentials are missing or expired")


async def _handle_provider_error(request: Request, exc: ProviderRequestError) -> JSONResponse:
    """Return 502 when the provider refused the request or stayed unavailable."""
    message = redact_credential_values(str(exc))
    logger.warning("Provider request failed on %s: %s", request.url.path, message)
    return _error(
        502,
        "PROVIDER_ERROR",
        message,
        details={"status_code": exc.status_code, "reason": exc.reason},
    )


async def _handle_sync_error(request: Request, exc: CalendarSyncError) -> JSONResponse:
    message = redact_credential_values(str(exc))
    logger.error("Calendar sync error on %s: %s", request.url.path, message)
    return _error(500, "SYNC_ERROR", message)


class CatchAllErrorMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that catches any unhandled exception and returns a 500.

    Sits above the Starlette exception handler layer so exceptions not caught
    by ``add_exception_handler`` still get the standard error envelope.
    """

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
            return _error(500, "INTERNAL_ERROR", "Internal server error")


def register_error_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI application.

    Starlette resolves handlers along the exception's MRO, so
    ``ValidationError`` (a ``CalendarSyncError`` and a ``ValueError``) is
    registered explicitly.
    """
    handlers = [
        (EventNotFoundError, _handle_event_not_found),
        (UnknownWatchChannelError, _handle_unknown_channel),
        (ValidationError, _handle_value_error),
        (ValueError, _handle_value_error),
        (AuthExpiredError, _handle_auth_expired),
        (ProviderRequestError, _handle_provider_error),
        (CalendarSyncError, _handle_sync_error),
    ]
    for exc_class, handler in handlers:
        app.add_exception_handler(exc_class, handler)  # type: ignore[arg-type]
    app.add_middleware(CatchAllErrorMiddleware)
