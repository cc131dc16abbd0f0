"""Global exception handlers for FastAPI."""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from starlette.responses import JSONResponse

from api.base import error_response, ErrorCodes
from core.errors import (
    AlreadyEngaged,
    InvalidAmount,
    InvalidState,
    InvalidTimeSlot,
    InvalidTransition,
    MarketplaceError,
    NotFound,
    TransientStoreFailure,
)

logger = logging.getLogger(__name__)

# Most specific class first; lookup walks the exception's MRO
_DOMAIN_ERRORS = {
    NotFound: (404, ErrorCodes.NOT_FOUND),
    InvalidState: (409, ErrorCodes.INVALID_STATE),
    InvalidTransition: (409, ErrorCodes.INVALID_TRANSITION),
    AlreadyEngaged: (409, ErrorCodes.ALREADY_ENGAGED),
    InvalidAmount: (400, ErrorCodes.INVALID_AMOUNT),
    InvalidTimeSlot: (400, ErrorCodes.INVALID_TIME_SLOT),
    TransientStoreFailure: (503, ErrorCodes.SERVICE_UNAVAILABLE),
}


def _json(request: Request, status_code: int, code: str, message: str, details: dict | None = None):
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=status_code,
        content=error_response(code, message, details, request_id).model_dump(mode="json"),
    )


def error_details(exc: MarketplaceError) -> dict | None:
    """State a client needs to resync after a rejection."""
    if isinstance(exc, NotFound):
        return {"entity": exc.entity, "id": str(exc.entity_id)}

    details = {}
    if isinstance(exc, AlreadyEngaged):
        details["request_id"] = str(exc.request_id)
        if exc.engagement_id is not None:
            details["engagement_id"] = str(exc.engagement_id)
    if getattr(exc, "current_status", None) is not None:
        details["current_status"] = exc.current_status
    return details or None


def register_error_handlers(app: FastAPI) -> None:
    """Register global exception handlers on the app."""

    @app.exception_handler(MarketplaceError)
    async def marketplace_error_handler(request: Request, exc: MarketplaceError):
        for cls in type(exc).__mro__:
            if cls in _DOMAIN_ERRORS:
                status_code, code = _DOMAIN_ERRORS[cls]
                break
        else:
            status_code, code = 400, ErrorCodes.INVALID_REQUEST

        if status_code >= 500:
            logger.warning(f"{request.method} {request.url.path}: {exc}")
        return _json(request, status_code, code, str(exc), error_details(exc))

    @app.exception_handler(PermissionError)
    async def permission_error_handler(request: Request, exc: PermissionError):
        return _json(request, 403, ErrorCodes.FORBIDDEN, str(exc))

    @app.exception_handler(ValidationError)
    async def model_validation_error_handler(request: Request, exc: ValidationError):
        return _json(request, 400, ErrorCodes.VALIDATION_ERROR, str(exc.errors(include_url=False)))

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        return _json(request, 400, ErrorCodes.INVALID_REQUEST, str(exc))

    @app.exception_handler(KeyError)
    async def missing_field_handler(request: Request, exc: KeyError):
        return _json(request, 400, ErrorCodes.INVALID_REQUEST, f"Missing field {exc}")

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return _json(request, 422, ErrorCodes.VALIDATION_ERROR, str(exc.errors()))

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled exception")
        return _json(request, 500, ErrorCodes.INTERNAL_ERROR, "An internal error occurred")
