from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from consortium.apps.api.response import error_response, is_versioned_request
from consortium.core.errors import (
    ConflictError,
    ConsortiumError,
    ForbiddenError,
    FulfillmentPreconditionError,
    IntegrationError,
    InvalidTransitionError,
    NotFoundError,
    ValidationFailedError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "INTEGRATION_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; the first isinstance match wins.
_DOMAIN_ERRORS: tuple[tuple[type[ConsortiumError], int, str], ...] = (
    (InvalidTransitionError, 400, "INVALID_TRANSITION"),
    (FulfillmentPreconditionError, 400, "FULFILLMENT_PRECONDITION_FAILED"),
    (ValidationFailedError, 400, "VALIDATION_FAILED"),
    (NotFoundError, 404, "NOT_FOUND"),
    (ConflictError, 409, "CONFLICT"),
    (ForbiddenError, 403, "AUTH_FORBIDDEN"),
    (IntegrationError, 502, "INTEGRATION_ERROR"),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Accept both {"code", "message", ...} dicts and plain strings.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def classify_domain_error(exc: ConsortiumError) -> tuple[int, str, dict[str, Any] | None]:
    for error_type, status_code, code in _DOMAIN_ERRORS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = 400, "BAD_REQUEST"
    details: dict[str, Any] | None = None
    if isinstance(exc, InvalidTransitionError):
        details = {"current_status": exc.current, "requested_status": exc.target}
    elif isinstance(exc, FulfillmentPreconditionError):
        details = {"reason": exc.code}
    return status_code, code, details


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Router-level 404/405 responses come through Starlette's exception type.
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=exc.headers)
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def consortium_exception_handler(request: Request, exc: ConsortiumError) -> JSONResponse:
    status_code, code, details = classify_domain_error(exc)
    if status_code >= 500:
        logger.warning("integration_error path=%s error=%s", request.url.path, exc)
    message = str(exc) or "Request failed"
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": message}, status_code=status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.errors()}, status_code=422)
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces to callers.
    logger.error("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
