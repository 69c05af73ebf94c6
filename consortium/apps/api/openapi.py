from __future__ import annotations

from typing import Any

from consortium.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _response(description: str, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response("Bad request", "VALIDATION_FAILED", "A business justification is required."),
    401: _response("Unauthorized", "AUTH_UNAUTHORIZED", "X-User-Id header is required"),
    403: _response("Forbidden", "AUTH_FORBIDDEN", "Only the original requester can cancel this request."),
    404: _response("Not found", "NOT_FOUND", "Access request not found."),
    409: _response(
        "Conflict",
        "CONFLICT",
        "You already have an active request (status: Submitted) for this data product.",
    ),
    422: _response("Validation error", "REQUEST_VALIDATION_ERROR", "Validation error"),
    500: _response("Internal error", "INTERNAL_ERROR", "Internal server error"),
    502: _response("Upstream failure", "INTEGRATION_ERROR", "Catalog listing could not be fetched."),
}
