from __future__ import annotations

from typing import Any

from concierge.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str) -> dict[str, Any]:
    return {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }


def _error_response(description: str, *, code: str, message: str) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": _error_example(code=code, message=message)}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _error_response(
        "Bad request",
        code="INVALID_CUSTOMER_ID",
        message="Unable to verify this checkout session.",
    ),
    402: _error_response(
        "Payment not completed",
        code="PAYMENT_NOT_COMPLETED",
        message="Payment not completed. Please finish checkout and try again.",
    ),
    403: _error_response(
        "Session does not belong to this customer",
        code="SESSION_MISMATCH",
        message="Unable to verify this checkout session.",
    ),
    404: _error_response("Not found", code="INSTANCE_NOT_FOUND", message="No instance found."),
    409: _error_response(
        "Invalid lifecycle transition",
        code="INVALID_INSTANCE_STATE",
        message="Retry is only available when the instance is in error (current status: running).",
    ),
    422: _error_response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    500: _error_response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    502: _error_response(
        "Upstream service failed",
        code="PAYMENT_PROCESSOR_ERROR",
        message="Payment service is temporarily unavailable. Please try again.",
    ),
}
