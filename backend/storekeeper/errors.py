# Overview: Classified service errors and their JSON error payloads.

"""
Error taxonomy shared by every ledger.

Business-rule and access errors are raised before any write happens, so a
caller never has to undo partial work. Each class knows its HTTP status so
routes and the sync reconciler report them the same way.
"""

from __future__ import annotations

from flask import jsonify


class ServiceError(Exception):
    """Base class for classified business errors."""
    status_code = 400
    code = "SERVICE_ERROR"

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class NotFoundError(ServiceError):
    status_code = 404
    code = "NOT_FOUND"


class AccessDeniedError(ServiceError):
    """Cross-store access or insufficient role."""
    status_code = 403
    code = "UNAUTHORIZED"


class InsufficientStockError(ServiceError):
    status_code = 409
    code = "INSUFFICIENT_STOCK"


class PaymentExceedsRemainingError(ServiceError):
    status_code = 409
    code = "PAYMENT_EXCEEDS_REMAINING"


class ConflictError(ServiceError):
    status_code = 409
    code = "CONFLICT"


class TransientError(ServiceError):
    """Underlying store failure that survived retries. Safe to retry."""
    status_code = 503
    code = "TRANSIENT"


def error_payload(exc: Exception) -> dict:
    from .validation import ValidationError

    if isinstance(exc, ServiceError):
        payload = {"error": exc.message, "code": exc.code}
        if exc.details:
            payload["details"] = exc.details
        return payload
    if isinstance(exc, ValidationError):
        return {"error": str(exc), "code": "VALIDATION_ERROR"}
    return {"error": "Internal server error", "code": "INTERNAL"}


def error_status(exc: Exception) -> int:
    from .validation import ValidationError

    if isinstance(exc, ServiceError):
        return exc.status_code
    if isinstance(exc, ValidationError):
        return 400
    return 500


def error_response(exc: Exception):
    """Flask (response, status) tuple for a classified error."""
    return jsonify(error_payload(exc)), error_status(exc)
