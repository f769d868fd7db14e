"""
Error taxonomy.

Every error carries the HTTP status it is surfaced with so the FastAPI
handler in ``main`` can render them uniformly.
"""
from typing import Any, Dict, List, Optional


class PaymentError(Exception):
    status_code = 500
    error = "Payment processing failed"

    def __init__(self, message: Optional[str] = None, **details: Any):
        super().__init__(message or self.error)
        self.message = message or self.error
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, **self.details}


class ValidationError(PaymentError):
    status_code = 400
    error = "Validation failed"

    def __init__(self, message: Optional[str] = None, fields: Optional[List[str]] = None):
        super().__init__(message, details=list(fields or []))
        self.fields = list(fields or [])


class NotFoundError(PaymentError):
    status_code = 404
    error = "Not found"


class PaymentNotFound(NotFoundError):
    error = "Payment record not found"


class DuplicateOrderError(PaymentError):
    status_code = 409
    error = "Order already exists"


class InvalidTransitionError(PaymentError):
    status_code = 400
    error = "Transition not allowed"

    def __init__(self, message: Optional[str] = None, current_status: Optional[str] = None):
        super().__init__(message, currentStatus=current_status)
        self.current_status = current_status


class ConflictError(PaymentError):
    """The record changed between read and conditional write."""

    status_code = 503
    error = "Payment was modified concurrently, retry the request"


class SignatureError(PaymentError):
    status_code = 400
    error = "Invalid signature"


class ConfigurationError(PaymentError):
    status_code = 500
    error = "Payment service not properly configured"


class GatewayError(PaymentError):
    status_code = 502
    error = "Payment gateway request failed"


class GatewayUnavailable(GatewayError):
    error = "Payment gateway unavailable"


class GatewayRejected(GatewayError):
    error = "Payment gateway rejected the request"


class RefundNotAllowed(GatewayError):
    error = "Refund not allowed by payment gateway"
