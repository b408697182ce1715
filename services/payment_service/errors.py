"""Domain errors raised by the payment and refund workflows."""
from typing import Optional


class PaymentServiceError(Exception):
    """Base class for errors reported to API callers."""

    status_code = 500
    code = "InternalError"
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None, detail: Optional[str] = None):
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)


# Taxonomy
class ValidationFailure(PaymentServiceError):
    status_code = 400
    code = "ValidationError"
    default_message = "Invalid request"


class NotFound(PaymentServiceError):
    status_code = 404
    code = "NotFound"
    default_message = "Not found"


class Unauthorized(PaymentServiceError):
    status_code = 403
    code = "Unauthorized"
    default_message = "Unauthorized"


class Conflict(PaymentServiceError):
    status_code = 409
    code = "Conflict"
    default_message = "Conflicting state"


class UpstreamFailure(PaymentServiceError):
    """A gateway or oracle call failed.

    Business rejections are client errors (400); transport failures are 502.
    """

    code = "UpstreamFailure"
    default_message = "Upstream service failed"

    def __init__(
        self,
        message: Optional[str] = None,
        detail: Optional[str] = None,
        transport: bool = False,
    ):
        super().__init__(message, detail)
        self.transport = transport
        self.status_code = 502 if transport else 400


class InvalidSignature(PaymentServiceError):
    status_code = 401
    code = "InvalidSignature"
    default_message = "Invalid webhook signature"


# Payments
class FeeNotFound(NotFound):
    code = "FeeNotFound"
    default_message = "Fee not found"


class FeeAssignmentNotFound(NotFound):
    code = "FeeAssignmentNotFound"
    default_message = "Fee assignment not found"


class PaymentNotFound(NotFound):
    code = "PaymentNotFound"
    default_message = "Payment not found"


class InvalidAmount(ValidationFailure):
    code = "InvalidAmount"
    default_message = "Amount must be greater than 0"


class PartialPaymentNotAllowed(ValidationFailure):
    code = "PartialPaymentNotAllowed"
    default_message = "Partial payments not allowed for this fee"


class SchoolOrProviderNotConfigured(ValidationFailure):
    code = "SchoolOrProviderNotConfigured"
    default_message = "Paystack not configured for this school"


class GatewayInitializationFailed(UpstreamFailure):
    code = "GatewayInitializationFailed"
    default_message = "Paystack initialization failed"


class GatewayVerificationFailed(UpstreamFailure):
    code = "GatewayVerificationFailed"
    default_message = "Payment verification failed"


# Refunds
class RefundNotFound(NotFound):
    code = "RefundNotFound"
    default_message = "Refund not found"


class InvalidRefundAmount(ValidationFailure):
    code = "InvalidRefundAmount"
    default_message = "Invalid refund amount"


class InvalidDecision(ValidationFailure):
    code = "InvalidDecision"
    default_message = "Invalid status. Must be approved or rejected"


class UnsupportedProvider(ValidationFailure):
    code = "UnsupportedProvider"
    default_message = "Unsupported payment provider"


class ProviderReferenceMissing(ValidationFailure):
    code = "ProviderReferenceMissing"
    default_message = "Paystack reference not found in payment"


class ProviderNotConfigured(ValidationFailure):
    code = "ProviderNotConfigured"
    default_message = "Paystack not configured for this school"


class GatewayRefundFailed(UpstreamFailure):
    code = "GatewayRefundFailed"
    default_message = "Paystack refund initiation failed"


# State machine
class InvalidTransition(Conflict):
    code = "InvalidTransition"

    def __init__(self, current: str, event: str):
        super().__init__(f"Cannot apply '{event}' to a record in status '{current}'")
        self.current = current
        self.event = event


# Authentication
class Unauthenticated(PaymentServiceError):
    status_code = 401
    code = "Unauthenticated"
    default_message = "Invalid or missing token"
