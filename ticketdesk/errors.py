"""Error taxonomy shared by the store, the payment flow and the HTTP layer."""

from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    ALREADY_PROCESSED = "ALREADY_PROCESSED"
    ALREADY_APPROVED = "ALREADY_APPROVED"
    ALREADY_USED = "ALREADY_USED"
    DUPLICATE_REFERENCE = "DUPLICATE_REFERENCE"
    RATE_LIMITED = "RATE_LIMITED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    UNAUTHORIZED = "UNAUTHORIZED"
    EMAIL_DELIVERY_FAILED = "EMAIL_DELIVERY_FAILED"
    GENERATION_EXHAUSTED = "GENERATION_EXHAUSTED"


class DomainError(Exception):
    """Base domain error with code, user-safe message and HTTP status."""

    code = ErrorCode.VALIDATION_ERROR
    http_status = 400

    def __init__(self, message: str, detail: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        # internal detail, only rendered outside production
        self.detail = detail

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class ValidationError(DomainError):
    code = ErrorCode.VALIDATION_ERROR
    http_status = 400


class NotFound(DomainError):
    code = ErrorCode.NOT_FOUND
    http_status = 404


class Conflict(DomainError):
    code = ErrorCode.ALREADY_PROCESSED
    http_status = 409


class AlreadyProcessed(Conflict):
    code = ErrorCode.ALREADY_PROCESSED

    def __init__(self, reference: str, status: Optional[str] = None) -> None:
        super().__init__("Transaction already processed")
        self.reference = reference
        self.status = status


class AlreadyApproved(Conflict):
    code = ErrorCode.ALREADY_APPROVED

    def __init__(self, reference: str, message: str = "Transaction already approved") -> None:
        super().__init__(message)
        self.reference = reference


class AlreadyUsed(Conflict):
    code = ErrorCode.ALREADY_USED

    def __init__(
        self, ticket_id: str, used_at: Optional[float], verified_by: Optional[str]
    ) -> None:
        super().__init__("Ticket has already been used")
        self.ticket_id = ticket_id
        self.used_at = used_at
        self.verified_by = verified_by


class DuplicateReference(Conflict):
    code = ErrorCode.DUPLICATE_REFERENCE

    def __init__(self, reference: str) -> None:
        super().__init__("Payment reference already exists")
        self.reference = reference


class RateLimited(DomainError):
    code = ErrorCode.RATE_LIMITED
    http_status = 429

    def __init__(self, wait_seconds: int, scope: str, message: str) -> None:
        super().__init__(message)
        self.wait_seconds = wait_seconds
        self.scope = scope  # reference | ticket_type


class InvalidSignature(DomainError):
    code = ErrorCode.INVALID_SIGNATURE
    http_status = 400

    def __init__(self, message: str = "Invalid signature") -> None:
        super().__init__(message)


class Unauthorized(DomainError):
    code = ErrorCode.UNAUTHORIZED
    http_status = 401

    def __init__(self, message: str = "Unauthorized access") -> None:
        super().__init__(message)


class EmailDeliveryFailed(DomainError):
    code = ErrorCode.EMAIL_DELIVERY_FAILED
    http_status = 502


class GenerationExhausted(DomainError):
    code = ErrorCode.GENERATION_EXHAUSTED
    http_status = 500

    def __init__(self, attempts: int) -> None:
        super().__init__(
            "Unable to generate a unique reference. Please try again.",
            detail=f"gave up after {attempts} attempts",
        )
        self.attempts = attempts


# ----------------------------
# Delivery pipeline (internal, never rendered to clients)
# ----------------------------
class DeliveryError(Exception):
    pass


class TransientDeliveryError(DeliveryError):
    """Mail server unreachable, timeout, 4xx SMTP reply: retry later."""


class NonTransientDeliveryError(DeliveryError):
    """Unknown job type or malformed payload: retrying cannot help."""
