"""Domain models and errors for voting and purchases."""

from .errors import (
    AuthenticationError,
    DomainError,
    ErrorCode,
    InvalidStateError,
    NotFoundError,
    PaymentError,
    PermissionDeniedError,
    PolicyViolationError,
    RateLimitedError,
    StorageError,
    ValidationError,
)
from .models import (
    ChargeRequest,
    ChargeResult,
    Eligibility,
    OpaquePayment,
    PriceQuote,
    PurchaseAttempt,
    PurchaseReceipt,
    PurchaseState,
    VerifiedIdentity,
    VoterContext,
    weighted_total,
)

__all__ = [
    "AuthenticationError",
    "ChargeRequest",
    "ChargeResult",
    "DomainError",
    "Eligibility",
    "ErrorCode",
    "InvalidStateError",
    "NotFoundError",
    "OpaquePayment",
    "PaymentError",
    "PermissionDeniedError",
    "PolicyViolationError",
    "PriceQuote",
    "PurchaseAttempt",
    "PurchaseReceipt",
    "PurchaseState",
    "RateLimitedError",
    "StorageError",
    "ValidationError",
    "VerifiedIdentity",
    "VoterContext",
    "weighted_total",
]
