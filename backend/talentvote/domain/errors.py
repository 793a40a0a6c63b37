"""Domain error codes for voting and purchases.

Every error carries a user-safe message; handlers surface it verbatim and
never attach storage or gateway internals.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    """Domain error codes."""

    RATE_LIMITED = "RATE_LIMITED"
    POLICY_VIOLATION = "POLICY_VIOLATION"
    INVALID_STATE = "INVALID_STATE"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    STORAGE_FAILURE = "STORAGE_FAILURE"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    AUTHENTICATION_REQUIRED = "AUTHENTICATION_REQUIRED"
    PERMISSION_DENIED = "PERMISSION_DENIED"


class DomainError(Exception):
    """Base domain error with code and user-safe message."""

    code: ErrorCode = ErrorCode.VALIDATION_FAILED

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class RateLimitedError(DomainError):
    """Raised when a voter has used up today's free votes."""

    code = ErrorCode.RATE_LIMITED

    def __init__(self, max_votes_per_day: int) -> None:
        super().__init__(f"Daily vote limit reached ({max_votes_per_day} per day)")
        self.max_votes_per_day = max_votes_per_day


class PolicyViolationError(DomainError):
    code = ErrorCode.POLICY_VIOLATION


class InvalidStateError(DomainError):
    code = ErrorCode.INVALID_STATE


class PaymentError(DomainError):
    """Raised when the gateway declines or cannot process a charge."""

    code = ErrorCode.PAYMENT_FAILED

    def __init__(self, message: str, *, gateway_code: str | None = None) -> None:
        super().__init__(message)
        self.gateway_code = gateway_code


class StorageError(DomainError):
    code = ErrorCode.STORAGE_FAILURE

    def __init__(self, message: str = "Could not save your request. Please try again.") -> None:
        super().__init__(message)


class ValidationError(DomainError):
    code = ErrorCode.VALIDATION_FAILED


class NotFoundError(DomainError):
    code = ErrorCode.NOT_FOUND


class AuthenticationError(DomainError):
    code = ErrorCode.AUTHENTICATION_REQUIRED


class PermissionDeniedError(DomainError):
    code = ErrorCode.PERMISSION_DENIED


__all__ = [
    "AuthenticationError",
    "DomainError",
    "ErrorCode",
    "InvalidStateError",
    "NotFoundError",
    "PaymentError",
    "PermissionDeniedError",
    "PolicyViolationError",
    "RateLimitedError",
    "StorageError",
    "ValidationError",
]
