"""
Base exception classes for application-wide error handling.

Every domain error carries a human-readable message, a machine-readable
error code and an optional details dict, so callers can log it, show it,
or serialize it without knowing the concrete subclass.

Exception Hierarchy:
    BaseApplicationError (base)
    ├── ValidationError - Input or business-rule failures shown to the user
    ├── NotFoundError - Resource not found
    ├── ConflictError - State conflicts (concurrent modifications, locks)
    └── ExternalServiceError - Third-party service failures

Usage:
    from core.exceptions import ValidationError

    raise ValidationError(
        "A payment token is required",
        error_code="MISSING_PAYMENT_TOKEN",
        details={"base": ["Please enter your card details."]},
    )

    try:
        ...
    except BaseApplicationError as e:
        logger.warning("Billing operation failed", extra=e.to_dict())
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from typing import Any


class BaseApplicationError(Exception):
    """
    Base exception for all application-specific errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable code for client-side handling
        details: Additional error context (field errors, provider codes, etc.)
    """

    default_error_code: str = "APPLICATION_ERROR"

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.message = message
        self.error_code = error_code or self.default_error_code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to a plain dict.

        Returns:
            Dict with error, error_code and (when present) details keys
        """
        result: dict[str, Any] = {
            "error": self.message,
            "error_code": self.error_code,
        }
        if self.details:
            result["details"] = self.details
        return result

    def __str__(self) -> str:
        return f"[{self.error_code}] {self.message}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


class ValidationError(BaseApplicationError):
    """
    Raised when a request fails validation or a business rule.

    The message is safe to show to the end user. Field-level messages
    go into details keyed by field name ("base" for entity-wide ones).
    """

    default_error_code: str = "VALIDATION_ERROR"


class NotFoundError(BaseApplicationError):
    """Raised when a requested resource is not found."""

    default_error_code: str = "NOT_FOUND"


class ConflictError(BaseApplicationError):
    """
    Raised when an operation conflicts with current resource state.

    Use for:
    - Concurrent modification conflicts
    - Lock contention
    - Optimistic locking failures
    """

    default_error_code: str = "CONFLICT"


class ExternalServiceError(BaseApplicationError):
    """
    Raised when an external service call fails.

    Log the original error for debugging but don't expose
    internal details to end users.
    """

    default_error_code: str = "EXTERNAL_SERVICE_ERROR"
