"""
Billing-specific exceptions.

Exception Hierarchy:
    BillingError (base for billing domain)
    ├── BillingValidationError - User-visible failures that abort a pass
    │   ├── MissingPaymentTokenError - New customer without a card token
    │   ├── MissingCustomerError - Card update with no remote customer
    │   └── SubscriptionAbortedError - Raised by Subscription.save() on abort
    └── ProviderError - Base for all billing provider failures
        ├── CardRejectedError - Payment instrument refused (recoverable)
        ├── ProviderNotFoundError - Remote record missing or deleted
        ├── ProviderInvalidRequestError - Malformed request (permanent)
        ├── ProviderAuthenticationError - Bad API credentials (permanent)
        ├── ProviderRateLimitError - Rate limited (transient, retry)
        ├── ProviderUnavailableError - API unavailable (transient, retry)
        └── ProviderTimeoutError - Request timeout (transient, retry)

    PlanOrderingError - Plan identifiers cannot be ordered (caller bug)
    StaleRecordError - Optimistic locking conflict (inherits ConflictError)
    LockAcquisitionError - Distributed lock timeout (inherits ConflictError)

Only CardRejectedError is recovered by the lifecycle orchestrator; every
other ProviderError propagates to the caller of Subscription.save().
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Billing Domain Exceptions
# =============================================================================


class BillingError(BaseApplicationError):
    """Base exception for all billing operations."""

    default_error_code: str = "BILLING_ERROR"


class BillingValidationError(ValidationError, BillingError):
    """
    A request the lifecycle cannot carry out as asked.

    The message is meant for the end user. The pass is aborted and the
    subscription is not persisted.
    """

    default_error_code: str = "BILLING_VALIDATION_ERROR"


class MissingPaymentTokenError(BillingValidationError):
    """
    A new remote customer was required but no card token was supplied.

    Raised before any remote call is attempted. Usually means the
    client-side card form failed to tokenize the card.
    """

    default_error_code: str = "MISSING_PAYMENT_TOKEN"


class MissingCustomerError(BillingValidationError):
    """A card update was requested before any remote customer exists."""

    default_error_code: str = "MISSING_BILLING_CUSTOMER"


class SubscriptionAbortedError(BillingValidationError):
    """
    Raised by Subscription.save() when the lifecycle pass aborted.

    details["base"] holds the user-visible messages attached to the
    subscription.
    """

    default_error_code: str = "SUBSCRIPTION_ABORTED"


class PlanOrderingError(TypeError):
    """
    Plan identifiers that cannot be compared for tier ordering.

    This is an integration bug, not a runtime condition to recover from.
    """


# =============================================================================
# Provider Exceptions
# =============================================================================


class ProviderError(ExternalServiceError, BillingError):
    """
    Base exception for all billing provider errors.

    Attributes:
        provider_code: The provider's own error code, if any
        decline_code: Card decline code (if applicable)
        is_retryable: Whether the operation can be retried with backoff

    Example:
        try:
            provider.delete_subscription("sub_123", idempotency_key=key)
        except ProviderError as e:
            if e.is_retryable:
                schedule_retry(e)
            raise
    """

    default_error_code: str = "PROVIDER_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if provider_code:
            details["provider_code"] = provider_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.provider_code = provider_code
        self.decline_code = decline_code


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class CardRejectedError(ProviderError):
    """
    The provider refused the payment instrument.

    The message is the provider's user-facing explanation and is attached
    to the subscription as a validation message.
    """

    default_error_code: str = "CARD_REJECTED"
    is_retryable: bool = False


class ProviderNotFoundError(ProviderError):
    """The remote customer or subscription does not exist (or was deleted)."""

    default_error_code: str = "PROVIDER_RECORD_NOT_FOUND"
    is_retryable: bool = False


class ProviderInvalidRequestError(ProviderError):
    """
    Invalid request parameters sent to the provider.

    This usually indicates a bug in our code or stale local data,
    not a user error.
    """

    default_error_code: str = "PROVIDER_INVALID_REQUEST"
    is_retryable: bool = False


class ProviderAuthenticationError(ProviderError):
    """The provider rejected our API credentials."""

    default_error_code: str = "PROVIDER_AUTHENTICATION_FAILED"
    is_retryable: bool = False


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class ProviderRateLimitError(ProviderError):
    """Rate limited by the provider API."""

    default_error_code: str = "PROVIDER_RATE_LIMITED"
    is_retryable: bool = True


class ProviderUnavailableError(ProviderError):
    """
    The provider API is temporarily unavailable.

    Covers network connectivity issues and provider server errors.
    """

    default_error_code: str = "PROVIDER_UNAVAILABLE"
    is_retryable: bool = True


class ProviderTimeoutError(ProviderError):
    """
    A provider API call timed out.

    The operation may have succeeded on the provider's side; retry only
    with the same idempotency key.
    """

    default_error_code: str = "PROVIDER_TIMEOUT"
    is_retryable: bool = True


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class StaleRecordError(ConflictError):
    """
    Raised when optimistic locking detects concurrent modification.

    details contains pk, expected_version and current_version.
    """

    default_error_code: str = "STALE_RECORD"


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired.

    details contains the lock key and timeout.
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


__all__ = [
    # Billing domain
    "BillingError",
    "BillingValidationError",
    "MissingPaymentTokenError",
    "MissingCustomerError",
    "SubscriptionAbortedError",
    "PlanOrderingError",
    # Provider
    "ProviderError",
    "CardRejectedError",
    "ProviderNotFoundError",
    "ProviderInvalidRequestError",
    "ProviderAuthenticationError",
    "ProviderRateLimitError",
    "ProviderUnavailableError",
    "ProviderTimeoutError",
    # Concurrency control
    "StaleRecordError",
    "LockAcquisitionError",
]
