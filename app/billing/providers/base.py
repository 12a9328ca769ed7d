"""
Billing provider contract.

The lifecycle orchestrator talks to the outside billing system only
through a BillingProvider. Every method is a blocking remote call that
may fail; failures are raised as billing.exceptions.ProviderError
subclasses, never as SDK exceptions.

No method assumes atomicity across more than one call. Mutating calls
take an idempotency key so a caller retrying after a timeout cannot
create duplicates.

Usage:
    class InMemoryProvider(BillingProvider):
        def get_customer(self, customer_id):
            ...

    orchestrator = LifecycleOrchestrator(provider=InMemoryProvider(), hooks=hooks)
"""

from __future__ import annotations

import hashlib
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from django.conf import settings

from billing.exceptions import ProviderError


# =============================================================================
# Parameter Types
# =============================================================================


@dataclass
class CreateCustomerParams:
    """
    Parameters for creating a remote customer.

    Attributes:
        description: Human-readable owner description
        email: Owner email address
        payment_token: One-time card token from the client-side card form
        idempotency_key: Unique key for idempotent creation
        metadata: Key-value pairs attached to the customer
        coupon_code: Optional coupon applied to the customer
    """

    description: str
    email: str
    payment_token: str
    idempotency_key: str
    metadata: dict[str, str] = field(default_factory=dict)
    coupon_code: str | None = None

    def __post_init__(self) -> None:
        """Validate parameters after initialization."""
        if not self.payment_token:
            raise ValueError("payment_token is required")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")


@dataclass
class CreateSubscriptionParams:
    """
    Parameters for creating a remote subscription.

    Attributes:
        customer_id: Remote customer id
        plan_id: Remote plan (price) id
        idempotency_key: Unique key for idempotent creation
        quantity: Seat quantity (default: 1)
        metadata: Key-value pairs attached to the subscription
        trial_end: Unix timestamp ending a free trial; when None the
            plan's own trial period applies
    """

    customer_id: str
    plan_id: str
    idempotency_key: str
    quantity: int = 1
    metadata: dict[str, str] = field(default_factory=dict)
    trial_end: int | None = None

    def __post_init__(self) -> None:
        """Validate parameters after initialization."""
        if not self.customer_id:
            raise ValueError("customer_id is required")
        if not self.plan_id:
            raise ValueError("plan_id is required")
        if self.quantity <= 0:
            raise ValueError("quantity must be positive")
        if not self.idempotency_key:
            raise ValueError("idempotency_key is required")


# =============================================================================
# Result Types
# =============================================================================


@dataclass
class CustomerResult:
    """
    Remote customer as seen by the lifecycle.

    Attributes:
        id: Remote customer id
        email: Email on file
        last_four: Last four digits of the default payment instrument
        metadata: Attached metadata
        raw_response: Full provider response (for debugging)
    """

    id: str
    email: str | None = None
    last_four: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class SubscriptionResult:
    """
    Remote subscription as seen by the lifecycle.

    Attributes:
        id: Remote subscription id
        customer_id: Remote customer id
        status: Provider status (active, trialing, canceled, ...)
        plan_id: Remote plan (price) id
        quantity: Seat quantity
        raw_response: Full provider response (for debugging)
    """

    id: str
    customer_id: str
    status: str
    plan_id: str | None = None
    quantity: int = 1
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Idempotency Key Generator
# =============================================================================


class IdempotencyKeyGenerator:
    """
    Generate idempotency keys for mutating provider calls.

    Format: "{operation}:{entity_id}:{attempt}:{hash}"

    Example:
        key = IdempotencyKeyGenerator.generate(
            operation="create_subscription",
            entity_id=f"{subscription.pk}:{plan.provider_plan_id}",
        )
    """

    @staticmethod
    def generate(
        operation: str,
        entity_id: uuid.UUID | str,
        attempt: int = 1,
    ) -> str:
        entity_str = str(entity_id)
        hash_input = f"{operation}:{entity_str}:{attempt}:{settings.SECRET_KEY}"
        short_hash = hashlib.sha256(hash_input.encode()).hexdigest()[:8]

        return f"{operation}:{entity_str}:{attempt}:{short_hash}"


# =============================================================================
# Retry Logic Helpers
# =============================================================================


def is_retryable_provider_error(error: Exception) -> bool:
    """
    Check if an error is a transient provider error that can be retried.

    Use this in Celery tasks and in read paths of provider implementations.
    """
    if isinstance(error, ProviderError):
        return getattr(error, "is_retryable", False)
    return False


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)

    Returns:
        Delay in seconds with 0-25% jitter added

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# Provider Contract
# =============================================================================


class BillingProvider(ABC):
    """
    Abstract capability set of the remote billing system.

    Implementations are stateless and safe to share between passes.
    """

    @abstractmethod
    def get_customer(self, customer_id: str) -> CustomerResult:
        """
        Fetch a remote customer.

        Raises:
            ProviderNotFoundError: Customer does not exist or was deleted
            ProviderError: Any other provider failure
        """

    @abstractmethod
    def create_customer(self, params: CreateCustomerParams) -> CustomerResult:
        """
        Create a remote customer with a default payment instrument.

        Raises:
            CardRejectedError: The payment instrument was refused
            ProviderError: Any other provider failure
        """

    @abstractmethod
    def update_customer_payment_instrument(
        self,
        customer_id: str,
        payment_token: str,
        idempotency_key: str,
    ) -> CustomerResult:
        """
        Replace the customer's default payment instrument.

        Returns:
            The updated customer; last_four reflects the new instrument

        Raises:
            CardRejectedError: The payment instrument was refused
            ProviderError: Any other provider failure
        """

    @abstractmethod
    def create_subscription(self, params: CreateSubscriptionParams) -> SubscriptionResult:
        """
        Create a remote subscription for a customer.

        Raises:
            CardRejectedError: The first charge was refused
            ProviderError: Any other provider failure
        """

    @abstractmethod
    def update_subscription(
        self,
        subscription_id: str,
        plan_id: str,
        quantity: int,
        idempotency_key: str,
    ) -> SubscriptionResult:
        """
        Move a remote subscription to another plan without proration.

        Raises:
            ProviderError: Any provider failure
        """

    @abstractmethod
    def delete_subscription(self, subscription_id: str, idempotency_key: str) -> None:
        """
        Cancel a remote subscription immediately.

        Raises:
            ProviderError: Any provider failure
        """
