"""
Billing provider implementations.

get_provider() returns the provider configured by BILLING_PROVIDER_CLASS.
"""

from __future__ import annotations

from django.conf import settings
from django.utils.module_loading import import_string

from billing.providers.base import (
    BillingProvider,
    CreateCustomerParams,
    CreateSubscriptionParams,
    CustomerResult,
    IdempotencyKeyGenerator,
    SubscriptionResult,
    backoff_delay,
    is_retryable_provider_error,
)


def get_provider() -> BillingProvider:
    """Instantiate the provider class named by BILLING_PROVIDER_CLASS."""
    provider_class = import_string(settings.BILLING_PROVIDER_CLASS)
    return provider_class()


__all__ = [
    "BillingProvider",
    "CreateCustomerParams",
    "CreateSubscriptionParams",
    "CustomerResult",
    "IdempotencyKeyGenerator",
    "SubscriptionResult",
    "backoff_delay",
    "get_provider",
    "is_retryable_provider_error",
]
