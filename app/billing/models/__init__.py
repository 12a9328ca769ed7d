"""
Billing domain models.

- Plan: A purchasable tier at the billing provider
- Subscription: A user's subscription, kept in sync with the provider
- WebhookEvent: Provider webhook events stored for idempotent processing
"""

from billing.models.plan import Plan
from billing.models.subscription import Subscription
from billing.models.webhook_event import WebhookEvent

__all__ = [
    "Plan",
    "Subscription",
    "WebhookEvent",
]
