"""
Subscription billing kept in sync with a remote billing provider.

Entry points:
    - billing.models.Subscription: saving runs one lifecycle pass
    - billing.services.SubscriptionService: serialized plan/card changes
    - billing.webhooks.dispatch_webhook: verified provider event callbacks
"""
