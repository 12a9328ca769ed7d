"""
Subscription lifecycle hooks.

The orchestrator calls these extension points at fixed positions in a
pass. Every hook is a no-op here; the embedding application subclasses
SubscriptionHooks and points BILLING_HOOKS_CLASS at the subclass.

Each hook receives the Subscription being processed as its first
argument. Hooks run inside the pass, before the subscription is saved:
an exception raised from a hook propagates out of Subscription.save()
and the subscription is not persisted.

Hook order for a brand-new subscription:
    prepare_for_plan_change
    prepare_for_new_subscription
    prepare_for_upgrade
    finalize_new_customer
    finalize_new_subscription
    finalize_upgrade
    finalize_plan_change

Webhook callbacks (payment_succeeded, charge_failed, charge_disputed) are
invoked by billing.webhooks, never by the orchestrator.

Usage:
    class AppSubscriptionHooks(SubscriptionHooks):
        def finalize_upgrade(self, subscription):
            send_upgrade_email.delay(subscription.owner_id)

    # settings.py
    BILLING_HOOKS_CLASS = "accounts.billing.AppSubscriptionHooks"
"""

from __future__ import annotations

from decimal import Decimal
from typing import TYPE_CHECKING

from django.conf import settings
from django.utils.module_loading import import_string

if TYPE_CHECKING:
    from billing.models import Subscription


class SubscriptionHooks:
    """Default hook set: every extension point does nothing."""

    # =========================================================================
    # Plan Change
    # =========================================================================

    def prepare_for_plan_change(self, subscription: Subscription) -> None:
        """Before any classified transition other than unchanged."""

    def finalize_plan_change(self, subscription: Subscription) -> None:
        """After any classified transition other than unchanged."""

    def prepare_for_new_subscription(self, subscription: Subscription) -> None:
        pass

    def finalize_new_subscription(self, subscription: Subscription) -> None:
        pass

    def prepare_for_upgrade(self, subscription: Subscription) -> None:
        """Fires for upgrades and for new subscriptions."""

    def finalize_upgrade(self, subscription: Subscription) -> None:
        """Fires for upgrades and for new subscriptions."""

    def prepare_for_downgrade(self, subscription: Subscription) -> None:
        pass

    def finalize_downgrade(self, subscription: Subscription) -> None:
        pass

    def prepare_for_cancelation(self, subscription: Subscription) -> None:
        pass

    def finalize_cancelation(self, subscription: Subscription) -> None:
        pass

    # =========================================================================
    # Customer and Card
    # =========================================================================

    def finalize_new_customer(
        self,
        subscription: Subscription,
        customer_id: str,
        price: Decimal,
    ) -> None:
        """
        A remote customer for this subscription was created.

        Fires once per created customer. If the provider then declines the
        card while creating the subscription, the pass aborts and the local
        customer id is rolled back, so the next attempt creates another
        remote customer and this hook fires again for it.

        Args:
            subscription: The subscription being processed
            customer_id: The new remote customer id
            price: Price of the plan being subscribed to
        """

    def prepare_for_card_update(self, subscription: Subscription) -> None:
        pass

    def finalize_card_update(self, subscription: Subscription) -> None:
        pass

    def card_was_declined(self, subscription: Subscription) -> None:
        """The provider refused the card while subscribing."""

    # =========================================================================
    # Webhook Callbacks
    # =========================================================================

    def payment_succeeded(self, subscription: Subscription, amount: Decimal) -> None:
        """
        An invoice for this subscription was paid.

        Args:
            subscription: The subscription the invoice belongs to
            amount: Amount paid, in major currency units
        """

    def charge_failed(self, subscription: Subscription) -> None:
        pass

    def charge_disputed(self, subscription: Subscription) -> None:
        pass


def get_hooks() -> SubscriptionHooks:
    """Instantiate the hook class named by BILLING_HOOKS_CLASS."""
    hooks_class = import_string(settings.BILLING_HOOKS_CLASS)
    return hooks_class()
