"""
Webhook event handlers for billing provider events.

Events reach this module already verified; transport and signature
checks happen elsewhere. Each handler finds the local subscription the
event refers to and, holding that subscription's lock, either invokes
the matching hook or applies the change the provider already made.

Handled events:
    invoice.payment_succeeded     -> hooks.payment_succeeded(subscription, amount)
    charge.failed                 -> hooks.charge_failed(subscription)
    charge.dispute.created        -> hooks.charge_disputed(subscription)
    customer.subscription.deleted -> local cancellation, no provider call

Usage:
    from billing.webhooks import dispatch_webhook, register_handler

    @register_handler("customer.updated")
    def handle_customer_updated(webhook_event: WebhookEvent) -> ServiceResult:
        ...

    result = dispatch_webhook(webhook_event)
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Callable

from core.services import ServiceResult

from billing.hooks import get_hooks
from billing.locks import subscription_lock
from billing.models import Subscription, WebhookEvent

logger = logging.getLogger(__name__)


# =============================================================================
# Handler Registry
# =============================================================================


# Maps event type strings to handler functions
WEBHOOK_HANDLERS: dict[str, Callable[[WebhookEvent], ServiceResult]] = {}


def register_handler(event_type: str) -> Callable:
    """
    Decorator registering a handler for one provider event type.

    A later registration for the same event type replaces the earlier one.
    """

    def decorator(func: Callable[[WebhookEvent], ServiceResult]) -> Callable:
        WEBHOOK_HANDLERS[event_type] = func
        logger.debug(f"Registered webhook handler for {event_type}")
        return func

    return decorator


def dispatch_webhook(webhook_event: WebhookEvent) -> ServiceResult:
    """
    Route an event to its handler.

    Returns:
        The handler's ServiceResult, or success when no handler is
        registered for the event type
    """
    handler = WEBHOOK_HANDLERS.get(webhook_event.event_type)

    if not handler:
        logger.info(
            f"No handler registered for event type: {webhook_event.event_type}",
            extra={"provider_event_id": webhook_event.provider_event_id},
        )
        return ServiceResult.success(None)

    logger.info(
        f"Dispatching {webhook_event.event_type} to handler",
        extra={"provider_event_id": webhook_event.provider_event_id},
    )
    return handler(webhook_event)


# =============================================================================
# Lookup Helpers
# =============================================================================


def _find_subscription(webhook_event: WebhookEvent, **lookup: str) -> Subscription | None:
    subscription = Subscription.objects.filter(**lookup).first()
    if subscription is None:
        logger.warning(
            f"{webhook_event.event_type}: no subscription found",
            extra={
                "provider_event_id": webhook_event.provider_event_id,
                **lookup,
            },
        )
    return subscription


def _subscription_for_customer(webhook_event: WebhookEvent) -> Subscription | None:
    customer_id = webhook_event.data_object.get("customer")
    if not customer_id:
        return None
    return _find_subscription(webhook_event, provider_customer_id=customer_id)


def _missing_subscription(webhook_event: WebhookEvent) -> ServiceResult:
    return ServiceResult.failure(
        f"No subscription found for {webhook_event.event_type} event",
        error_code="SUBSCRIPTION_NOT_FOUND",
    )


def _invoke_hook(webhook_event: WebhookEvent, hook_name: str, *args) -> ServiceResult:
    subscription = _subscription_for_customer(webhook_event)
    if subscription is None:
        return _missing_subscription(webhook_event)

    with subscription_lock(subscription.pk):
        subscription.refresh_from_db()
        getattr(get_hooks(), hook_name)(subscription, *args)

    logger.info(
        f"Processed {webhook_event.event_type}",
        extra={
            "provider_event_id": webhook_event.provider_event_id,
            "subscription_id": str(subscription.pk),
        },
    )
    return ServiceResult.success(subscription)


# =============================================================================
# Payment Handlers
# =============================================================================


@register_handler("invoice.payment_succeeded")
def handle_invoice_payment_succeeded(webhook_event: WebhookEvent) -> ServiceResult:
    """
    An invoice was paid.

    The amount passed to the hook is the invoice total in major currency
    units (the payload carries minor units).
    """
    total = webhook_event.data_object.get("total")
    if total is None:
        return ServiceResult.failure(
            "Invoice total missing from webhook payload",
            error_code="INVALID_WEBHOOK_PAYLOAD",
        )

    amount = Decimal(total) / Decimal(100)
    return _invoke_hook(webhook_event, "payment_succeeded", amount)


@register_handler("charge.failed")
def handle_charge_failed(webhook_event: WebhookEvent) -> ServiceResult:
    return _invoke_hook(webhook_event, "charge_failed")


@register_handler("charge.dispute.created")
def handle_charge_dispute_created(webhook_event: WebhookEvent) -> ServiceResult:
    return _invoke_hook(webhook_event, "charge_disputed")


# =============================================================================
# Subscription Handlers
# =============================================================================


@register_handler("customer.subscription.deleted")
def handle_subscription_deleted(webhook_event: WebhookEvent) -> ServiceResult:
    """
    The provider ended a subscription (e.g. after failed payment retries).

    The remote subscription is already gone, so the local plan, price and
    remote id are cleared without running a lifecycle pass.
    """
    remote_id = webhook_event.data_object.get("id")
    if not remote_id:
        return ServiceResult.failure(
            "Subscription id missing from webhook payload",
            error_code="INVALID_WEBHOOK_PAYLOAD",
        )

    subscription = _find_subscription(webhook_event, provider_subscription_id=remote_id)
    if subscription is None:
        # Already cancelled locally.
        return ServiceResult.success(None)

    with subscription_lock(subscription.pk):
        subscription.refresh_from_db()
        if subscription.provider_subscription_id == remote_id:
            subscription.plan = None
            subscription.current_price = None
            subscription.provider_subscription_id = None
            subscription.save(process_billing=False)

    logger.info(
        "Cleared subscription deleted by provider",
        extra={
            "provider_event_id": webhook_event.provider_event_id,
            "subscription_id": str(subscription.pk),
            "provider_subscription_id": remote_id,
        },
    )
    return ServiceResult.success(subscription)
