"""
Optional-capability interface for subscription owners.

The owner of a subscription is whatever model Subscription.owner points
at. The lifecycle only needs a description, an email address, metadata
and a seat quantity from it, and looks each one up by attribute. A
missing attribute falls through to the next candidate; nothing here
inspects the owner's class.

Owner attributes consulted (first present, non-empty value wins):
    description: billing_name, name, get_full_name(), pk
    email:       formatted_email_address, email
    metadata:    billing_metadata
    quantity:    subscription_quantity (default 1)

Subscription attributes consulted, all optional:
    referral_id: merged into customer metadata as "referral"
    coupon:      object with is_free_trial and trial_end_timestamp
    tracking_id: sent as subscription metadata "identifier"
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

_MISSING_VALUES = (None, "")


def _first_present(obj: Any, attributes: tuple[str, ...]) -> Any:
    """Return the first attribute (called if callable) with a usable value."""
    for attribute in attributes:
        value = getattr(obj, attribute, None)
        if callable(value):
            value = value()
        if value not in _MISSING_VALUES:
            return value
    return None


@dataclass
class OwnerDescription:
    """
    What the billing provider is told about a subscription owner.

    Attributes:
        description: Human-readable name for the remote customer
        email: Email address for the remote customer
        metadata: Key-value pairs attached to the remote customer
        quantity: Seat quantity for the remote subscription
    """

    description: str
    email: str
    metadata: dict[str, str] = field(default_factory=dict)
    quantity: int = 1


def describe_owner(owner: Any) -> OwnerDescription:
    """
    Describe an owner from whatever capabilities it exposes.

    Example:
        describe_owner(user)
        # OwnerDescription(description="Ada Lovelace", email="ada@example.com", ...)
    """
    description = _first_present(owner, ("billing_name", "name", "get_full_name", "pk"))
    email = _first_present(owner, ("formatted_email_address", "email"))
    metadata = getattr(owner, "billing_metadata", None) or {}
    quantity = getattr(owner, "subscription_quantity", None) or 1

    return OwnerDescription(
        description="" if description is None else str(description),
        email="" if email is None else str(email),
        metadata=dict(metadata),
        quantity=int(quantity),
    )


def referral_id(subscription: Any) -> str | None:
    value = getattr(subscription, "referral_id", None)
    return value or None


def tracking_id(subscription: Any) -> str | None:
    value = getattr(subscription, "tracking_id", None)
    return value or None


def coupon_trial_end(subscription: Any) -> int | None:
    """
    Unix timestamp ending a coupon's free trial, if the subscription has one.

    trial_end_timestamp may be a datetime or a number of seconds.
    """
    coupon = getattr(subscription, "coupon", None)
    if coupon is None or not getattr(coupon, "is_free_trial", False):
        return None

    trial_end = getattr(coupon, "trial_end_timestamp", None)
    if trial_end is None:
        return None
    if isinstance(trial_end, datetime):
        return int(trial_end.timestamp())
    return int(trial_end)
