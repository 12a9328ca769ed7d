"""
Subscription service: the entry point for changing a subscription.

Every operation runs its lifecycle pass while holding the subscription's
distributed lock and inside a database transaction, so passes for one
subscription never interleave and an aborted or failed pass leaves the
row untouched.

Usage:
    from billing.services import SubscriptionService

    result = SubscriptionService.subscribe(owner=user, plan=pro, card_token="tok_visa")
    if not result.success:
        form.add_error(None, result.error)

    SubscriptionService.change_plan(subscription.pk, plan=basic)
    SubscriptionService.update_card(subscription.pk, card_token="tok_new")
    SubscriptionService.cancel(subscription.pk, expected_version=subscription.version)
"""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Callable

from core.exceptions import NotFoundError
from core.services import BaseService, ServiceResult

from billing.exceptions import (
    LockAcquisitionError,
    ProviderError,
    StaleRecordError,
    SubscriptionAbortedError,
)
from billing.locks import check_version, subscription_lock
from billing.models import Subscription
from billing.orchestrator import LifecycleOrchestrator

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser

    from billing.models import Plan


class SubscriptionService(BaseService):
    """
    Serialized subscription changes returning ServiceResult.

    Expected failures (declined card, missing token, stale version) come
    back as failed results. Transient provider failures and lock timeouts
    are raised so callers can retry them.
    """

    # Orchestrator - can be injected for testing
    _orchestrator: LifecycleOrchestrator | None = None

    @classmethod
    def get_orchestrator(cls) -> LifecycleOrchestrator:
        return cls._orchestrator or LifecycleOrchestrator()

    @classmethod
    def set_orchestrator(cls, orchestrator: LifecycleOrchestrator | None) -> None:
        """Set the orchestrator (for testing)."""
        cls._orchestrator = orchestrator

    # =========================================================================
    # Operations
    # =========================================================================

    @classmethod
    def subscribe(
        cls,
        owner: AbstractBaseUser,
        plan: Plan,
        card_token: str | None,
        coupon_code: str | None = None,
        referral_id: str = "",
        tracking_id: str = "",
    ) -> ServiceResult[Subscription]:
        """
        Create a subscription and its remote customer and subscription.

        Returns:
            ServiceResult with the saved Subscription, or a failure for a
            missing or declined card
        """
        subscription = Subscription(
            owner=owner,
            referral_id=referral_id,
            tracking_id=tracking_id,
        )

        def apply(instance: Subscription) -> None:
            instance.plan = plan
            instance.card_token = card_token
            instance.coupon_code = coupon_code

        return cls._run(subscription.pk, "subscribe", apply, instance=subscription)

    @classmethod
    def change_plan(
        cls,
        subscription_id: uuid.UUID,
        plan: Plan | None,
        card_token: str | None = None,
        coupon_code: str | None = None,
        expected_version: int | None = None,
    ) -> ServiceResult[Subscription]:
        """
        Move a subscription to another plan, or to no plan (plan=None).

        card_token and coupon_code are only used when no remote customer
        exists yet.
        """

        def apply(instance: Subscription) -> None:
            instance.plan = plan
            instance.card_token = card_token
            instance.coupon_code = coupon_code

        return cls._run(subscription_id, "change_plan", apply, expected_version=expected_version)

    @classmethod
    def update_card(
        cls,
        subscription_id: uuid.UUID,
        card_token: str,
        expected_version: int | None = None,
    ) -> ServiceResult[Subscription]:
        """Replace the card on file with a new card token."""

        def apply(instance: Subscription) -> None:
            instance.card_token = card_token

        return cls._run(subscription_id, "update_card", apply, expected_version=expected_version)

    @classmethod
    def cancel(
        cls,
        subscription_id: uuid.UUID,
        expected_version: int | None = None,
    ) -> ServiceResult[Subscription]:
        """Cancel the remote subscription and clear the plan."""
        return cls.change_plan(subscription_id, plan=None, expected_version=expected_version)

    # =========================================================================
    # Internals
    # =========================================================================

    @classmethod
    def _run(
        cls,
        subscription_id: uuid.UUID,
        operation: str,
        apply: Callable[[Subscription], None],
        expected_version: int | None = None,
        instance: Subscription | None = None,
    ) -> ServiceResult[Subscription]:
        logger = cls.get_logger()
        log_context = {
            "operation": operation,
            "subscription_id": str(subscription_id),
        }
        logger.info("Starting subscription operation", extra=log_context)

        try:
            with subscription_lock(subscription_id):
                with cls.atomic():
                    subscription = instance or cls._load(subscription_id, expected_version)
                    apply(subscription)
                    subscription.save(orchestrator=cls.get_orchestrator())

        except LockAcquisitionError:
            logger.warning("Subscription is locked by another operation", extra=log_context)
            raise

        except SubscriptionAbortedError as e:
            logger.info(
                "Subscription operation aborted",
                extra={**log_context, "error_code": e.details.get("reason")},
            )
            return ServiceResult.from_exception(e)

        except (NotFoundError, StaleRecordError) as e:
            logger.warning(
                f"Subscription operation rejected: {e.error_code}",
                extra={**log_context, "error": e.message},
            )
            return ServiceResult.from_exception(e)

        except ProviderError as e:
            logger.error(
                f"Billing provider error: {type(e).__name__}",
                extra={
                    **log_context,
                    "error": e.message,
                    "error_code": e.error_code,
                    "is_retryable": e.is_retryable,
                },
            )
            if e.is_retryable:
                raise
            return ServiceResult.from_exception(e)

        logger.info(
            "Subscription operation completed",
            extra={**log_context, "version": subscription.version},
        )
        return ServiceResult.success(subscription)

    @classmethod
    def _load(cls, subscription_id: uuid.UUID, expected_version: int | None) -> Subscription:
        if expected_version is not None:
            return check_version(Subscription, subscription_id, expected_version)

        subscription = (
            Subscription.objects.select_for_update().filter(pk=subscription_id).first()
        )
        if subscription is None:
            raise NotFoundError(
                f"Subscription {subscription_id} not found",
                error_code="SUBSCRIPTION_NOT_FOUND",
                details={"pk": str(subscription_id)},
            )
        return subscription
