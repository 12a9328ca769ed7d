"""
Subscription model kept in sync with the billing provider.

Saving a Subscription runs one lifecycle pass first (see
billing.orchestrator). The pass reads the change of plan since the row
was loaded and any transient card token or coupon code set on the
instance, calls the provider, and writes the resulting remote ids,
price and last four digits onto the instance. If the pass aborts the
row is not written and SubscriptionAbortedError is raised.

Usage:
    from billing.models import Plan, Subscription

    subscription = Subscription(owner=user)
    subscription.plan = Plan.objects.get(provider_plan_id="price_pro")
    subscription.card_token = "tok_visa"  # from the client-side card form
    subscription.save()

    # Cancel
    subscription.plan = None
    subscription.save()
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from django.conf import settings
from django.db import models
from django.db.models import F

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from billing.comparator import describe_difference
from billing.exceptions import SubscriptionAbortedError
from billing.orchestrator import LifecycleOrchestrator

if TYPE_CHECKING:
    from billing.models.plan import Plan
    from billing.states import PlanDifference


class Subscription(UUIDPrimaryKeyMixin, BaseModel):
    """
    A recurring subscription owned by a user.

    Invariants:
        current_price is set if and only if plan is set
        provider_subscription_id is set if and only if a remote
            subscription exists
        provider_customer_id is never cleared once set

    Transient attributes (never stored):
        card_token: One-time card token from the client-side card form
        coupon_code: Coupon applied when the remote customer is created
        billing_errors: User-visible messages from the last pass

    Fields:
        owner: User the subscription belongs to
        plan: Current plan, null when there is no active plan
        current_price: Price snapshot taken when the plan became active
        provider_customer_id: Remote customer ID (cus_xxx)
        provider_subscription_id: Remote subscription ID (sub_xxx)
        last_four: Last four digits of the card on file
        referral_id: Affiliate referral, sent as customer metadata
        tracking_id: Third-party tracking id, sent as subscription metadata
        version: Optimistic locking version
    """

    card_token: str | None = None
    coupon_code: str | None = None
    _loaded_plan_id: int | None = None
    _billing_errors: list[str] | None = None

    # ==========================================================================
    # Relationships
    # ==========================================================================

    owner = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="billing_subscriptions",
        help_text="User the subscription belongs to",
    )

    plan = models.ForeignKey(
        "billing.Plan",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="subscriptions",
        help_text="Current plan (null when cancelled or not yet started)",
    )

    current_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Price snapshot taken when the current plan became active",
    )

    # ==========================================================================
    # Provider Integration
    # ==========================================================================

    provider_customer_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        db_index=True,
        help_text="Remote customer ID (cus_xxx)",
    )

    provider_subscription_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="Remote subscription ID (sub_xxx)",
    )

    last_four = models.CharField(
        max_length=4,
        null=True,
        blank=True,
        help_text="Last four digits of the card on file",
    )

    # ==========================================================================
    # Attribution
    # ==========================================================================

    referral_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Affiliate referral id, sent as remote customer metadata",
    )

    tracking_id = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Third-party tracking id, sent as remote subscription metadata",
    )

    # ==========================================================================
    # Concurrency Control
    # ==========================================================================

    version = models.PositiveIntegerField(
        default=1,
        help_text="Version for optimistic locking - incremented on each save",
    )

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"

    def __str__(self) -> str:
        return f"Subscription({self.id}, plan={self.plan_id})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._loaded_plan_id = instance.plan_id
        return instance

    def refresh_from_db(self, using=None, fields=None, **kwargs):
        super().refresh_from_db(using=using, fields=fields, **kwargs)
        if fields is None or {"plan", "plan_id"} & set(fields):
            self._loaded_plan_id = self.plan_id

    # ==========================================================================
    # Plan Change Tracking
    # ==========================================================================

    @property
    def previous_plan_id(self) -> int | None:
        """Plan id as last loaded from or saved to the database."""
        return self._loaded_plan_id

    @property
    def plan_changed(self) -> bool:
        return self.plan_id != self._loaded_plan_id

    @property
    def billing_errors(self) -> list[str]:
        if self._billing_errors is None:
            self._billing_errors = []
        return self._billing_errors

    # ==========================================================================
    # Persistence
    # ==========================================================================

    def save(
        self,
        *args,
        orchestrator: LifecycleOrchestrator | None = None,
        process_billing: bool = True,
        **kwargs,
    ):
        """
        Run a lifecycle pass, then save with version auto-increment.

        Args:
            orchestrator: Orchestrator to run the pass with (default:
                one built from settings)
            process_billing: Skip the pass when False, e.g. when applying
                a change the provider already made

        Raises:
            SubscriptionAbortedError: The pass aborted; nothing was saved
            ProviderError: The provider failed; nothing was saved
        """
        if process_billing:
            self.billing_errors.clear()
            if orchestrator is None:
                orchestrator = LifecycleOrchestrator()

            outcome = orchestrator.process(self)
            if outcome.aborted:
                raise SubscriptionAbortedError(
                    outcome.error,
                    details={
                        "base": list(outcome.errors),
                        "reason": outcome.error_code,
                        "transition": outcome.transition.value,
                    },
                )

        is_update = not self._state.adding and not kwargs.get("force_insert", False)
        if is_update:
            self.version = F("version") + 1
            update_fields = kwargs.get("update_fields")
            if update_fields is not None:
                kwargs["update_fields"] = {*update_fields, "version"}

        super().save(*args, **kwargs)

        if is_update:
            self.refresh_from_db(fields=["version"])
        self._loaded_plan_id = self.plan_id

    # ==========================================================================
    # Presentation
    # ==========================================================================

    def describe_difference(self, candidate: Plan) -> PlanDifference:
        """
        Label a candidate plan relative to the current one.

        Returns:
            PlanDifference.START_TRIAL, UPGRADE or DOWNGRADE
        """
        return describe_difference(
            self.plan,
            candidate,
            persisted=not self._state.adding,
            free_trial=getattr(settings, "BILLING_FREE_TRIAL", False),
        )

    @property
    def is_active(self) -> bool:
        return self.plan_id is not None
