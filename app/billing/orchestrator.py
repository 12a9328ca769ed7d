"""
Subscription lifecycle orchestrator.

One pass runs before a Subscription is saved. It classifies the change
of plan (or notices a new card token), calls hooks and the billing
provider in a fixed order, and writes the resulting remote ids, price
and last four digits onto the subscription in memory. The caller decides
whether to persist based on the returned PassOutcome.

Pass states:
    idle → classified → provider_mutated → finalized
                      ↘ aborted

Branches:
    A. Plan reference changed: new subscription, upgrade, downgrade or
       cancellation, with or without an existing remote customer.
    B. Plan unchanged, card token supplied: replace the card on file.
    C. Neither: nothing to do.

Failure handling:
    - MissingPaymentTokenError, MissingCustomerError: pass aborted before
      any remote call.
    - CardRejectedError while subscribing a new customer: card_was_declined
      hook fires, pass aborted.
    - Any other ProviderError: propagates to the caller. Fields already
      written in memory are left as they are; the caller must not save.

On abort, current_price, provider ids and last_four are restored to
their values at the start of the pass and the user-visible message is
appended to subscription.billing_errors.

The card token and coupon code are cleared when the pass ends, whatever
the result.

Usage:
    orchestrator = LifecycleOrchestrator(provider=StripeBillingProvider())
    outcome = orchestrator.process(subscription)
    if outcome.aborted:
        messages = subscription.billing_errors
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING

from billing.comparator import classify
from billing.exceptions import (
    BillingValidationError,
    CardRejectedError,
    MissingCustomerError,
    MissingPaymentTokenError,
)
from billing.hooks import SubscriptionHooks, get_hooks
from billing.owner import coupon_trial_end, describe_owner, referral_id, tracking_id
from billing.providers import (
    BillingProvider,
    CreateCustomerParams,
    CreateSubscriptionParams,
    IdempotencyKeyGenerator,
    get_provider,
)
from billing.states import PassState, TransitionKind

if TYPE_CHECKING:
    from billing.models import Subscription
    from billing.owner import OwnerDescription


logger = logging.getLogger(__name__)


# =============================================================================
# Pass Result
# =============================================================================


@dataclass
class PassOutcome:
    """
    Result of one orchestration pass.

    Attributes:
        state: FINALIZED or ABORTED
        transition: The classified transition (UNCHANGED for card updates
            and no-op passes)
        provider_mutated: Whether any mutating provider call succeeded
        error: User-visible abort message
        error_code: Machine-readable abort reason
        errors: Every message attached to the subscription by this pass
    """

    state: PassState
    transition: TransitionKind = TransitionKind.UNCHANGED
    provider_mutated: bool = False
    error: str | None = None
    error_code: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def aborted(self) -> bool:
        return self.state == PassState.ABORTED

    @property
    def completed(self) -> bool:
        return self.state == PassState.FINALIZED


@dataclass
class _Snapshot:
    """Subscription fields restored when a pass aborts."""

    current_price: Decimal | None
    provider_customer_id: str | None
    provider_subscription_id: str | None
    last_four: str | None

    @classmethod
    def take(cls, subscription: Subscription) -> _Snapshot:
        return cls(
            current_price=subscription.current_price,
            provider_customer_id=subscription.provider_customer_id,
            provider_subscription_id=subscription.provider_subscription_id,
            last_four=subscription.last_four,
        )

    def restore(self, subscription: Subscription) -> None:
        subscription.current_price = self.current_price
        subscription.provider_customer_id = self.provider_customer_id
        subscription.provider_subscription_id = self.provider_subscription_id
        subscription.last_four = self.last_four


class _CardDeclined(Exception):
    """Internal signal: the card was refused while subscribing a new customer."""

    def __init__(self, error: CardRejectedError):
        super().__init__(error.message)
        self.error = error


def _token_digest(token: str) -> str:
    # Raw card tokens never appear in idempotency keys.
    return hashlib.sha256(token.encode()).hexdigest()[:12]


# =============================================================================
# Orchestrator
# =============================================================================


class LifecycleOrchestrator:
    """
    Runs orchestration passes for subscriptions.

    The provider and hooks are supplied by the caller; when omitted they
    are resolved from BILLING_PROVIDER_CLASS and BILLING_HOOKS_CLASS.
    The orchestrator keeps no state between passes.
    """

    def __init__(
        self,
        provider: BillingProvider | None = None,
        hooks: SubscriptionHooks | None = None,
    ):
        self.provider = provider if provider is not None else get_provider()
        self.hooks = hooks if hooks is not None else get_hooks()

    def process(self, subscription: Subscription) -> PassOutcome:
        """
        Run one pass for the subscription.

        Returns:
            PassOutcome with state FINALIZED or ABORTED

        Raises:
            ProviderError: Any provider failure other than a declined card
                while subscribing a new customer
            PlanOrderingError: Plan ids that cannot be ordered
        """
        log_context = {
            "subscription_id": str(subscription.pk),
            "plan_id": subscription.plan_id,
            "previous_plan_id": subscription.previous_plan_id,
        }
        snapshot = _Snapshot.take(subscription)
        transition = TransitionKind.UNCHANGED
        pass_state = _PassProgress()

        try:
            if subscription.plan_changed:
                transition = classify(subscription.previous_plan_id, subscription.plan_id)

            if transition != TransitionKind.UNCHANGED:
                pass_state.advance(PassState.CLASSIFIED)
                logger.info(
                    f"Processing plan change: {transition}",
                    extra={**log_context, "transition": transition.value},
                )
                self._change_plan(subscription, transition, pass_state)
            elif subscription.card_token:
                pass_state.advance(PassState.CLASSIFIED)
                logger.info("Processing card update", extra=log_context)
                self._update_card(subscription, pass_state)
            else:
                return PassOutcome(state=PassState.FINALIZED)

        except _CardDeclined as declined:
            return self._abort(
                subscription,
                snapshot,
                transition,
                pass_state,
                message=declined.error.message,
                error_code=declined.error.error_code,
            )
        except BillingValidationError as e:
            return self._abort(
                subscription,
                snapshot,
                transition,
                pass_state,
                message=e.message,
                error_code=e.error_code,
            )
        finally:
            subscription.card_token = None
            subscription.coupon_code = None

        pass_state.advance(PassState.FINALIZED)
        logger.info(
            "Subscription pass finalized",
            extra={
                **log_context,
                "transition": transition.value,
                "provider_mutated": pass_state.provider_mutated,
            },
        )
        return PassOutcome(
            state=PassState.FINALIZED,
            transition=transition,
            provider_mutated=pass_state.provider_mutated,
        )

    # =========================================================================
    # Branch A: plan changed
    # =========================================================================

    def _change_plan(
        self,
        subscription: Subscription,
        transition: TransitionKind,
        pass_state: _PassProgress,
    ) -> None:
        self.hooks.prepare_for_plan_change(subscription)

        if subscription.provider_customer_id:
            self.provider.get_customer(subscription.provider_customer_id)
            if subscription.plan is not None:
                self._move_existing_customer(subscription, transition, pass_state)
            else:
                self._cancel(subscription, pass_state)
        elif subscription.plan is not None:
            self._subscribe_new_customer(subscription, pass_state)
        else:
            # Nothing exists remotely to cancel.
            subscription.plan = None
            subscription.current_price = None

        self.hooks.finalize_plan_change(subscription)

    def _move_existing_customer(
        self,
        subscription: Subscription,
        transition: TransitionKind,
        pass_state: _PassProgress,
    ) -> None:
        plan = subscription.plan
        subscription.current_price = plan.price

        downgrading = transition == TransitionKind.DOWNGRADE
        upgrading = transition.is_upgrade

        if downgrading:
            self.hooks.prepare_for_downgrade(subscription)
        if upgrading:
            self.hooks.prepare_for_upgrade(subscription)

        owner = describe_owner(subscription.owner)

        if subscription.provider_subscription_id:
            self.provider.update_subscription(
                subscription.provider_subscription_id,
                plan.provider_plan_id,
                owner.quantity,
                idempotency_key=IdempotencyKeyGenerator.generate(
                    operation="update_subscription",
                    entity_id=(
                        f"{subscription.provider_subscription_id}:"
                        f"{plan.provider_plan_id}:{subscription.version}"
                    ),
                ),
            )
        else:
            remote = self.provider.create_subscription(
                self._subscription_params(subscription, owner, trial_end=None)
            )
            subscription.provider_subscription_id = remote.id
        pass_state.mark_mutated()

        if downgrading:
            self.hooks.finalize_downgrade(subscription)
        if upgrading:
            self.hooks.finalize_upgrade(subscription)

    def _cancel(self, subscription: Subscription, pass_state: _PassProgress) -> None:
        self.hooks.prepare_for_cancelation(subscription)

        subscription.current_price = None
        remote_id = subscription.provider_subscription_id
        if remote_id:
            self.provider.delete_subscription(
                remote_id,
                idempotency_key=IdempotencyKeyGenerator.generate(
                    operation="delete_subscription",
                    entity_id=remote_id,
                ),
            )
            pass_state.mark_mutated()
        subscription.provider_subscription_id = None

        self.hooks.finalize_cancelation(subscription)

    def _subscribe_new_customer(
        self, subscription: Subscription, pass_state: _PassProgress
    ) -> None:
        plan = subscription.plan
        subscription.current_price = plan.price

        self.hooks.prepare_for_new_subscription(subscription)
        self.hooks.prepare_for_upgrade(subscription)

        token = subscription.card_token
        if not token:
            raise MissingPaymentTokenError(
                "No card token received. Check for JavaScript errors "
                "breaking the card form on the previous page."
            )

        owner = describe_owner(subscription.owner)
        metadata = dict(owner.metadata)
        referral = referral_id(subscription)
        if referral:
            metadata["referral"] = referral

        try:
            customer = self.provider.create_customer(
                CreateCustomerParams(
                    description=owner.description,
                    email=owner.email,
                    payment_token=token,
                    metadata=metadata,
                    coupon_code=subscription.coupon_code or None,
                    idempotency_key=IdempotencyKeyGenerator.generate(
                        operation="create_customer",
                        entity_id=f"{subscription.pk}:{_token_digest(token)}",
                    ),
                )
            )
            pass_state.mark_mutated()

            self.hooks.finalize_new_customer(subscription, customer.id, plan.price)
            subscription.provider_customer_id = customer.id

            remote = self.provider.create_subscription(
                self._subscription_params(
                    subscription, owner, trial_end=coupon_trial_end(subscription)
                )
            )
        except CardRejectedError as e:
            self.hooks.card_was_declined(subscription)
            raise _CardDeclined(e) from e

        subscription.provider_subscription_id = remote.id
        subscription.last_four = customer.last_four

        self.hooks.finalize_new_subscription(subscription)
        self.hooks.finalize_upgrade(subscription)

    def _subscription_params(
        self,
        subscription: Subscription,
        owner: OwnerDescription,
        trial_end: int | None,
    ) -> CreateSubscriptionParams:
        metadata = {}
        identifier = tracking_id(subscription)
        if identifier:
            metadata["identifier"] = identifier

        plan_id = subscription.plan.provider_plan_id
        return CreateSubscriptionParams(
            customer_id=subscription.provider_customer_id,
            plan_id=plan_id,
            quantity=owner.quantity,
            metadata=metadata,
            trial_end=trial_end,
            idempotency_key=IdempotencyKeyGenerator.generate(
                operation="create_subscription",
                entity_id=f"{subscription.pk}:{plan_id}:{subscription.version}",
            ),
        )

    # =========================================================================
    # Branch B: card update
    # =========================================================================

    def _update_card(self, subscription: Subscription, pass_state: _PassProgress) -> None:
        customer_id = subscription.provider_customer_id
        if not customer_id:
            raise MissingCustomerError(
                "A card can only be updated once a subscription has been started."
            )

        self.hooks.prepare_for_card_update(subscription)

        self.provider.get_customer(customer_id)
        token = subscription.card_token
        customer = self.provider.update_customer_payment_instrument(
            customer_id,
            token,
            idempotency_key=IdempotencyKeyGenerator.generate(
                operation="update_payment_instrument",
                entity_id=f"{customer_id}:{_token_digest(token)}",
            ),
        )
        pass_state.mark_mutated()
        subscription.last_four = customer.last_four

        self.hooks.finalize_card_update(subscription)

    # =========================================================================
    # Abort
    # =========================================================================

    def _abort(
        self,
        subscription: Subscription,
        snapshot: _Snapshot,
        transition: TransitionKind,
        pass_state: _PassProgress,
        message: str,
        error_code: str,
    ) -> PassOutcome:
        snapshot.restore(subscription)
        subscription.billing_errors.append(message)
        pass_state.advance(PassState.ABORTED)

        logger.warning(
            "Subscription pass aborted",
            extra={
                "subscription_id": str(subscription.pk),
                "transition": transition.value,
                "error_code": error_code,
                "provider_mutated": pass_state.provider_mutated,
            },
        )
        return PassOutcome(
            state=PassState.ABORTED,
            transition=transition,
            provider_mutated=pass_state.provider_mutated,
            error=message,
            error_code=error_code,
            errors=list(subscription.billing_errors),
        )


class _PassProgress:
    """Tracks the state of the pass currently running."""

    def __init__(self) -> None:
        self.state = PassState.IDLE
        self.provider_mutated = False

    def advance(self, state: PassState) -> None:
        logger.debug(f"Pass state {self.state} -> {state}")
        self.state = state

    def mark_mutated(self) -> None:
        self.provider_mutated = True
        if self.state == PassState.CLASSIFIED:
            self.advance(PassState.PROVIDER_MUTATED)
