"""
Tests for the subscription lifecycle orchestrator.

Every pass runs against FakeProvider and RecordingHooks, so the tests
assert on the exact sequence of remote calls and hook invocations.
"""

from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest

from billing.exceptions import (
    CardRejectedError,
    ProviderNotFoundError,
    ProviderUnavailableError,
)
from billing.models import Subscription
from billing.orchestrator import LifecycleOrchestrator
from billing.states import PassState, TransitionKind
from billing.tests.factories import PlanFactory

pytestmark = pytest.mark.django_db


# =============================================================================
# Concrete Scenarios
# =============================================================================


class TestNewCustomer:
    """New subscription for an owner with no remote customer."""

    def test_subscribes_new_customer(
        self, new_subscription, pro_plan, orchestrator, fake_provider, recording_hooks
    ):
        """Should create customer and subscription, firing hooks in order."""
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_ok"

        outcome = orchestrator.process(new_subscription)

        assert outcome.completed
        assert outcome.transition == TransitionKind.NEW_SUBSCRIPTION
        assert outcome.provider_mutated is True
        assert fake_provider.operations == ["create_customer", "create_subscription"]
        assert new_subscription.provider_customer_id == "cus_new"
        assert new_subscription.provider_subscription_id == "sub_new"
        assert new_subscription.current_price == Decimal("20.00")
        assert new_subscription.last_four == "4242"
        assert recording_hooks.calls == [
            "prepare_for_plan_change",
            "prepare_for_new_subscription",
            "prepare_for_upgrade",
            "finalize_new_customer",
            "finalize_new_subscription",
            "finalize_upgrade",
            "finalize_plan_change",
        ]

    def test_customer_and_subscription_params(
        self, new_subscription, pro_plan, user, orchestrator, fake_provider
    ):
        """Should describe the owner and subscribe to the plan's remote id."""
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_ok"

        orchestrator.process(new_subscription)

        (customer_params,) = fake_provider.args_for("create_customer")
        assert customer_params.payment_token == "tok_ok"
        assert customer_params.email == user.email
        assert customer_params.description == "Ada Lovelace"
        assert customer_params.coupon_code is None

        (subscription_params,) = fake_provider.args_for("create_subscription")
        assert subscription_params.customer_id == "cus_new"
        assert subscription_params.plan_id == "P2"
        assert subscription_params.quantity == 1
        assert subscription_params.trial_end is None

    def test_finalize_new_customer_receives_id_and_price(
        self, new_subscription, pro_plan, orchestrator, recording_hooks
    ):
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_ok"

        orchestrator.process(new_subscription)

        assert recording_hooks.arguments["finalize_new_customer"] == (
            "cus_new",
            Decimal("20.00"),
        )

    def test_free_plan_snapshots_zero_price(
        self, new_subscription, orchestrator, fake_provider, recording_hooks
    ):
        free_plan = PlanFactory(name="Free", provider_plan_id="P0", price=Decimal("0.00"))
        new_subscription.plan = free_plan
        new_subscription.card_token = "tok_ok"

        outcome = orchestrator.process(new_subscription)

        assert outcome.completed
        assert new_subscription.current_price == Decimal("0.00")
        assert recording_hooks.arguments["finalize_new_customer"] == (
            "cus_new",
            Decimal("0.00"),
        )

    def test_missing_token_aborts_without_remote_calls(
        self, new_subscription, pro_plan, orchestrator, fake_provider
    ):
        """Should abort with MISSING_PAYMENT_TOKEN and leave fields unset."""
        new_subscription.plan = pro_plan

        outcome = orchestrator.process(new_subscription)

        assert outcome.aborted
        assert outcome.error_code == "MISSING_PAYMENT_TOKEN"
        assert outcome.provider_mutated is False
        assert fake_provider.calls == []
        assert new_subscription.current_price is None
        assert new_subscription.provider_customer_id is None
        assert new_subscription.provider_subscription_id is None
        assert len(new_subscription.billing_errors) == 1
        assert "No card token received" in new_subscription.billing_errors[0]


class TestDowngrade:
    """Existing customer moving to a cheaper plan."""

    def test_updates_remote_subscription(
        self, active_subscription, basic_plan, orchestrator, fake_provider, recording_hooks
    ):
        active_subscription.plan = basic_plan

        outcome = orchestrator.process(active_subscription)

        assert outcome.completed
        assert outcome.transition == TransitionKind.DOWNGRADE
        assert fake_provider.operations == ["get_customer", "update_subscription"]
        subscription_id, plan_id, quantity, _ = fake_provider.args_for("update_subscription")
        assert (subscription_id, plan_id, quantity) == ("sub_1", "P1", 1)
        assert active_subscription.current_price == Decimal("10.00")
        assert recording_hooks.calls == [
            "prepare_for_plan_change",
            "prepare_for_downgrade",
            "finalize_downgrade",
            "finalize_plan_change",
        ]

    def test_upgrade_fires_upgrade_hooks(
        self, user, basic_plan, pro_plan, orchestrator, fake_provider, recording_hooks
    ):
        from billing.tests.factories import SubscriptionFactory

        subscription = SubscriptionFactory(
            owner=user,
            plan=basic_plan,
            current_price=basic_plan.price,
            provider_customer_id="cus_1",
            provider_subscription_id="sub_1",
        )
        subscription.plan = pro_plan

        outcome = orchestrator.process(subscription)

        assert outcome.transition == TransitionKind.UPGRADE
        assert "create_subscription" not in fake_provider.operations
        assert recording_hooks.calls == [
            "prepare_for_plan_change",
            "prepare_for_upgrade",
            "finalize_upgrade",
            "finalize_plan_change",
        ]

    def test_plan_change_takes_precedence_over_card_token(
        self, active_subscription, basic_plan, orchestrator, fake_provider, recording_hooks
    ):
        """Should move the plan and leave the stored card alone."""
        active_subscription.plan = basic_plan
        active_subscription.card_token = "tok_new"

        outcome = orchestrator.process(active_subscription)

        assert outcome.completed
        assert outcome.transition == TransitionKind.DOWNGRADE
        assert fake_provider.operations == ["get_customer", "update_subscription"]
        assert "prepare_for_card_update" not in recording_hooks.calls
        assert "finalize_card_update" not in recording_hooks.calls
        assert active_subscription.last_four == "4242"
        assert active_subscription.card_token is None


class TestCancellation:
    """Existing customer moving to no plan."""

    def test_deletes_remote_subscription(
        self, active_subscription, orchestrator, fake_provider, recording_hooks
    ):
        active_subscription.plan = None

        outcome = orchestrator.process(active_subscription)

        assert outcome.completed
        assert outcome.transition == TransitionKind.CANCELLATION
        assert fake_provider.operations == ["get_customer", "delete_subscription"]
        assert fake_provider.args_for("delete_subscription")[0] == "sub_1"
        assert active_subscription.provider_subscription_id is None
        assert active_subscription.current_price is None
        assert active_subscription.provider_customer_id == "cus_1"
        assert recording_hooks.calls == [
            "prepare_for_plan_change",
            "prepare_for_cancelation",
            "finalize_cancelation",
            "finalize_plan_change",
        ]

    def test_without_remote_subscription_skips_delete(
        self, user, pro_plan, orchestrator, fake_provider, recording_hooks
    ):
        from billing.tests.factories import SubscriptionFactory

        subscription = SubscriptionFactory(
            owner=user,
            plan=pro_plan,
            current_price=pro_plan.price,
            provider_customer_id="cus_1",
        )
        subscription.plan = None

        outcome = orchestrator.process(subscription)

        assert outcome.completed
        assert outcome.provider_mutated is False
        assert fake_provider.operations == ["get_customer"]
        assert "finalize_cancelation" in recording_hooks.calls

    def test_delete_failure_propagates(
        self, active_subscription, orchestrator, fake_provider, recording_hooks
    ):
        fake_provider.failures["delete_subscription"] = ProviderUnavailableError(
            "Stripe service error. Please retry."
        )
        active_subscription.plan = None

        with pytest.raises(ProviderUnavailableError):
            orchestrator.process(active_subscription)

        assert fake_provider.operations == ["get_customer", "delete_subscription"]
        assert "finalize_cancelation" not in recording_hooks.calls

    def test_delete_failure_leaves_row_untouched(
        self, active_subscription, pro_plan, orchestrator, fake_provider
    ):
        fake_provider.failures["delete_subscription"] = ProviderUnavailableError(
            "Stripe service error. Please retry."
        )
        active_subscription.plan = None

        with pytest.raises(ProviderUnavailableError):
            active_subscription.save(orchestrator=orchestrator)

        stored = Subscription.objects.get(pk=active_subscription.pk)
        assert stored.plan_id == pro_plan.pk
        assert stored.provider_subscription_id == "sub_1"
        assert stored.current_price == Decimal("20.00")
        assert stored.version == 1


class TestCardUpdate:
    """Plan unchanged, new card token supplied."""

    def test_replaces_card(
        self, active_subscription, orchestrator, fake_provider, recording_hooks
    ):
        active_subscription.card_token = "tok_new"

        outcome = orchestrator.process(active_subscription)

        assert outcome.completed
        assert outcome.transition == TransitionKind.UNCHANGED
        assert outcome.provider_mutated is True
        assert fake_provider.operations == [
            "get_customer",
            "update_customer_payment_instrument",
        ]
        customer_id, token, _ = fake_provider.args_for("update_customer_payment_instrument")
        assert (customer_id, token) == ("cus_1", "tok_new")
        assert active_subscription.last_four == "1881"
        assert recording_hooks.calls == ["prepare_for_card_update", "finalize_card_update"]

    def test_without_customer_aborts_before_hooks(
        self, new_subscription, orchestrator, fake_provider, recording_hooks
    ):
        new_subscription.card_token = "tok_new"

        outcome = orchestrator.process(new_subscription)

        assert outcome.aborted
        assert outcome.error_code == "MISSING_BILLING_CUSTOMER"
        assert fake_provider.calls == []
        assert recording_hooks.calls == []

    def test_declined_card_propagates(self, active_subscription, orchestrator, fake_provider):
        """Only new-customer declines are recovered inside the pass."""
        fake_provider.failures["update_customer_payment_instrument"] = CardRejectedError(
            "Your card was declined."
        )
        active_subscription.card_token = "tok_bad"

        with pytest.raises(CardRejectedError):
            orchestrator.process(active_subscription)

        assert active_subscription.card_token is None


# =============================================================================
# Properties
# =============================================================================


class TestIdempotence:
    def test_unchanged_plan_makes_no_calls(
        self, active_subscription, orchestrator, fake_provider, recording_hooks
    ):
        """Should make no remote calls on repeated passes with nothing to do."""
        first = orchestrator.process(active_subscription)
        second = orchestrator.process(active_subscription)

        assert first.state == PassState.FINALIZED
        assert second.state == PassState.FINALIZED
        assert fake_provider.calls == []
        assert recording_hooks.calls == []

    def test_new_subscription_without_plan_or_token_is_noop(
        self, new_subscription, orchestrator, fake_provider
    ):
        outcome = orchestrator.process(new_subscription)

        assert outcome.completed
        assert fake_provider.calls == []


class TestRollback:
    def test_card_rejected_on_create_customer(
        self, new_subscription, pro_plan, orchestrator, fake_provider, recording_hooks
    ):
        """Should restore fields and fire card_was_declined exactly once."""
        fake_provider.failures["create_customer"] = CardRejectedError(
            "Your card was declined.", decline_code="generic_decline"
        )
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_bad"

        outcome = orchestrator.process(new_subscription)

        assert outcome.aborted
        assert outcome.error == "Your card was declined."
        assert outcome.error_code == "CARD_REJECTED"
        assert outcome.errors == ["Your card was declined."]
        assert new_subscription.provider_customer_id is None
        assert new_subscription.provider_subscription_id is None
        assert new_subscription.current_price is None
        assert recording_hooks.calls.count("card_was_declined") == 1
        assert "finalize_plan_change" not in recording_hooks.calls

    def test_card_rejected_on_create_subscription(
        self, new_subscription, pro_plan, orchestrator, fake_provider, recording_hooks
    ):
        """Should report that the customer was created remotely before the abort."""
        fake_provider.failures["create_subscription"] = CardRejectedError(
            "Your card has insufficient funds."
        )
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_bad"

        outcome = orchestrator.process(new_subscription)

        assert outcome.aborted
        assert outcome.provider_mutated is True
        assert new_subscription.provider_customer_id is None
        assert recording_hooks.calls.count("card_was_declined") == 1
        assert recording_hooks.calls.count("finalize_new_customer") == 1

    def test_retry_after_declined_subscription_creates_new_customer(
        self, new_subscription, pro_plan, orchestrator, fake_provider, recording_hooks
    ):
        fake_provider.failures["create_subscription"] = CardRejectedError(
            "Your card has insufficient funds."
        )
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_bad"
        orchestrator.process(new_subscription)

        del fake_provider.failures["create_subscription"]
        new_subscription.card_token = "tok_ok"
        outcome = orchestrator.process(new_subscription)

        assert outcome.completed
        assert fake_provider.operations.count("create_customer") == 2
        assert recording_hooks.calls.count("finalize_new_customer") == 2
        assert new_subscription.provider_customer_id == "cus_new"

    def test_transient_error_propagates(
        self, active_subscription, basic_plan, orchestrator, fake_provider
    ):
        fake_provider.failures["update_subscription"] = ProviderUnavailableError(
            "Stripe service error. Please retry."
        )
        active_subscription.plan = basic_plan

        with pytest.raises(ProviderUnavailableError):
            orchestrator.process(active_subscription)

    def test_missing_remote_customer_propagates(
        self, active_subscription, orchestrator, fake_provider
    ):
        fake_provider.failures["get_customer"] = ProviderNotFoundError("No such customer")
        active_subscription.plan = None

        with pytest.raises(ProviderNotFoundError):
            orchestrator.process(active_subscription)

        assert fake_provider.operations == ["get_customer"]


class TestTransientAttributes:
    def test_token_and_coupon_cleared_after_success(
        self, new_subscription, pro_plan, orchestrator
    ):
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_ok"
        new_subscription.coupon_code = "SPRING"

        orchestrator.process(new_subscription)

        assert new_subscription.card_token is None
        assert new_subscription.coupon_code is None

    def test_token_cleared_after_abort(self, new_subscription, pro_plan, orchestrator, fake_provider):
        fake_provider.failures["create_customer"] = CardRejectedError("Declined")
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_bad"

        orchestrator.process(new_subscription)

        assert new_subscription.card_token is None

    def test_raw_token_not_in_idempotency_key(
        self, new_subscription, pro_plan, orchestrator, fake_provider
    ):
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_secret_value"

        orchestrator.process(new_subscription)

        (params,) = fake_provider.args_for("create_customer")
        assert params.idempotency_key.startswith("create_customer:")
        assert "tok_secret_value" not in params.idempotency_key


class TestOptionalCapabilities:
    def test_coupon_code_sent_with_customer(
        self, new_subscription, pro_plan, orchestrator, fake_provider
    ):
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_ok"
        new_subscription.coupon_code = "SPRING"

        orchestrator.process(new_subscription)

        (params,) = fake_provider.args_for("create_customer")
        assert params.coupon_code == "SPRING"

    def test_referral_merged_into_customer_metadata(
        self, new_subscription, pro_plan, orchestrator, fake_provider
    ):
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_ok"
        new_subscription.referral_id = "aff_42"

        orchestrator.process(new_subscription)

        (params,) = fake_provider.args_for("create_customer")
        assert params.metadata == {"referral": "aff_42"}

    def test_tracking_id_sent_as_identifier(
        self, new_subscription, pro_plan, orchestrator, fake_provider
    ):
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_ok"
        new_subscription.tracking_id = "trk_7"

        orchestrator.process(new_subscription)

        (params,) = fake_provider.args_for("create_subscription")
        assert params.metadata == {"identifier": "trk_7"}

    def test_free_trial_coupon_sets_trial_end(
        self, new_subscription, pro_plan, orchestrator, fake_provider
    ):
        trial_end = datetime(2030, 1, 1, tzinfo=timezone.utc)
        new_subscription.plan = pro_plan
        new_subscription.card_token = "tok_ok"
        new_subscription.coupon = SimpleNamespace(
            is_free_trial=True, trial_end_timestamp=trial_end
        )

        orchestrator.process(new_subscription)

        (params,) = fake_provider.args_for("create_subscription")
        assert params.trial_end == int(trial_end.timestamp())


class TestExistingCustomerResubscribe:
    def test_creates_remote_subscription(
        self, cancelled_subscription, basic_plan, orchestrator, fake_provider, recording_hooks
    ):
        """Should reuse the remote customer and create a new subscription."""
        cancelled_subscription.plan = basic_plan

        outcome = orchestrator.process(cancelled_subscription)

        assert outcome.transition == TransitionKind.NEW_SUBSCRIPTION
        assert fake_provider.operations == ["get_customer", "create_subscription"]
        assert cancelled_subscription.provider_subscription_id == "sub_new"
        assert cancelled_subscription.current_price == Decimal("10.00")
        assert recording_hooks.calls == [
            "prepare_for_plan_change",
            "prepare_for_upgrade",
            "finalize_upgrade",
            "finalize_plan_change",
        ]


class TestCollaboratorResolution:
    def test_defaults_come_from_settings(self, settings):
        settings.BILLING_PROVIDER_CLASS = "billing.tests.conftest.FakeProvider"
        settings.BILLING_HOOKS_CLASS = "billing.tests.conftest.RecordingHooks"

        orchestrator = LifecycleOrchestrator()

        assert type(orchestrator.provider).__name__ == "FakeProvider"
        assert type(orchestrator.hooks).__name__ == "RecordingHooks"
