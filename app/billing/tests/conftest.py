"""
Pytest fixtures for billing tests.

The orchestrator is exercised against FakeProvider, an in-memory
BillingProvider that records every call, and RecordingHooks, which
records the order hooks fire in.

Usage:
    def test_downgrade(active_subscription, basic_plan, orchestrator, fake_provider):
        active_subscription.plan = basic_plan
        orchestrator.process(active_subscription)
        assert fake_provider.operations == ["get_customer", "update_subscription"]
"""

from dataclasses import dataclass
from decimal import Decimal

import pytest

from billing.hooks import SubscriptionHooks
from billing.orchestrator import LifecycleOrchestrator
from billing.providers.base import (
    BillingProvider,
    CustomerResult,
    SubscriptionResult,
)
from billing.services import SubscriptionService
from billing.tests.factories import PlanFactory, SubscriptionFactory, UserFactory


# =============================================================================
# Fakes
# =============================================================================


class FakeProvider(BillingProvider):
    """
    In-memory provider recording (operation, args) for every call.

    Set failures[operation] to an exception to make that call raise it.
    """

    def __init__(self):
        self.calls: list[tuple[str, tuple]] = []
        self.failures: dict[str, Exception] = {}
        self.customer_id = "cus_new"
        self.subscription_id = "sub_new"
        self.last_four = "4242"
        self.updated_last_four = "1881"

    @property
    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]

    def args_for(self, operation: str) -> tuple:
        return next(args for op, args in self.calls if op == operation)

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, args))
        if operation in self.failures:
            raise self.failures[operation]

    def get_customer(self, customer_id):
        self._record("get_customer", customer_id)
        return CustomerResult(id=customer_id, last_four=self.last_four)

    def create_customer(self, params):
        self._record("create_customer", params)
        return CustomerResult(
            id=self.customer_id,
            email=params.email,
            last_four=self.last_four,
            metadata=params.metadata,
        )

    def update_customer_payment_instrument(self, customer_id, payment_token, idempotency_key):
        self._record("update_customer_payment_instrument", customer_id, payment_token, idempotency_key)
        return CustomerResult(id=customer_id, last_four=self.updated_last_four)

    def create_subscription(self, params):
        self._record("create_subscription", params)
        return SubscriptionResult(
            id=self.subscription_id,
            customer_id=params.customer_id,
            status="active",
            plan_id=params.plan_id,
            quantity=params.quantity,
        )

    def update_subscription(self, subscription_id, plan_id, quantity, idempotency_key):
        self._record("update_subscription", subscription_id, plan_id, quantity, idempotency_key)
        return SubscriptionResult(
            id=subscription_id,
            customer_id="cus_1",
            status="active",
            plan_id=plan_id,
            quantity=quantity,
        )

    def delete_subscription(self, subscription_id, idempotency_key):
        self._record("delete_subscription", subscription_id, idempotency_key)


HOOK_NAMES = [
    "prepare_for_plan_change",
    "finalize_plan_change",
    "prepare_for_new_subscription",
    "finalize_new_subscription",
    "prepare_for_upgrade",
    "finalize_upgrade",
    "prepare_for_downgrade",
    "finalize_downgrade",
    "prepare_for_cancelation",
    "finalize_cancelation",
    "finalize_new_customer",
    "prepare_for_card_update",
    "finalize_card_update",
    "card_was_declined",
    "payment_succeeded",
    "charge_failed",
    "charge_disputed",
]


class RecordingHooks(SubscriptionHooks):
    """Hooks recording their names in call order, plus extra arguments."""

    def __init__(self):
        self.calls: list[str] = []
        self.arguments: dict[str, tuple] = {}


def _recorder(name):
    def hook(self, subscription, *args):
        self.calls.append(name)
        self.arguments[name] = args

    hook.__name__ = name
    return hook


for _name in HOOK_NAMES:
    setattr(RecordingHooks, _name, _recorder(_name))


# =============================================================================
# Collaborator Fixtures
# =============================================================================


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def recording_hooks():
    return RecordingHooks()


@pytest.fixture
def orchestrator(fake_provider, recording_hooks):
    return LifecycleOrchestrator(provider=fake_provider, hooks=recording_hooks)


@pytest.fixture
def service_orchestrator(orchestrator):
    """Inject the fake-backed orchestrator into SubscriptionService."""
    SubscriptionService.set_orchestrator(orchestrator)
    yield orchestrator
    SubscriptionService.set_orchestrator(None)


@pytest.fixture
def mock_redis(mocker):
    """Mock Redis for distributed locking."""
    redis = mocker.MagicMock()
    redis.set.return_value = True
    redis.eval.return_value = 1
    mocker.patch("billing.locks.get_redis_connection", return_value=redis)
    return redis


# =============================================================================
# Model Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    return UserFactory()


@pytest.fixture
def basic_plan(db):
    return PlanFactory(name="Basic", provider_plan_id="P1", price=Decimal("10.00"))


@pytest.fixture
def pro_plan(db, basic_plan):
    return PlanFactory(name="Pro", provider_plan_id="P2", price=Decimal("20.00"))


@pytest.fixture
def new_subscription(db, user):
    """Unsaved subscription with no plan and no remote customer."""
    from billing.models import Subscription

    return Subscription(owner=user)


@pytest.fixture
def active_subscription(db, user, pro_plan):
    """Saved subscription on the Pro plan, synced with the provider."""
    return SubscriptionFactory(
        owner=user,
        plan=pro_plan,
        current_price=pro_plan.price,
        provider_customer_id="cus_1",
        provider_subscription_id="sub_1",
        last_four="4242",
    )


@pytest.fixture
def cancelled_subscription(db, user):
    """Saved subscription with a remote customer but no plan."""
    return SubscriptionFactory(
        owner=user,
        provider_customer_id="cus_1",
        last_four="4242",
    )


# =============================================================================
# Stripe Fixtures
# =============================================================================


@dataclass
class MockStripeObject:
    """Stand-in for a StripeObject: attribute and item access over a dict."""

    data: dict

    def __getattr__(self, name):
        if name == "data":
            raise AttributeError(name)
        return self.data.get(name)

    def __getitem__(self, key):
        return self.data[key]

    def __contains__(self, key):
        return key in self.data

    def to_dict(self):
        return dict(self.data)


@pytest.fixture
def stripe_settings(settings):
    settings.STRIPE_SECRET_KEY = "sk_test_fake"
    settings.STRIPE_API_TIMEOUT_SECONDS = 10
    settings.STRIPE_MAX_RETRIES = 3
    return settings


@pytest.fixture
def mock_http_client(mocker):
    """Keep the provider from building a real HTTP client."""
    return mocker.patch("stripe.RequestsClient")


@pytest.fixture
def stripe_customer():
    return MockStripeObject(
        {
            "id": "cus_1",
            "email": "ada@example.com",
            "metadata": {"referral": "aff_42"},
            "default_source": MockStripeObject({"id": "card_1", "last4": "4242"}),
        }
    )


@pytest.fixture
def stripe_subscription():
    return MockStripeObject(
        {
            "id": "sub_1",
            "customer": "cus_1",
            "status": "active",
            "items": {
                "data": [
                    {"id": "si_1", "price": {"id": "P2"}, "quantity": 1},
                ]
            },
        }
    )
