"""
Stripe implementation of the billing provider contract.

All Stripe calls made by the billing lifecycle go through this class so
that error translation, timeouts, idempotency and logging stay
consistent.

Features:
- Configurable timeout on all API calls
- Stripe SDK errors translated to billing.exceptions.ProviderError subclasses
- Structured logging with timing metrics
- Idempotency keys on every mutating call
- Bounded retry with backoff for reads only

Configuration (via settings):
- STRIPE_SECRET_KEY: Stripe API secret key
- STRIPE_API_TIMEOUT_SECONDS: API call timeout (default: 10)
- STRIPE_MAX_RETRIES: Max retry attempts for reads (default: 3)

Usage:
    provider = StripeBillingProvider()
    customer = provider.get_customer("cus_123")
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING, Any

import stripe
from django.conf import settings

from billing.exceptions import (
    CardRejectedError,
    ProviderAuthenticationError,
    ProviderError,
    ProviderInvalidRequestError,
    ProviderNotFoundError,
    ProviderRateLimitError,
    ProviderTimeoutError,
    ProviderUnavailableError,
)
from billing.providers.base import (
    BillingProvider,
    CreateCustomerParams,
    CreateSubscriptionParams,
    CustomerResult,
    SubscriptionResult,
    backoff_delay,
    is_retryable_provider_error,
)

if TYPE_CHECKING:
    from collections.abc import Callable


class StripeBillingProvider(BillingProvider):
    """
    BillingProvider backed by Stripe customers and subscriptions.

    Holds no per-call state; one instance can serve every pass.
    Payment instruments are attached as the customer's default source
    (a card token from Stripe.js), and the default source is expanded on
    every customer response so last_four comes back in the same call.
    """

    # =========================================================================
    # Configuration
    # =========================================================================

    @staticmethod
    def _configure_stripe() -> None:
        """Configure Stripe client with API key and timeout."""
        stripe.api_key = settings.STRIPE_SECRET_KEY
        timeout = getattr(settings, "STRIPE_API_TIMEOUT_SECONDS", 10)
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger for this provider."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Customer Operations
    # =========================================================================

    def get_customer(self, customer_id: str) -> CustomerResult:
        """
        Retrieve a customer, retrying transient failures with backoff.

        Raises:
            ProviderNotFoundError: Customer does not exist or was deleted
        """
        log_context = {
            "operation": "get_customer",
            "customer_id": customer_id,
        }

        def retrieve() -> CustomerResult:
            customer = stripe.Customer.retrieve(customer_id, expand=["default_source"])
            if getattr(customer, "deleted", False):
                raise ProviderNotFoundError(
                    f"Customer {customer_id} has been deleted",
                    provider_code="resource_missing",
                    details={"customer_id": customer_id},
                )
            return self._customer_result(customer)

        return self._with_read_retries(log_context, retrieve)

    def create_customer(self, params: CreateCustomerParams) -> CustomerResult:
        """
        Create a customer with the card token as default source.

        Raises:
            CardRejectedError: Card was declined
        """
        log_context = {
            "operation": "create_customer",
            "idempotency_key": params.idempotency_key,
            "has_coupon": bool(params.coupon_code),
        }

        def create() -> CustomerResult:
            customer_params: dict[str, Any] = {
                "description": params.description,
                "email": params.email,
                "source": params.payment_token,
                "metadata": params.metadata,
            }
            if params.coupon_code:
                customer_params["coupon"] = params.coupon_code

            customer = stripe.Customer.create(
                expand=["default_source"],
                idempotency_key=params.idempotency_key,
                **customer_params,
            )
            return self._customer_result(customer)

        return self._execute(log_context, create)

    def update_customer_payment_instrument(
        self,
        customer_id: str,
        payment_token: str,
        idempotency_key: str,
    ) -> CustomerResult:
        """Replace the customer's default source with a new card token."""
        log_context = {
            "operation": "update_customer_payment_instrument",
            "customer_id": customer_id,
            "idempotency_key": idempotency_key,
        }

        def modify() -> CustomerResult:
            customer = stripe.Customer.modify(
                customer_id,
                source=payment_token,
                expand=["default_source"],
                idempotency_key=idempotency_key,
            )
            return self._customer_result(customer)

        return self._execute(log_context, modify)

    # =========================================================================
    # Subscription Operations
    # =========================================================================

    def create_subscription(self, params: CreateSubscriptionParams) -> SubscriptionResult:
        """
        Create a subscription with a single plan item.

        The plan's own trial period applies unless params.trial_end is set.
        """
        log_context = {
            "operation": "create_subscription",
            "customer_id": params.customer_id,
            "plan_id": params.plan_id,
            "quantity": params.quantity,
            "idempotency_key": params.idempotency_key,
        }

        def create() -> SubscriptionResult:
            subscription_params: dict[str, Any] = {
                "customer": params.customer_id,
                "items": [{"price": params.plan_id, "quantity": params.quantity}],
                "metadata": params.metadata,
            }
            if params.trial_end is not None:
                subscription_params["trial_end"] = params.trial_end
            else:
                subscription_params["trial_from_plan"] = True

            subscription = stripe.Subscription.create(
                idempotency_key=params.idempotency_key,
                **subscription_params,
            )
            return self._subscription_result(subscription)

        return self._execute(log_context, create)

    def update_subscription(
        self,
        subscription_id: str,
        plan_id: str,
        quantity: int,
        idempotency_key: str,
    ) -> SubscriptionResult:
        """
        Swap the subscription's plan item without proration.

        Reads the subscription first to find the item to replace.
        """
        log_context = {
            "operation": "update_subscription",
            "subscription_id": subscription_id,
            "plan_id": plan_id,
            "quantity": quantity,
            "idempotency_key": idempotency_key,
        }

        def modify() -> SubscriptionResult:
            current = stripe.Subscription.retrieve(subscription_id)
            item_data = current["items"]["data"]
            if not item_data:
                raise ProviderInvalidRequestError(
                    f"Subscription {subscription_id} has no items to update",
                    details={"subscription_id": subscription_id},
                )

            subscription = stripe.Subscription.modify(
                subscription_id,
                items=[
                    {
                        "id": item_data[0]["id"],
                        "price": plan_id,
                        "quantity": quantity,
                    }
                ],
                proration_behavior="none",
                idempotency_key=idempotency_key,
            )
            return self._subscription_result(subscription)

        return self._execute(log_context, modify)

    def delete_subscription(self, subscription_id: str, idempotency_key: str) -> None:
        """Cancel the subscription immediately."""
        log_context = {
            "operation": "delete_subscription",
            "subscription_id": subscription_id,
            "idempotency_key": idempotency_key,
        }

        def cancel() -> None:
            stripe.Subscription.cancel(subscription_id, idempotency_key=idempotency_key)

        self._execute(log_context, cancel)

    # =========================================================================
    # Call Plumbing
    # =========================================================================

    def _execute(self, log_context: dict[str, Any], func: Callable[[], Any]) -> Any:
        """
        Run one Stripe call with logging, timing and error translation.

        Raises:
            ProviderError: Translated from any Stripe SDK failure
        """
        self._configure_stripe()
        logger = self.get_logger()

        start_time = time.time()
        logger.info("Starting Stripe operation", extra=log_context)

        try:
            result = func()
        except ProviderError:
            raise
        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            self._handle_stripe_error(e, log_context, duration_ms)
            raise  # Never reached, _handle_stripe_error always raises

        duration_ms = (time.time() - start_time) * 1000
        logger.info(
            "Stripe operation completed",
            extra={**log_context, "duration_ms": duration_ms},
        )
        return result

    def _with_read_retries(
        self, log_context: dict[str, Any], func: Callable[[], Any]
    ) -> Any:
        """
        Run an idempotent read, retrying transient failures with backoff.

        Never use this for mutating calls.
        """
        max_retries = getattr(settings, "STRIPE_MAX_RETRIES", 3)
        attempt = 0
        while True:
            try:
                return self._execute({**log_context, "attempt": attempt}, func)
            except ProviderError as e:
                if not is_retryable_provider_error(e) or attempt >= max_retries:
                    raise
                delay = backoff_delay(attempt)
                self.get_logger().warning(
                    "Retrying Stripe read after transient error",
                    extra={
                        **log_context,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "error_code": e.error_code,
                    },
                )
                time.sleep(delay)
                attempt += 1

    # =========================================================================
    # Response Mapping
    # =========================================================================

    @staticmethod
    def _customer_result(customer: Any) -> CustomerResult:
        source = getattr(customer, "default_source", None)
        last_four = None
        if source is not None and not isinstance(source, str):
            last_four = getattr(source, "last4", None)

        return CustomerResult(
            id=customer.id,
            email=getattr(customer, "email", None),
            last_four=last_four,
            metadata=dict(getattr(customer, "metadata", None) or {}),
            raw_response=customer.to_dict(),
        )

    @staticmethod
    def _subscription_result(subscription: Any) -> SubscriptionResult:
        item_data = subscription["items"]["data"] if "items" in subscription else []
        plan_id = None
        quantity = 1
        if item_data:
            plan_id = item_data[0]["price"]["id"]
            quantity = item_data[0]["quantity"] or 1

        return SubscriptionResult(
            id=subscription.id,
            customer_id=subscription.customer,
            status=subscription.status,
            plan_id=plan_id,
            quantity=quantity,
            raw_response=subscription.to_dict(),
        )

    # =========================================================================
    # Error Handling
    # =========================================================================

    @classmethod
    def _handle_stripe_error(
        cls,
        error: Exception,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate Stripe exceptions to provider exceptions.

        Raises:
            CardRejectedError: Card declined
            ProviderNotFoundError: Resource missing
            ProviderInvalidRequestError: Invalid request parameters
            ProviderAuthenticationError: Invalid API key
            ProviderRateLimitError: Rate limited
            ProviderTimeoutError: Request timed out
            ProviderUnavailableError: API unavailable or unknown failure
        """
        logger = cls.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, stripe.CardError):
            decline_code = getattr(error, "decline_code", None) or getattr(
                getattr(error, "error", None), "decline_code", None
            )
            logger.warning(
                "Card error from Stripe",
                extra={**log_context, "decline_code": decline_code},
            )
            raise CardRejectedError(
                str(error.user_message or error),
                provider_code=error.code,
                decline_code=decline_code,
            ) from error

        elif isinstance(error, stripe.InvalidRequestError):
            logger.error(
                "Invalid request to Stripe",
                extra={**log_context, "stripe_code": error.code},
            )
            if error.code == "resource_missing":
                raise ProviderNotFoundError(
                    str(error.user_message or error),
                    provider_code=error.code,
                ) from error
            raise ProviderInvalidRequestError(
                str(error.user_message or error),
                provider_code=error.code,
            ) from error

        elif isinstance(error, stripe.RateLimitError):
            logger.warning("Rate limited by Stripe", extra=log_context)
            raise ProviderRateLimitError(
                "Stripe rate limit exceeded. Please retry.",
                provider_code="rate_limit",
            ) from error

        elif isinstance(error, stripe.APIConnectionError):
            logger.error(
                "Connection error to Stripe",
                extra=log_context,
                exc_info=True,
            )
            if "timed out" in str(error).lower() or "timeout" in str(error).lower():
                raise ProviderTimeoutError(
                    "Stripe request timed out. Please retry.",
                    provider_code="timeout",
                ) from error
            raise ProviderUnavailableError(
                "Could not connect to Stripe. Please retry.",
                provider_code="api_connection_error",
            ) from error

        elif isinstance(error, stripe.AuthenticationError):
            logger.critical(
                "Stripe authentication failed - check API key",
                extra=log_context,
            )
            raise ProviderAuthenticationError(
                "Stripe authentication failed",
                provider_code="authentication_error",
            ) from error

        elif isinstance(error, stripe.APIError):
            logger.error("Stripe API error", extra=log_context, exc_info=True)
            raise ProviderUnavailableError(
                "Stripe service error. Please retry.",
                provider_code="api_error",
            ) from error

        else:
            logger.error(
                f"Unexpected error from Stripe: {type(error).__name__}",
                extra=log_context,
                exc_info=True,
            )
            raise ProviderUnavailableError(
                f"Unexpected Stripe error: {error}",
                provider_code="unknown_error",
            ) from error
