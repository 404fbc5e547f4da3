"""
Billing Gateway - thin async wrapper around the Stripe subscription API.

The gateway is a pure RPC boundary: it never reads or writes profiles. Every
call is bounded by ``timeout_seconds`` and every Stripe failure is translated
into either ``GatewayUnavailable`` (retry later) or ``GatewayRejected`` (the
request itself is wrong).
"""

import asyncio
import logging
from typing import Any, Callable, Dict, Optional

import stripe

from config.settings import Settings
from models.subscription import SubscriptionSnapshot, SubscriptionTier
from services.errors import GatewayRejected, GatewayUnavailable
from services.plans import PlanCatalogue

logger = logging.getLogger(__name__)

# Stripe errors caused by the request itself; retrying will not help
_REJECTED_ERRORS = (
    stripe.InvalidRequestError,
    stripe.CardError,
    stripe.AuthenticationError,
    stripe.PermissionError,
)


def _field(obj: Any, key: str) -> Any:
    """
    Read one field of a Stripe response, or None when it is absent.

    Responses are ``StripeObject`` instances, which only guarantee item access;
    expanded references may also be bare id strings.
    """
    try:
        return obj[key]
    except (KeyError, TypeError, IndexError):
        return None


class BillingGateway:
    """
    Service class for all outbound calls to the billing provider.
    Built once at startup and shared by the command handlers.
    """

    def __init__(
        self,
        client: stripe.StripeClient,
        plans: PlanCatalogue,
        *,
        timeout_seconds: float = 10.0,
        frontend_url: str = "http://localhost:3000",
    ):
        """
        Initialize the gateway.

        Args:
            client: Configured Stripe client instance
            plans: Catalogue used to translate tiers to prices and back
            timeout_seconds: Upper bound for a single gateway call
            frontend_url: Base URL for checkout success/cancel redirects
        """
        self.client = client
        self.plans = plans
        self.timeout_seconds = timeout_seconds
        self.frontend_url = (frontend_url or "").rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> "BillingGateway":
        if not settings.stripe_secret_key:
            raise RuntimeError("STRIPE_SECRET_KEY is not set. Cannot create billing gateway.")
        client = stripe.StripeClient(
            settings.stripe_secret_key,
            max_network_retries=settings.stripe_max_network_retries,
            http_client=stripe.RequestsClient(timeout=settings.gateway_timeout_seconds),
        )
        return cls(
            client,
            PlanCatalogue.from_settings(settings),
            timeout_seconds=settings.gateway_timeout_seconds,
            frontend_url=settings.frontend_url,
        )

    async def _call(self, operation: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        """Run a blocking Stripe call in a worker thread under the gateway timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(func, *args, **kwargs),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            logger.warning(f"Stripe {operation} timed out after {self.timeout_seconds}s")
            raise GatewayUnavailable(
                f"Billing provider did not answer within {self.timeout_seconds}s",
                operation=operation,
            ) from exc
        except _REJECTED_ERRORS as exc:
            logger.info(f"Stripe rejected {operation}: {exc}")
            raise GatewayRejected(str(exc) or "Request rejected by billing provider", operation=operation) from exc
        except stripe.StripeError as exc:
            # APIConnectionError, RateLimitError, APIError and anything new
            logger.warning(f"Stripe {operation} failed: {exc}")
            raise GatewayUnavailable(str(exc) or "Billing provider unavailable", operation=operation) from exc

    def _snapshot(self, subscription: Any, subscription_id: str) -> SubscriptionSnapshot:
        items = _field(_field(subscription, "items"), "data") or []
        first_item = items[0] if items else None
        price = _field(first_item, "price")
        price_id = price if isinstance(price, str) else _field(price, "id")
        period_end = _field(subscription, "current_period_end") or _field(first_item, "current_period_end")
        return SubscriptionSnapshot(
            subscription_id=_field(subscription, "id") or subscription_id,
            status=_field(subscription, "status"),
            tier=self.plans.tier_for_price(price_id),
            price_id=price_id,
            cancel_at_period_end=bool(_field(subscription, "cancel_at_period_end")),
            current_period_end=period_end,
        )

    async def create_customer(self, email: str, user_id: Optional[str] = None) -> str:
        """
        Create a Stripe customer.

        Args:
            email: Customer email address
            user_id: Our identity for the customer, stored in metadata

        Returns:
            The Stripe customer id
        """
        params: Dict[str, Any] = {"email": email, "metadata": {}}
        if user_id:
            params["metadata"]["user_id"] = user_id
        customer = await self._call("create_customer", self.client.customers.create, params=params)
        return _field(customer, "id")

    async def start_checkout(self, customer_id: str, tier: SubscriptionTier, user_id: str) -> str:
        """
        Create a subscription Checkout session and return its hosted URL.

        The session metadata carries ``user_id`` and ``plan_tier``; both come
        back on the ``checkout.session.completed`` webhook.
        """
        price_id = self.plans.price_for(tier)
        params = {
            "mode": "subscription",
            "customer": customer_id,
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "metadata": {"user_id": user_id, "plan_tier": tier.value},
            "success_url": f"{self.frontend_url}/?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.frontend_url}/subscribe",
        }
        session = await self._call("start_checkout", self.client.checkout.sessions.create, params=params)
        url = _field(session, "url")
        if not url:
            raise GatewayUnavailable("Checkout session was created without a URL", operation="start_checkout")
        return url

    async def get_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        subscription = await self._call("get_subscription", self.client.subscriptions.retrieve, subscription_id)
        return self._snapshot(subscription, subscription_id)

    async def change_plan(self, subscription_id: str, new_tier: SubscriptionTier) -> SubscriptionSnapshot:
        """
        Move a subscription to another plan, letting Stripe prorate.

        A pending cancellation is lifted, so changing plan after unsubscribing
        resumes the subscription.
        """
        price_id = self.plans.price_for(new_tier)
        subscription = await self._call("change_plan", self.client.subscriptions.retrieve, subscription_id)
        items = _field(_field(subscription, "items"), "data") or []
        if not items:
            raise GatewayRejected(f"Subscription {subscription_id} has no items", operation="change_plan")

        params = {
            "cancel_at_period_end": False,
            "items": [{"id": _field(items[0], "id"), "price": price_id}],
            "proration_behavior": "create_prorations",
        }
        updated = await self._call(
            "change_plan", self.client.subscriptions.update, subscription_id, params=params
        )
        return self._snapshot(updated, subscription_id)

    async def cancel_at_period_end(self, subscription_id: str) -> SubscriptionSnapshot:
        canceled = await self._call(
            "cancel_at_period_end",
            self.client.subscriptions.update,
            subscription_id,
            params={"cancel_at_period_end": True},
        )
        return self._snapshot(canceled, subscription_id)
