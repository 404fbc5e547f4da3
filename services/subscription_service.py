"""
Subscription Service - user-initiated billing commands.

Every command that changes billing state calls the gateway first and only hands
the confirmed result to the reconciliation engine afterwards. A failed or timed
out gateway call therefore leaves the stored profile untouched.
"""

import logging
from typing import Optional, Tuple

from sqlalchemy.ext.asyncio import async_sessionmaker

from crud.profile import ProfileRepository
from models.billing_events import CancellationScheduled, PlanChanged
from models.subscription import ProfileState, SubscriptionSnapshot, SubscriptionTier
from services.billing_gateway import BillingGateway
from services.errors import GatewayRejected, GatewayUnavailable, NoActiveSubscription, ProfileNotFound
from services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


class SubscriptionService:
    """
    Service class for the command and query side of subscriptions.
    Works with verified user ids; authentication happens before it is called.
    """

    def __init__(
        self,
        gateway: Optional[BillingGateway],
        engine: ReconciliationEngine,
        session_factory: async_sessionmaker,
    ):
        """
        Initialize the subscription service.

        Args:
            gateway: Billing provider client, None when Stripe is not configured
            engine: Reconciliation engine that owns all profile writes
            session_factory: Factory producing AsyncSession objects for reads
        """
        self.gateway = gateway
        self.engine = engine
        self.session_factory = session_factory

    def _require_gateway(self, operation: str) -> BillingGateway:
        if self.gateway is None:
            raise GatewayUnavailable("Billing gateway is not configured", operation=operation)
        return self.gateway

    async def get_profile(self, user_id: str) -> ProfileState:
        async with self.session_factory() as session:
            record = await ProfileRepository(session).get_by_user_id(user_id)
            if record is None:
                raise ProfileNotFound(f"No profile for user {user_id}")
            return ProfileState.from_record(record)

    async def _subscribed_profile(self, user_id: str) -> ProfileState:
        profile = await self.get_profile(user_id)
        if not profile.external_subscription_id:
            raise NoActiveSubscription(f"User {user_id} has no subscription")
        return profile

    async def create_profile(self, user_id: str, email: str) -> Tuple[ProfileState, bool]:
        return await self.engine.ensure_profile(user_id, email)

    async def get_status(self, user_id: str) -> dict:
        """Return ``{"tier": ..., "active": ...}`` for the user."""
        profile = await self.get_profile(user_id)
        return profile.status()

    async def is_subscription_active(self, user_id: str) -> bool:
        """Unknown users are simply not subscribed."""
        try:
            profile = await self.get_profile(user_id)
        except ProfileNotFound:
            return False
        return profile.subscription_active

    async def start_checkout(self, user_id: str, email: str, tier: SubscriptionTier) -> str:
        """
        Create a Stripe customer and a Checkout session for ``tier``.

        The profile is not touched here; the ``checkout.session.completed``
        webhook activates it once payment succeeded.

        Returns:
            Hosted checkout URL to redirect the user to
        """
        if tier is SubscriptionTier.NONE:
            raise GatewayRejected("Cannot start checkout for the 'none' tier", operation="start_checkout")
        gateway = self._require_gateway("start_checkout")
        customer_id = await gateway.create_customer(email, user_id=user_id)
        url = await gateway.start_checkout(customer_id, tier, user_id)
        logger.info(f"Started {tier.value} checkout for user {user_id} (customer {customer_id})")
        return url

    async def change_plan(self, user_id: str, new_tier: SubscriptionTier) -> SubscriptionSnapshot:
        """
        Switch the user's subscription to ``new_tier``.

        Raises:
            ProfileNotFound: no profile for the user
            NoActiveSubscription: the profile has no provider subscription
            GatewayUnavailable: provider unreachable or timed out; nothing changed
            GatewayRejected: provider refused the change; nothing changed
        """
        if new_tier is SubscriptionTier.NONE:
            raise GatewayRejected("Use unsubscribe to drop a plan", operation="change_plan")
        profile = await self._subscribed_profile(user_id)

        snapshot = await self._require_gateway("change_plan").change_plan(
            profile.external_subscription_id, new_tier
        )

        await self.engine.apply_command(
            user_id,
            PlanChanged(tier=new_tier, external_subscription_id=snapshot.subscription_id),
        )
        return snapshot

    async def unsubscribe(self, user_id: str) -> SubscriptionSnapshot:
        """
        Cancel the user's subscription at the end of the paid period.

        The profile is marked inactive as soon as the provider accepted the
        cancellation; the provider's own ``customer.subscription.deleted`` event
        clears tier and subscription id later.
        """
        profile = await self._subscribed_profile(user_id)

        snapshot = await self._require_gateway("cancel_at_period_end").cancel_at_period_end(
            profile.external_subscription_id
        )

        await self.engine.apply_command(
            user_id,
            CancellationScheduled(external_subscription_id=snapshot.subscription_id),
        )
        return snapshot
