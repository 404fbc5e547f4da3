"""
Tests for user-initiated subscription commands.

The gateway is always called before the profile is touched; a failing gateway
must leave the stored profile exactly as it was.
"""
from unittest.mock import MagicMock

import pytest
import stripe

from models.billing_events import CheckoutCompleted
from models.subscription import ProfileState, SubscriptionTier
from services.billing_gateway import BillingGateway
from services.errors import GatewayRejected, GatewayUnavailable, NoActiveSubscription, ProfileNotFound
from services.subscription_service import SubscriptionService
from services.plans import PlanCatalogue, PlanDefinition


@pytest.fixture
def service(fake_gateway, reconciliation_engine, session_factory):
    return SubscriptionService(fake_gateway, reconciliation_engine, session_factory)


@pytest.mark.asyncio
async def test_change_plan_updates_profile_after_gateway(service, fake_gateway, seed_profile, load_profile):
    await seed_profile(tier="month", subscription_id="sub_1", active=True)

    snapshot = await service.change_plan("user_1", SubscriptionTier.YEAR)

    assert fake_gateway.calls == [("change_plan", "sub_1", SubscriptionTier.YEAR)]
    assert snapshot.subscription_id == "sub_1"
    assert await load_profile() == ProfileState("user_1", "user@example.com", SubscriptionTier.YEAR, "sub_1", True)


@pytest.mark.asyncio
async def test_change_plan_adopts_new_subscription_id(service, fake_gateway, seed_profile, load_profile):
    await seed_profile(tier="month", subscription_id="sub_1", active=True)
    fake_gateway.new_subscription_id = "sub_2"

    await service.change_plan("user_1", SubscriptionTier.WEEK)

    stored = await load_profile()
    assert stored.external_subscription_id == "sub_2"
    assert stored.subscription_tier is SubscriptionTier.WEEK


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [GatewayUnavailable("timed out", operation="change_plan"), GatewayRejected("bad price", operation="change_plan")],
)
async def test_change_plan_fails_closed(service, fake_gateway, seed_profile, load_profile, session_factory, error):
    before = await seed_profile(tier="month", subscription_id="sub_1", active=True)
    fake_gateway.error = error

    with pytest.raises(type(error)):
        await service.change_plan("user_1", SubscriptionTier.YEAR)

    assert await load_profile() == before


@pytest.mark.asyncio
async def test_change_plan_without_subscription(service, fake_gateway, seed_profile):
    await seed_profile()

    with pytest.raises(NoActiveSubscription):
        await service.change_plan("user_1", SubscriptionTier.YEAR)
    assert fake_gateway.calls == []


@pytest.mark.asyncio
async def test_change_plan_without_profile(service, fake_gateway):
    with pytest.raises(ProfileNotFound):
        await service.change_plan("ghost", SubscriptionTier.YEAR)
    assert fake_gateway.calls == []


@pytest.mark.asyncio
async def test_change_plan_to_none_rejected(service, fake_gateway, seed_profile):
    await seed_profile(tier="month", subscription_id="sub_1", active=True)

    with pytest.raises(GatewayRejected):
        await service.change_plan("user_1", SubscriptionTier.NONE)
    assert fake_gateway.calls == []


@pytest.mark.asyncio
async def test_unsubscribe_marks_inactive_immediately(service, fake_gateway, seed_profile, load_profile):
    await seed_profile(tier="month", subscription_id="sub_1", active=True)

    snapshot = await service.unsubscribe("user_1")

    assert fake_gateway.calls == [("cancel_at_period_end", "sub_1")]
    assert snapshot.cancel_at_period_end is True
    stored = await load_profile()
    assert stored.subscription_active is False
    assert stored.subscription_tier is SubscriptionTier.MONTH
    assert stored.external_subscription_id == "sub_1"


@pytest.mark.asyncio
async def test_unsubscribe_fails_closed(service, fake_gateway, seed_profile, load_profile):
    before = await seed_profile(tier="month", subscription_id="sub_1", active=True)
    fake_gateway.error = GatewayUnavailable("connection reset", operation="cancel_at_period_end")

    with pytest.raises(GatewayUnavailable):
        await service.unsubscribe("user_1")

    assert await load_profile() == before


@pytest.mark.asyncio
async def test_unsubscribe_without_subscription(service, seed_profile):
    await seed_profile()
    with pytest.raises(NoActiveSubscription):
        await service.unsubscribe("user_1")


@pytest.mark.asyncio
async def test_status_queries(service, seed_profile):
    await seed_profile(tier="year", subscription_id="sub_1", active=True)

    assert await service.get_status("user_1") == {"tier": "year", "active": True}
    assert await service.is_subscription_active("user_1") is True
    assert await service.is_subscription_active("ghost") is False
    with pytest.raises(ProfileNotFound):
        await service.get_status("ghost")


@pytest.mark.asyncio
async def test_start_checkout_leaves_profile_alone(service, fake_gateway, seed_profile, load_profile):
    before = await seed_profile()

    url = await service.start_checkout("user_1", "user@example.com", SubscriptionTier.MONTH)

    assert url == "https://checkout.stripe.test/month"
    assert fake_gateway.calls == [
        ("create_customer", "user@example.com", "user_1"),
        ("start_checkout", "cus_test_1", SubscriptionTier.MONTH, "user_1"),
    ]
    assert await load_profile() == before


@pytest.mark.asyncio
async def test_commands_without_gateway_are_unavailable(reconciliation_engine, session_factory, seed_profile):
    await seed_profile(tier="month", subscription_id="sub_1", active=True)
    service = SubscriptionService(None, reconciliation_engine, session_factory)

    with pytest.raises(GatewayUnavailable):
        await service.change_plan("user_1", SubscriptionTier.YEAR)
    assert await service.get_status("user_1") == {"tier": "month", "active": True}


@pytest.fixture
def stripe_backed_service(reconciliation_engine, session_factory):
    """Service over a real BillingGateway whose Stripe client returns StripeObjects."""
    client = MagicMock()
    plans = PlanCatalogue(
        [
            PlanDefinition(SubscriptionTier.MONTH, "Monthly", "price_month"),
            PlanDefinition(SubscriptionTier.YEAR, "Yearly", "price_year"),
        ]
    )
    gateway = BillingGateway(client, plans, timeout_seconds=2)
    return client, SubscriptionService(gateway, reconciliation_engine, session_factory)


def stripe_subscription(price_id, cancel_at_period_end=False):
    return stripe.StripeObject.construct_from(
        {
            "id": "sub_1",
            "object": "subscription",
            "status": "active",
            "cancel_at_period_end": cancel_at_period_end,
            "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price_id}}]},
        },
        "sk_test_123",
    )


@pytest.mark.asyncio
async def test_unsubscribe_through_stripe_objects(stripe_backed_service, seed_profile, load_profile):
    client, service = stripe_backed_service
    await seed_profile(tier="month", subscription_id="sub_1", active=True)
    client.subscriptions.update.return_value = stripe_subscription("price_month", cancel_at_period_end=True)

    snapshot = await service.unsubscribe("user_1")

    assert snapshot.cancel_at_period_end is True
    assert (await load_profile()).status() == {"tier": "month", "active": False}


@pytest.mark.asyncio
async def test_change_plan_through_stripe_objects(stripe_backed_service, seed_profile, load_profile):
    client, service = stripe_backed_service
    await seed_profile(tier="month", subscription_id="sub_1", active=True)
    client.subscriptions.retrieve.return_value = stripe_subscription("price_month")
    client.subscriptions.update.return_value = stripe_subscription("price_year")

    snapshot = await service.change_plan("user_1", SubscriptionTier.YEAR)

    assert snapshot.tier is SubscriptionTier.YEAR
    assert client.subscriptions.update.call_args.kwargs["params"]["items"] == [{"id": "si_1", "price": "price_year"}]
    assert (await load_profile()).status() == {"tier": "year", "active": True}


@pytest.mark.asyncio
async def test_unsubscribe_does_not_cancel_newer_subscription(
    service, fake_gateway, reconciliation_engine, seed_profile, load_profile
):
    """A checkout landing while the old subscription is being cancelled keeps the new one active."""
    await seed_profile(tier="month", subscription_id="sub_1", active=True)
    cancel = fake_gateway.cancel_at_period_end

    async def cancel_while_resubscribing(subscription_id):
        snapshot = await cancel(subscription_id)
        await reconciliation_engine.handle_event(
            CheckoutCompleted("evt_new", "user_1", "sub_2", SubscriptionTier.YEAR)
        )
        return snapshot

    fake_gateway.cancel_at_period_end = cancel_while_resubscribing

    await service.unsubscribe("user_1")

    assert await load_profile() == ProfileState("user_1", "user@example.com", SubscriptionTier.YEAR, "sub_2", True)
