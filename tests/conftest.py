"""
Pytest configuration and fixtures for testing
"""
import hashlib
import hmac
import json
import os
import time

# Settings are read at import time; make sure tests never depend on a local .env
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("LOGS_DIR", "./logs")

import pytest
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from database import Base
from crud.profile import ProfileRepository
from models.subscription import ProfileState, SubscriptionSnapshot, SubscriptionTier
from services.reconciliation import ReconciliationEngine

WEBHOOK_SECRET = "whsec_test_secret"


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header for ``payload``."""
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(event_type: str, obj: dict, event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {"id": event_id, "object": "event", "type": event_type, "data": {"object": obj}}
    ).encode()


def checkout_session(user_id="user_1", subscription="sub_1", tier="month", email="user@example.com") -> dict:
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "subscription": subscription,
        "customer_email": email,
        "metadata": {"user_id": user_id, "plan_tier": tier},
    }


class FakeGateway:
    """In-memory stand-in for BillingGateway recording every call."""

    def __init__(self):
        self.calls = []
        self.error = None
        self.new_subscription_id = None

    async def create_customer(self, email, user_id=None):
        self.calls.append(("create_customer", email, user_id))
        if self.error:
            raise self.error
        return "cus_test_1"

    async def start_checkout(self, customer_id, tier, user_id):
        self.calls.append(("start_checkout", customer_id, tier, user_id))
        if self.error:
            raise self.error
        return f"https://checkout.stripe.test/{tier.value}"

    async def get_subscription(self, subscription_id):
        self.calls.append(("get_subscription", subscription_id))
        if self.error:
            raise self.error
        return SubscriptionSnapshot(subscription_id=subscription_id, status="active")

    async def change_plan(self, subscription_id, new_tier):
        self.calls.append(("change_plan", subscription_id, new_tier))
        if self.error:
            raise self.error
        return SubscriptionSnapshot(
            subscription_id=self.new_subscription_id or subscription_id,
            status="active",
            tier=new_tier,
        )

    async def cancel_at_period_end(self, subscription_id):
        self.calls.append(("cancel_at_period_end", subscription_id))
        if self.error:
            raise self.error
        return SubscriptionSnapshot(
            subscription_id=subscription_id,
            status="active",
            cancel_at_period_end=True,
        )


@pytest.fixture
async def test_engine(tmp_path):
    """
    Isolated SQLite database file per test.

    A file (rather than :memory:) lets separate sessions use separate
    connections, which the concurrency tests rely on.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False, future=True)
    async with engine.begin() as conn:
        # Import models to ensure they're registered with Base
        from database_models import Profile  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@pytest.fixture
async def test_db(session_factory):
    """Clean AsyncSession for tests that talk to the repository directly."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def reconciliation_engine(session_factory):
    return ReconciliationEngine(session_factory, max_attempts=3)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def seed_profile(session_factory):
    """Insert a profile with the given subscription facet and return its state."""

    async def _seed(user_id="user_1", email="user@example.com", tier=None, subscription_id=None, active=False):
        async with session_factory() as session:
            repo = ProfileRepository(session)
            record = await repo.create_profile(user_id, email)
            state = ProfileState(
                user_id=user_id,
                email=email,
                subscription_tier=SubscriptionTier.from_stored(tier),
                external_subscription_id=subscription_id,
                subscription_active=active,
            )
            await repo.write_state(record, state)
            await session.commit()
            return state

    return _seed


@pytest.fixture
def load_profile(session_factory):
    """Read back the stored state of a profile, or None."""

    async def _load(user_id="user_1"):
        async with session_factory() as session:
            record = await ProfileRepository(session).get_by_user_id(user_id)
            return ProfileState.from_record(record) if record else None

    return _load


@pytest.fixture
async def client(reconciliation_engine, fake_gateway, session_factory):
    """
    httpx client bound to the app with collaborators wired to the test database.

    ASGITransport does not run startup events, so app.state is populated here.
    """
    import httpx
    from main import app
    from services.event_verifier import EventVerifier
    from services.subscription_service import SubscriptionService

    app.state.reconciliation_engine = reconciliation_engine
    app.state.event_verifier = EventVerifier(WEBHOOK_SECRET)
    app.state.subscription_service = SubscriptionService(fake_gateway, reconciliation_engine, session_factory)
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as test_client:
            yield test_client
    finally:
        app.state.reconciliation_engine = None
        app.state.event_verifier = None
        app.state.subscription_service = None


@pytest.fixture
def auth_headers():
    from auth_utils import create_jwt

    return {"Authorization": f"Bearer {create_jwt('user_1', 'user@example.com')}"}
