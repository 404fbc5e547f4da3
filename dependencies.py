"""
Application collaborators and the FastAPI dependencies that hand them out.

Gateway, verifier, engine and service are constructed once at startup and kept
on ``app.state``; nothing here is a module-level singleton.
"""

import logging

from fastapi import FastAPI, HTTPException, Request
from sqlalchemy.ext.asyncio import async_sessionmaker

from config.settings import Settings
from services.billing_gateway import BillingGateway
from services.event_verifier import EventVerifier
from services.reconciliation import ReconciliationEngine
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)


def build_services(app: FastAPI, settings: Settings, session_factory: async_sessionmaker) -> None:
    """
    Wire the billing collaborators onto ``app.state``.

    Missing Stripe configuration is non-fatal: the affected endpoints answer
    503 until it is provided.
    """
    engine = ReconciliationEngine(session_factory, max_attempts=settings.reconcile_max_attempts)
    app.state.reconciliation_engine = engine

    try:
        app.state.event_verifier = EventVerifier.from_settings(settings)
    except RuntimeError as e:
        logger.warning(f"Webhook verification disabled: {e}")
        app.state.event_verifier = None

    try:
        gateway = BillingGateway.from_settings(settings)
    except RuntimeError as e:
        logger.warning(f"Billing gateway disabled: {e}")
        gateway = None
    app.state.subscription_service = SubscriptionService(gateway, engine, session_factory)


def get_event_verifier(request: Request) -> EventVerifier:
    verifier = getattr(request.app.state, "event_verifier", None)
    if verifier is None:
        raise HTTPException(status_code=503, detail="Webhook signing secret not configured")
    return verifier


def get_reconciliation_engine(request: Request) -> ReconciliationEngine:
    engine = getattr(request.app.state, "reconciliation_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Reconciliation engine not initialised")
    return engine


def get_subscription_service(request: Request) -> SubscriptionService:
    service = getattr(request.app.state, "subscription_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Subscription service not initialised")
    return service
