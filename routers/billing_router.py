"""
Billing Router - Stripe webhook intake and checkout initiation
Webhook is defined FIRST to avoid middleware conflicts
"""

import logging
from fastapi import APIRouter, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from auth import Identity, get_current_identity
from backend.utils.responses import success_response, error_response, billing_error_response
from dependencies import get_event_verifier, get_reconciliation_engine, get_subscription_service
from models.subscription import SubscriptionTier
from services.errors import BillingError, InvalidSignature, MalformedEvent
from services.event_verifier import EventVerifier
from services.reconciliation import ReconciliationEngine
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

# Create billing router
billing_router = APIRouter(prefix="/api/billing", tags=["billing"])


class CheckoutRequest(BaseModel):
    plan_tier: SubscriptionTier = Field(alias="planType")

    model_config = {"populate_by_name": True}


# WEBHOOK ENDPOINT - MUST BE DEFINED FIRST TO AVOID MIDDLEWARE CONFLICTS
@billing_router.post("/webhook")
async def stripe_webhook(
    request: Request,
    verifier: EventVerifier = Depends(get_event_verifier),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    """
    Handle Stripe webhook events with signature verification.

    Only a bad or missing signature is answered with 400, and such a payload
    is never processed. Once the signature is accepted the delivery is always
    acknowledged with 200, even when it cannot be decoded or applied, so that
    Stripe stops retrying; those failures go to the error log instead.

    Args:
        request: FastAPI Request object (for raw body)
        verifier: Webhook signature verifier and decoder
        engine: Reconciliation engine applying the decoded event

    Returns:
        JSON response describing how the delivery was handled
    """
    # Get raw request body (required for signature verification)
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = verifier.verify(payload, signature)
    except InvalidSignature as e:
        logger.warning(f"Stripe webhook signature verification failed: {e}")
        return JSONResponse(
            status_code=400,
            content={"ok": False, "received": False, "error": InvalidSignature.code}
        )
    except MalformedEvent as e:
        logger.error(f"Malformed Stripe webhook {e.event_id or '<no id>'} ({e.event_type or '<no type>'}): {e}")
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "error": MalformedEvent.code, "event_id": e.event_id}
        )

    try:
        result = await engine.handle_event(event)
    except Exception as e:
        logger.error(f"Webhook processing error for {event.event_id}: {e}", exc_info=True)
        return JSONResponse(
            status_code=200,
            content={"ok": False, "received": True, "error": "processing_error", "event_id": event.event_id}
        )

    return JSONResponse(
        status_code=200,
        content={
            "ok": result.ok,
            "received": True,
            "outcome": result.outcome.value,
            "event_id": result.event_id,
        }
    )


@billing_router.post("/checkout")
async def create_checkout_session(
    body: CheckoutRequest,
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Create a Stripe Checkout session for the authenticated user.

    Returns:
        JSON response with the checkout session URL
    """
    if not identity.email:
        return error_response("missing_email", status=400, message="Identity has no email address")
    try:
        url = await service.start_checkout(identity.user_id, identity.email, body.plan_tier)
    except BillingError as e:
        return billing_error_response(e)
    return success_response({"url": url})
