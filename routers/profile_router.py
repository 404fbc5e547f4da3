"""
Profile Router - profile creation, plan changes, cancellation and status queries
"""

import logging
from typing import Optional
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from auth import Identity, get_current_identity
from backend.utils.responses import success_response, error_response, billing_error_response
from dependencies import get_subscription_service
from models.subscription import SubscriptionTier
from services.errors import BillingError
from services.subscription_service import SubscriptionService

logger = logging.getLogger(__name__)

profile_router = APIRouter(prefix="/api/profile", tags=["profile"])
subscription_check_router = APIRouter(prefix="/api", tags=["profile"])


class ChangePlanRequest(BaseModel):
    new_plan: SubscriptionTier = Field(alias="newPlan")

    model_config = {"populate_by_name": True}


@profile_router.post("")
async def create_profile(
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Create the caller's profile on first sign-in; a second call is harmless."""
    if not identity.email:
        return error_response("missing_email", status=400, message="Identity has no email address")
    try:
        profile, created = await service.create_profile(identity.user_id, identity.email)
    except BillingError as e:
        return billing_error_response(e)
    if created:
        return success_response(profile.status(), message="Profile created", status=201)
    return success_response(profile.status(), message="Profile already exists")


@profile_router.post("/change-plan")
async def change_plan(
    body: ChangePlanRequest,
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Move the caller's subscription to another tier.

    The provider is asked first; the profile only changes once it agreed.
    """
    try:
        snapshot = await service.change_plan(identity.user_id, body.new_plan)
    except BillingError as e:
        logger.info(f"change-plan for {identity.user_id} failed: {e.code}")
        return billing_error_response(e)
    return success_response({"subscription": snapshot.to_dict()})


@profile_router.post("/unsubscribe")
async def unsubscribe(
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """Cancel the caller's subscription at the end of the current period."""
    try:
        snapshot = await service.unsubscribe(identity.user_id)
    except BillingError as e:
        logger.info(f"unsubscribe for {identity.user_id} failed: {e.code}")
        return billing_error_response(e)
    return success_response({"subscription": snapshot.to_dict()})


@profile_router.get("/subscription-status")
async def subscription_status(
    identity: Identity = Depends(get_current_identity),
    service: SubscriptionService = Depends(get_subscription_service),
):
    try:
        status = await service.get_status(identity.user_id)
    except BillingError as e:
        return billing_error_response(e)
    return success_response(status)


@subscription_check_router.get("/check-subscription")
async def check_subscription(
    user_id: Optional[str] = Query(None, min_length=1),
    userid: Optional[str] = Query(None, min_length=1),
    service: SubscriptionService = Depends(get_subscription_service),
):
    """
    Whether a user currently has an active subscription (false for unknown users).

    Older clients send the id as ``userid``; both spellings are accepted.
    """
    user_id = user_id or userid
    if not user_id:
        return error_response("missing_user_id", status=400, message="user_id query parameter is required")
    active = await service.is_subscription_active(user_id)
    return {"subscription_active": active}
