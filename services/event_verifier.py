"""
Event Verifier - authenticates Stripe webhook deliveries and decodes them into
typed billing events.

Nothing in the payload is looked at before the signature has been accepted.
"""

import json
import logging
from typing import Any, Dict, Optional

import stripe

from config.settings import Settings
from models.billing_events import (
    BillingEvent,
    CheckoutCompleted,
    InvoicePaymentFailed,
    SubscriptionCanceled,
    Unhandled,
)
from models.subscription import SubscriptionTier
from services.errors import InvalidSignature, MalformedEvent

logger = logging.getLogger(__name__)

CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either a bare id or an expanded object."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        inner = value.get("id")
        if isinstance(inner, str) and inner:
            return inner
    return None


class EventVerifier:
    def __init__(self, signing_secret: str, tolerance_seconds: int = 300):
        if not signing_secret:
            raise ValueError("A webhook signing secret is required.")
        self.signing_secret = signing_secret
        self.tolerance_seconds = tolerance_seconds

    @classmethod
    def from_settings(cls, settings: Settings) -> "EventVerifier":
        if not settings.stripe_webhook_secret:
            raise RuntimeError("STRIPE_WEBHOOK_SECRET is not set. Cannot verify webhooks.")
        return cls(settings.stripe_webhook_secret, settings.stripe_webhook_tolerance_seconds)

    def verify(self, payload: bytes, signature_header: Optional[str]) -> BillingEvent:
        """
        Authenticate and decode one webhook delivery.

        Args:
            payload: Raw request body, exactly as received
            signature_header: Value of the ``Stripe-Signature`` header

        Returns:
            The decoded billing event; unknown event types become ``Unhandled``

        Raises:
            InvalidSignature: header missing or signature mismatch
            MalformedEvent: signature accepted but the payload cannot be decoded
        """
        self._check_signature(payload, signature_header)
        return self.decode(payload)

    def _check_signature(self, payload: bytes, signature_header: Optional[str]) -> None:
        if not signature_header:
            raise InvalidSignature("Missing Stripe-Signature header")
        try:
            text = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidSignature("Payload is not valid UTF-8") from exc
        try:
            # HMAC-SHA256 over "{t}.{payload}", constant-time compare, timestamp tolerance
            stripe.WebhookSignature.verify_header(
                text,
                signature_header,
                self.signing_secret,
                tolerance=self.tolerance_seconds,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature(str(exc)) from exc

    def decode(self, payload: bytes) -> BillingEvent:
        """Decode an already authenticated payload."""
        try:
            envelope = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise MalformedEvent(f"Payload is not valid JSON: {exc}") from exc
        if not isinstance(envelope, dict):
            raise MalformedEvent("Payload is not a JSON object")

        event_id = envelope.get("id")
        event_type = envelope.get("type")
        if not isinstance(event_id, str) or not event_id:
            raise MalformedEvent("Event has no id", event_type=event_type)
        if not isinstance(event_type, str) or not event_type:
            raise MalformedEvent("Event has no type", event_id=event_id)

        data = envelope.get("data")
        obj = data.get("object") if isinstance(data, dict) else None
        if not isinstance(obj, dict):
            raise MalformedEvent("Event has no data.object", event_id=event_id, event_type=event_type)

        if event_type == CHECKOUT_SESSION_COMPLETED:
            return self._checkout_completed(event_id, event_type, obj)
        if event_type == INVOICE_PAYMENT_FAILED:
            return self._invoice_payment_failed(event_id, event_type, obj)
        if event_type == SUBSCRIPTION_DELETED:
            subscription_id = _object_id(obj.get("id"))
            if not subscription_id:
                raise MalformedEvent("Subscription object has no id", event_id, event_type)
            return SubscriptionCanceled(event_id=event_id, external_subscription_id=subscription_id)
        return Unhandled(event_id=event_id, event_type=event_type)

    def _checkout_completed(self, event_id: str, event_type: str, session: Dict[str, Any]) -> CheckoutCompleted:
        metadata = session.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise MalformedEvent("Checkout session metadata is not an object", event_id, event_type)

        user_id = metadata.get("user_id") or metadata.get("clerkUserId")
        subscription_id = _object_id(session.get("subscription"))
        if not isinstance(user_id, str) or not user_id:
            raise MalformedEvent("Checkout session has no user reference", event_id, event_type)
        if not subscription_id:
            raise MalformedEvent("Checkout session has no subscription", event_id, event_type)

        raw_tier = metadata.get("plan_tier") or metadata.get("planType")
        tier = SubscriptionTier.parse_paid(raw_tier)
        if tier is None:
            raise MalformedEvent(f"Checkout session has unknown plan tier {raw_tier!r}", event_id, event_type)

        email = session.get("customer_email")
        if not email:
            details = session.get("customer_details") or {}
            email = details.get("email") if isinstance(details, dict) else None

        return CheckoutCompleted(
            event_id=event_id,
            user_id=user_id,
            external_subscription_id=subscription_id,
            tier=tier,
            email=email or None,
        )

    def _invoice_payment_failed(self, event_id: str, event_type: str, invoice: Dict[str, Any]) -> InvoicePaymentFailed:
        subscription_id = _object_id(invoice.get("subscription"))
        if not subscription_id:
            # Newer API versions moved the reference under invoice.parent
            parent = invoice.get("parent") or {}
            details = parent.get("subscription_details") if isinstance(parent, dict) else None
            if isinstance(details, dict):
                subscription_id = _object_id(details.get("subscription"))
        if not subscription_id:
            raise MalformedEvent("Invoice has no subscription reference", event_id, event_type)
        return InvoicePaymentFailed(event_id=event_id, external_subscription_id=subscription_id)
