"""
Typed billing changes fed into the reconciliation engine.

Provider webhooks decode into one of the ``BillingEvent`` variants. The two
command variants are produced locally, only after the gateway confirmed the
user's request.
"""
from dataclasses import dataclass
from typing import Optional, Union

from models.subscription import SubscriptionTier


@dataclass(frozen=True)
class CheckoutCompleted:
    event_id: str
    user_id: str
    external_subscription_id: str
    tier: SubscriptionTier
    email: Optional[str] = None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    event_id: str
    external_subscription_id: str


@dataclass(frozen=True)
class SubscriptionCanceled:
    event_id: str
    external_subscription_id: str


@dataclass(frozen=True)
class Unhandled:
    event_id: str
    event_type: str


BillingEvent = Union[CheckoutCompleted, InvoicePaymentFailed, SubscriptionCanceled, Unhandled]


@dataclass(frozen=True)
class PlanChanged:
    tier: SubscriptionTier
    external_subscription_id: str


@dataclass(frozen=True)
class CancellationScheduled:
    external_subscription_id: str


LocalCommand = Union[PlanChanged, CancellationScheduled]

BillingChange = Union[BillingEvent, LocalCommand]
