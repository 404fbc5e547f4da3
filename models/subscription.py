from dataclasses import dataclass, asdict
from enum import Enum
from typing import Optional


class SubscriptionTier(str, Enum):
    NONE = "none"
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"

    @classmethod
    def from_stored(cls, value: Optional[str]) -> "SubscriptionTier":
        """Map the nullable column value onto a tier; NULL means no plan."""
        if not value:
            return cls.NONE
        return cls(value)

    @classmethod
    def parse_paid(cls, value: Optional[str]) -> Optional["SubscriptionTier"]:
        """Return the paid tier named by ``value`` or None if it is not one."""
        if not isinstance(value, str):
            return None
        try:
            tier = cls(value.strip().lower())
        except ValueError:
            return None
        return None if tier is cls.NONE else tier

    def to_stored(self) -> Optional[str]:
        return None if self is SubscriptionTier.NONE else self.value


@dataclass(frozen=True)
class ProfileState:
    """Value snapshot of a profile's subscription facet."""

    user_id: str
    email: str = ""
    subscription_tier: SubscriptionTier = SubscriptionTier.NONE
    external_subscription_id: Optional[str] = None
    subscription_active: bool = False

    @classmethod
    def from_record(cls, record) -> "ProfileState":
        return cls(
            user_id=record.user_id,
            email=record.email or "",
            subscription_tier=SubscriptionTier.from_stored(record.subscription_tier),
            external_subscription_id=record.stripe_subscription_id,
            subscription_active=bool(record.subscription_active),
        )

    def status(self) -> dict:
        return {
            "tier": self.subscription_tier.value,
            "active": self.subscription_active,
        }


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """What the provider reported about a subscription after a gateway call."""

    subscription_id: str
    status: Optional[str] = None
    tier: Optional[SubscriptionTier] = None
    price_id: Optional[str] = None
    cancel_at_period_end: bool = False
    current_period_end: Optional[int] = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["tier"] = self.tier.value if self.tier else None
        return data
