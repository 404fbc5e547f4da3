"""Subscription plan catalogue: paid tiers and their Stripe price identifiers."""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional

from config.settings import Settings
from models.subscription import SubscriptionTier
from services.errors import GatewayRejected


@dataclass(frozen=True)
class PlanDefinition:
    tier: SubscriptionTier
    name: str
    stripe_price_id: Optional[str] = None


class PlanCatalogue:
    """Maps paid tiers to Stripe prices and back."""

    def __init__(self, definitions: Iterable[PlanDefinition]):
        self._by_tier: Dict[SubscriptionTier, PlanDefinition] = {d.tier: d for d in definitions}
        self._by_price: Dict[str, SubscriptionTier] = {
            d.stripe_price_id: d.tier for d in self._by_tier.values() if d.stripe_price_id
        }

    @classmethod
    def from_settings(cls, settings: Settings) -> "PlanCatalogue":
        return cls(
            [
                PlanDefinition(SubscriptionTier.WEEK, "Weekly", settings.stripe_price_week),
                PlanDefinition(SubscriptionTier.MONTH, "Monthly", settings.stripe_price_month),
                PlanDefinition(SubscriptionTier.YEAR, "Yearly", settings.stripe_price_year),
            ]
        )

    def price_for(self, tier: SubscriptionTier) -> str:
        """Return the Stripe price id for a paid tier.

        Raises:
            GatewayRejected: the tier is not sold or has no price configured.
        """
        definition = self._by_tier.get(tier)
        if definition is None or not definition.stripe_price_id:
            raise GatewayRejected(f"No Stripe price configured for plan tier {tier.value!r}")
        return definition.stripe_price_id

    def tier_for_price(self, price_id: Optional[str]) -> Optional[SubscriptionTier]:
        if not price_id:
            return None
        return self._by_price.get(price_id)
