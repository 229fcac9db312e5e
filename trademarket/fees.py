# trademarket/fees.py
"""Platform fee calculation.

Pure functions over integer minor units. Floats never touch money here, so
the fee sent to Stripe and the fee recorded on the payment are identical.
"""

from typing import Optional

from pydantic import BaseModel, Field

from .config import get_settings
from .models import Tier, as_tier

BPS_DENOMINATOR = 10_000


class FeeSchedule(BaseModel):
    basic_bps: int = Field(ge=0, le=BPS_DENOMINATOR)
    pro_bps: int = Field(ge=0, le=BPS_DENOMINATOR)
    business_bps: int = Field(ge=0, le=BPS_DENOMINATOR)

    model_config = {"frozen": True}

    @classmethod
    def from_settings(cls, settings=None) -> "FeeSchedule":
        settings = settings or get_settings()
        return cls(
            basic_bps=settings.stripe_platform_fee_bps_basic,
            pro_bps=settings.stripe_platform_fee_bps_pro,
            business_bps=settings.stripe_platform_fee_bps_business,
        )

    def rate_for(self, tier: Tier) -> int:
        if tier == Tier.business:
            return self.business_bps
        if tier == Tier.pro:
            return self.pro_bps
        return self.basic_bps


def fee_rate_bps(tier, schedule: Optional[FeeSchedule] = None) -> int:
    """Basis points charged for ``tier``; unknown or missing tiers get the basic rate."""
    schedule = schedule or FeeSchedule.from_settings()
    return schedule.rate_for(as_tier(tier))


def platform_fee(amount_cents: int, tier, schedule: Optional[FeeSchedule] = None) -> int:
    """floor(amount * bps / 10000) in minor units."""
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise TypeError("amount_cents must be an integer number of minor units")
    if amount_cents < 0:
        raise ValueError("amount_cents cannot be negative")
    return amount_cents * fee_rate_bps(tier, schedule) // BPS_DENOMINATOR
