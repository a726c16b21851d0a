"""Registration tier price table.

Static reference data: the tier a subscriber registers on decides the fee of
every invoice they receive and whether the scheduler bills them monthly.
"""
import enum
from dataclasses import dataclass
from typing import List

from billing import config
from billing.errors import ValidationError


class RegistrationTier(str, enum.Enum):
    NORMAL = "normal"
    PREMIER = "premier"
    SILVER = "silver"
    DIAMOND = "diamond"


@dataclass(frozen=True)
class TierPrice:
    tier: RegistrationTier
    amount: int
    currency: str
    is_recurring: bool
    category: str
    description: str


_PRICES = {
    RegistrationTier.NORMAL: TierPrice(
        RegistrationTier.NORMAL, 15000, config.DEFAULT_CURRENCY, False,
        "registration", "Normal Registration"),
    RegistrationTier.PREMIER: TierPrice(
        RegistrationTier.PREMIER, 70000, config.DEFAULT_CURRENCY, True,
        "ctm_membership", "Premier CTM Membership - Monthly Fee"),
    RegistrationTier.SILVER: TierPrice(
        RegistrationTier.SILVER, 49000, config.DEFAULT_CURRENCY, False,
        "registration", "Silver Registration"),
    RegistrationTier.DIAMOND: TierPrice(
        RegistrationTier.DIAMOND, 55000, config.DEFAULT_CURRENCY, True,
        "monthly_subscription", "Diamond Registration - Monthly Fee"),
}


def parse_tier(value) -> RegistrationTier:
    if isinstance(value, RegistrationTier):
        return value
    try:
        return RegistrationTier(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown registration tier: {value!r}") from None


def price_of(tier) -> TierPrice:
    return _PRICES[parse_tier(tier)]


def list_tiers() -> List[TierPrice]:
    return [_PRICES[t] for t in RegistrationTier]
