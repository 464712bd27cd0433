"""Static subscription tier and credit-pack catalogue.

The catalogue is built once at import time into read-only mappings of
frozen dataclasses.  Yearly variants are derived from their monthly base
tier with :data:`YEARLY_DISCOUNT_PERCENT` so the two can never drift apart.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from ledger_engine.errors import InvalidTier


class BillingCycle(str, Enum):
    """Billing cadence of a tier."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    # Exists so operators can exercise the renewal cron without waiting a month.
    HOURLY = "hourly"
    # Contact-sales plans; renewed monthly once an operator has set them up.
    CUSTOM = "custom"


YEARLY_DISCOUNT_PERCENT = 10
FREE_TIER = "free"
TEST_TIER = "hourly_test"


@dataclass(frozen=True)
class TierSpec:
    """One subscription plan.

    ``monthly_credits`` is the quota granted at the start of every billing
    cycle (so yearly tiers carry twelve months' worth).  ``None`` price
    means contact-sales; ``None`` credits means unlimited.
    """

    key: str
    name: str
    price: int | None
    monthly_credits: int | None
    billing_cycle: BillingCycle
    popular: bool = False
    is_custom: bool = False
    features: tuple[str, ...] = field(default_factory=tuple)

    @property
    def is_purchasable(self) -> bool:
        return not self.is_custom and self.price is not None and self.price > 0

    def to_dict(self) -> dict[str, object]:
        return {
            "key": self.key,
            "name": self.name,
            "price": self.price,
            "monthly_credits": self.monthly_credits,
            "billing_cycle": self.billing_cycle.value,
            "popular": self.popular,
            "is_custom": self.is_custom,
            "features": list(self.features),
        }


@dataclass(frozen=True)
class CreditPack:
    """A one-off bundle of purchase credits."""

    id: str
    credits: int
    price: int
    bonus: int = 0
    popular: bool = False

    @property
    def total_credits(self) -> int:
        return self.credits + self.bonus

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "credits": self.credits,
            "bonus": self.bonus,
            "total_credits": self.total_credits,
            "price": self.price,
            "popular": self.popular,
        }


def yearly_price(monthly_price: int) -> int:
    """Twelve months at the yearly discount, in whole currency units."""
    return monthly_price * 12 * (100 - YEARLY_DISCOUNT_PERCENT) // 100


def _yearly_variant(base: TierSpec) -> TierSpec:
    assert base.price is not None and base.monthly_credits is not None
    return TierSpec(
        key=f"{base.key}_yearly",
        name=f"{base.name} (Yearly)",
        price=yearly_price(base.price),
        monthly_credits=base.monthly_credits * 12,
        billing_cycle=BillingCycle.YEARLY,
        features=base.features + (f"{YEARLY_DISCOUNT_PERCENT}% yearly discount",),
    )


def _build_tiers() -> Mapping[str, TierSpec]:
    monthly = [
        TierSpec(FREE_TIER, "Free", 0, 0, BillingCycle.MONTHLY, features=("Basic features",)),
        TierSpec("starter", "Starter", 9_900, 30, BillingCycle.MONTHLY, features=("30 credits per month",)),
        TierSpec(
            "basic",
            "Basic",
            29_000,
            100,
            BillingCycle.MONTHLY,
            features=("100 credits per month", "Standard support"),
        ),
        TierSpec(
            "pro",
            "Pro",
            99_000,
            500,
            BillingCycle.MONTHLY,
            popular=True,
            features=("500 credits per month", "Priority support", "API access"),
        ),
        TierSpec(
            "enterprise",
            "Enterprise",
            299_000,
            2_000,
            BillingCycle.MONTHLY,
            features=("2000 credits per month", "Dedicated support", "Unlimited API"),
        ),
    ]
    tiers: dict[str, TierSpec] = {t.key: t for t in monthly}
    for base in monthly:
        if base.key != FREE_TIER:
            variant = _yearly_variant(base)
            tiers[variant.key] = variant
    tiers[TEST_TIER] = TierSpec(TEST_TIER, "Hourly Test", 100, 10, BillingCycle.HOURLY, features=("Renewal testing",))
    tiers["custom"] = TierSpec(
        "custom",
        "Custom",
        None,
        None,
        BillingCycle.CUSTOM,
        is_custom=True,
        features=("Unlimited credits", "Custom contract"),
    )
    return MappingProxyType(tiers)


TIERS: Mapping[str, TierSpec] = _build_tiers()

CREDIT_PACKS: Mapping[str, CreditPack] = MappingProxyType(
    {
        p.id: p
        for p in (
            CreditPack("credit-50", credits=50, price=15_000),
            CreditPack("credit-100", credits=100, price=25_000, bonus=10),
            CreditPack("credit-300", credits=300, price=70_000, bonus=30, popular=True),
            CreditPack("credit-500", credits=500, price=110_000, bonus=50),
        )
    }
)


def get_tier(key: str) -> TierSpec:
    """Return the tier for *key* or raise :class:`InvalidTier`."""
    try:
        return TIERS[key]
    except KeyError:
        raise InvalidTier(f"Unknown subscription tier '{key}'") from None


def list_tiers(*, include_test: bool = False) -> list[TierSpec]:
    """Tiers in catalogue order, optionally including the hourly test tier."""
    return [t for t in TIERS.values() if include_test or t.key != TEST_TIER]
