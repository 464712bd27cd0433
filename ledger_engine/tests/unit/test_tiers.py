"""Tests for the static tier and credit-pack catalogue."""

from __future__ import annotations

import pytest
from ledger_engine.errors import InvalidTier
from ledger_engine.tiers import (
    CREDIT_PACKS,
    TEST_TIER,
    TIERS,
    BillingCycle,
    get_tier,
    list_tiers,
    yearly_price,
)


class TestCatalogue:
    def test_free_tier(self) -> None:
        free = get_tier("free")
        assert free.price == 0
        assert free.monthly_credits == 0
        assert not free.is_purchasable

    @pytest.mark.parametrize(
        ("key", "price", "credits"),
        [
            ("starter", 9_900, 30),
            ("basic", 29_000, 100),
            ("pro", 99_000, 500),
            ("enterprise", 299_000, 2_000),
        ],
    )
    def test_monthly_tiers(self, key: str, price: int, credits: int) -> None:
        spec = get_tier(key)
        assert spec.price == price
        assert spec.monthly_credits == credits
        assert spec.billing_cycle == BillingCycle.MONTHLY
        assert spec.is_purchasable

    def test_yearly_variant_is_discounted_twelve_months(self) -> None:
        yearly = get_tier("pro_yearly")
        assert yearly.billing_cycle == BillingCycle.YEARLY
        assert yearly.price == yearly_price(99_000) == 1_069_200
        assert yearly.monthly_credits == 500 * 12

    def test_every_paid_monthly_tier_has_a_yearly_variant(self) -> None:
        monthly = [t for t in TIERS.values() if t.billing_cycle == BillingCycle.MONTHLY and t.key != "free"]
        for spec in monthly:
            assert f"{spec.key}_yearly" in TIERS

    def test_custom_tier_is_not_purchasable(self) -> None:
        custom = get_tier("custom")
        assert custom.is_custom
        assert custom.price is None
        assert custom.monthly_credits is None
        assert not custom.is_purchasable

    def test_hourly_test_tier(self) -> None:
        spec = get_tier(TEST_TIER)
        assert spec.billing_cycle == BillingCycle.HOURLY
        assert spec.price == 100

    def test_unknown_tier_raises(self) -> None:
        with pytest.raises(InvalidTier):
            get_tier("platinum")

    def test_catalogue_is_read_only(self) -> None:
        with pytest.raises(TypeError):
            TIERS["free"] = TIERS["pro"]  # type: ignore[index]


class TestListTiers:
    def test_test_tier_hidden_by_default(self) -> None:
        keys = [t.key for t in list_tiers()]
        assert TEST_TIER not in keys
        assert keys[0] == "free"

    def test_test_tier_listed_on_request(self) -> None:
        assert TEST_TIER in [t.key for t in list_tiers(include_test=True)]

    def test_to_dict(self) -> None:
        payload = get_tier("pro").to_dict()
        assert payload["billing_cycle"] == "monthly"
        assert payload["popular"] is True
        assert isinstance(payload["features"], list)


class TestCreditPacks:
    def test_bonus_is_included_in_total(self) -> None:
        pack = CREDIT_PACKS["credit-100"]
        assert pack.total_credits == 110
        assert pack.to_dict()["total_credits"] == 110

    def test_pack_without_bonus(self) -> None:
        assert CREDIT_PACKS["credit-50"].total_credits == 50

    def test_all_packs_have_positive_price(self) -> None:
        assert all(p.price > 0 for p in CREDIT_PACKS.values())
