"""Tests for the subscription lifecycle engine and proration arithmetic."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from ledger_engine.errors import InvalidInput, InvalidTier, PaymentRequired, SubscriptionNotFound
from ledger_engine.ledger import CreditLedger
from ledger_engine.state.repository import PaymentRepository, UserRepository
from ledger_engine.subscriptions import (
    ChangeKind,
    SubscriptionEngine,
    SubscriptionStatus,
    add_cycle,
    prorate,
)
from ledger_engine.tiers import BillingCycle

START = datetime(2026, 3, 1, tzinfo=UTC)
CYCLE_END = datetime(2026, 4, 1, tzinfo=UTC)
MID_CYCLE = datetime(2026, 3, 16, 12, 0, tzinfo=UTC)


async def _tier_of(session, user_id: str) -> str:
    snapshot = await UserRepository(session).get_balance_and_tier(user_id)
    assert snapshot is not None
    return snapshot[1]


async def _paid_payment(session, user_id: str, amount: int):
    return await PaymentRepository(session).create(
        user_id=user_id,
        order_id=f"TIER_{amount}",
        order_name="Upgrade",
        amount=amount,
        payment_type="tier_upgrade",
        status="paid",
        tid="tid-upgrade",
    )


# ---------------------------------------------------------------------------
# Cycle arithmetic
# ---------------------------------------------------------------------------


class TestAddCycle:
    def test_monthly(self) -> None:
        assert add_cycle(START, BillingCycle.MONTHLY) == CYCLE_END

    def test_month_end_is_clamped(self) -> None:
        jan31 = datetime(2026, 1, 31, 9, 30, tzinfo=UTC)
        assert add_cycle(jan31, BillingCycle.MONTHLY) == datetime(2026, 2, 28, 9, 30, tzinfo=UTC)

    def test_december_rolls_into_next_year(self) -> None:
        dec = datetime(2026, 12, 15, tzinfo=UTC)
        assert add_cycle(dec, BillingCycle.MONTHLY) == datetime(2027, 1, 15, tzinfo=UTC)

    def test_yearly_from_leap_day(self) -> None:
        leap = datetime(2024, 2, 29, tzinfo=UTC)
        assert add_cycle(leap, BillingCycle.YEARLY) == datetime(2025, 2, 28, tzinfo=UTC)

    def test_hourly(self) -> None:
        assert add_cycle(START, BillingCycle.HOURLY) == START + timedelta(hours=1)

    def test_custom_renews_monthly(self) -> None:
        assert add_cycle(START, BillingCycle.CUSTOM) == CYCLE_END


class TestProrate:
    def test_half_cycle_from_free_plan(self) -> None:
        result = prorate(0, 10_000, 300, remaining_days=15, total_days=30)
        assert result.additional_charge == 5_000
        assert result.prorated_credits == 150
        assert (result.remaining_days, result.total_days) == (15, 30)

    def test_charge_rounds_up_and_credits_round_down(self) -> None:
        result = prorate(29_000, 99_000, 500, remaining_days=10, total_days=30)
        assert result.additional_charge == 23_334
        assert result.prorated_credits == 166

    def test_full_cycle_remaining(self) -> None:
        result = prorate(29_000, 99_000, 500, remaining_days=30, total_days=30)
        assert result.additional_charge == 70_000
        assert result.prorated_credits == 500

    def test_remaining_days_are_clamped(self) -> None:
        result = prorate(0, 9_900, 30, remaining_days=45, total_days=30)
        assert result.remaining_days == 30
        assert result.additional_charge == 9_900

    def test_no_time_left_costs_nothing(self) -> None:
        result = prorate(9_900, 99_000, 500, remaining_days=0, total_days=31)
        assert result.additional_charge == 0
        assert result.prorated_credits == 0


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_sets_cycle_tier_and_grants_quota(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "pro", billing_key="bk-1", start=START)

        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.billing_cycle_end == CYCLE_END
        assert sub.next_billing_date == CYCLE_END
        assert sub.monthly_credit_quota == 500
        assert sub.price == 99_000
        assert await _tier_of(async_session, user.id) == "pro"

        grants = await CreditLedger(async_session).find_by_user_id(user.id, type="subscription_grant")
        assert len(grants) == 1
        assert grants[0].amount == 500
        assert grants[0].expires_at == CYCLE_END
        assert grants[0].related_id == sub.id

    @pytest.mark.asyncio
    async def test_yearly_cycle(self, async_session, user) -> None:
        sub = await SubscriptionEngine(async_session).create(user.id, "basic_yearly", start=START)
        assert sub.billing_cycle_end == datetime(2027, 3, 1, tzinfo=UTC)
        assert (await CreditLedger(async_session).get_balance(user.id))["balance"] == 1_200

    @pytest.mark.asyncio
    async def test_duplicate_rejected(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "starter", start=START)
        with pytest.raises(InvalidInput) as exc_info:
            await engine.create(user.id, "pro", start=START)
        assert exc_info.value.code == "SUBSCRIPTION_EXISTS"

    @pytest.mark.asyncio
    async def test_expired_subscription_is_replaced(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        old = await engine.create(user.id, "starter", start=START)
        await engine.expire(old)

        new = await engine.create(user.id, "pro", start=CYCLE_END)
        assert new.tier == "pro"
        assert (await engine.get_by_user_id(user.id)).id == new.id

    @pytest.mark.asyncio
    async def test_unknown_tier(self, async_session, user) -> None:
        with pytest.raises(InvalidTier):
            await SubscriptionEngine(async_session).create(user.id, "platinum")


# ---------------------------------------------------------------------------
# Tier changes
# ---------------------------------------------------------------------------


class TestQuoteChange:
    @pytest.mark.asyncio
    async def test_upgrade_quote_is_prorated(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "pro", start=START)

        quote = engine.quote_change(sub, "enterprise", MID_CYCLE)

        assert quote.kind == ChangeKind.UPGRADE
        assert quote.is_upgrade
        assert quote.total_days == 31
        assert quote.remaining_days == 16
        assert quote.additional_charge == 103_226
        assert quote.prorated_credits == 1_032
        assert quote.effective_date == MID_CYCLE

    @pytest.mark.asyncio
    async def test_downgrade_quote_takes_effect_at_cycle_end(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "pro", start=START)

        quote = engine.quote_change(sub, "basic", MID_CYCLE)

        assert quote.kind == ChangeKind.DOWNGRADE
        assert quote.additional_charge == 0
        assert quote.effective_date == CYCLE_END

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("target", "code"), [("custom", "CUSTOM_PLAN"), ("free", "FREE_PLAN")])
    async def test_non_self_serve_targets_rejected(self, async_session, user, target, code) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "pro", start=START)
        with pytest.raises(InvalidInput) as exc_info:
            engine.quote_change(sub, target, MID_CYCLE)
        assert exc_info.value.code == code

    @pytest.mark.asyncio
    async def test_same_tier_rejected(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "pro", start=START)
        with pytest.raises(InvalidInput):
            engine.quote_change(sub, "pro", MID_CYCLE)

    @pytest.mark.asyncio
    async def test_quote_has_no_side_effects(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "pro", start=START)
        engine.quote_change(sub, "basic", MID_CYCLE)
        assert sub.pending_tier is None
        assert sub.tier == "pro"


class TestChangeTier:
    @pytest.mark.asyncio
    async def test_downgrade_is_queued(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)

        quote = await engine.change_tier(user.id, "basic", now=MID_CYCLE)
        sub = await engine.get_by_user_id(user.id)

        assert quote.kind == ChangeKind.DOWNGRADE
        assert sub.tier == "pro"
        assert sub.pending_tier == "basic"
        assert await _tier_of(async_session, user.id) == "pro"

    @pytest.mark.asyncio
    async def test_choosing_current_tier_withdraws_pending_downgrade(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        await engine.change_tier(user.id, "basic", now=MID_CYCLE)

        quote = await engine.change_tier(user.id, "pro", now=MID_CYCLE)

        assert quote.kind == ChangeKind.CANCEL_PENDING
        assert (await engine.get_by_user_id(user.id)).pending_tier is None

    @pytest.mark.asyncio
    async def test_upgrade_requires_paid_payment(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "basic", start=START)
        with pytest.raises(PaymentRequired):
            await engine.change_tier(user.id, "pro", now=MID_CYCLE)
        assert (await engine.get_by_user_id(user.id)).tier == "basic"

    @pytest.mark.asyncio
    async def test_paid_upgrade_applies_immediately(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        payment = await _paid_payment(async_session, user.id, 103_226)

        quote = await engine.change_tier(user.id, "enterprise", payment=payment, now=MID_CYCLE)
        sub = await engine.get_by_user_id(user.id)

        assert quote.prorated_credits == 1_032
        assert sub.tier == "enterprise"
        assert sub.price == 299_000
        assert sub.monthly_credit_quota == 2_000
        assert sub.billing_cycle_end == CYCLE_END
        assert await _tier_of(async_session, user.id) == "enterprise"
        assert (await CreditLedger(async_session).get_balance(user.id))["balance"] == 500 + 1_032

    @pytest.mark.asyncio
    async def test_upgrade_clears_pending_downgrade(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        await engine.change_tier(user.id, "basic", now=MID_CYCLE)
        payment = await _paid_payment(async_session, user.id, 1)

        await engine.change_tier(user.id, "enterprise", payment=payment, now=MID_CYCLE)
        assert (await engine.get_by_user_id(user.id)).pending_tier is None

    @pytest.mark.asyncio
    async def test_cancelled_subscription_cannot_change(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        await engine.cancel(user.id)
        with pytest.raises(InvalidInput):
            await engine.change_tier(user.id, "basic", now=MID_CYCLE)

    @pytest.mark.asyncio
    async def test_missing_subscription(self, async_session, user) -> None:
        with pytest.raises(SubscriptionNotFound):
            await SubscriptionEngine(async_session).change_tier(user.id, "pro")


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_cancel_keeps_tier_until_cycle_end(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)

        sub = await engine.cancel(user.id, "Too expensive")

        assert sub.status == SubscriptionStatus.CANCELLED.value
        assert sub.next_billing_date is None
        assert sub.cancel_reason == "Too expensive"
        assert await _tier_of(async_session, user.id) == "pro"

    @pytest.mark.asyncio
    async def test_cancel_twice_rejected(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        await engine.cancel(user.id)
        with pytest.raises(InvalidInput):
            await engine.cancel(user.id)

    @pytest.mark.asyncio
    async def test_reactivate_within_cycle(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        await engine.cancel(user.id, "Oops")

        sub = await engine.reactivate(user.id, now=MID_CYCLE)

        assert sub.status == SubscriptionStatus.ACTIVE.value
        assert sub.next_billing_date == CYCLE_END
        assert sub.cancel_reason is None

    @pytest.mark.asyncio
    async def test_reactivate_after_cycle_end_rejected(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        await engine.cancel(user.id)
        with pytest.raises(InvalidInput):
            await engine.reactivate(user.id, now=CYCLE_END + timedelta(days=1))

    @pytest.mark.asyncio
    async def test_reactivate_active_rejected(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        with pytest.raises(InvalidInput):
            await engine.reactivate(user.id, now=MID_CYCLE)

    @pytest.mark.asyncio
    async def test_renew_advances_cycle_and_grants_quota(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "starter", start=START)

        await engine.renew(sub, CYCLE_END)

        assert sub.billing_cycle_start == CYCLE_END
        assert sub.billing_cycle_end == datetime(2026, 5, 1, tzinfo=UTC)
        assert sub.next_billing_date == datetime(2026, 5, 1, tzinfo=UTC)
        assert (await CreditLedger(async_session).get_balance(user.id))["balance"] == 60

    @pytest.mark.asyncio
    async def test_renew_promotes_pending_downgrade(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "pro", start=START)
        await engine.change_tier(user.id, "basic", now=MID_CYCLE)

        await engine.renew(sub, CYCLE_END)

        assert sub.tier == "basic"
        assert sub.pending_tier is None
        assert sub.price == 29_000
        assert await _tier_of(async_session, user.id) == "basic"
        grants = await CreditLedger(async_session).find_by_user_id(user.id, type="subscription_grant")
        assert sorted(g.amount for g in grants) == [100, 500]

    @pytest.mark.asyncio
    async def test_suspend_records_reason(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "pro", start=START)

        await engine.suspend(sub, "Card declined")

        assert sub.status == SubscriptionStatus.SUSPENDED.value
        assert sub.metadata_ == {"suspend_reason": "Card declined"}

    @pytest.mark.asyncio
    async def test_expire_returns_user_to_free(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        sub = await engine.create(user.id, "pro", start=START)

        await engine.expire(sub)

        assert sub.status == SubscriptionStatus.EXPIRED.value
        assert sub.next_billing_date is None
        assert await _tier_of(async_session, user.id) == "free"


class TestBatchQueries:
    @pytest.mark.asyncio
    async def test_due_for_renewal(self, async_session, user, other_user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        await engine.create(other_user.id, "pro", start=MID_CYCLE)

        due = await engine.find_due_for_renewal(CYCLE_END + timedelta(minutes=1))
        assert [s.user_id for s in due] == [user.id]

    @pytest.mark.asyncio
    async def test_cancelled_is_never_due(self, async_session, user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        await engine.cancel(user.id)
        assert await engine.find_due_for_renewal(CYCLE_END + timedelta(days=1)) == []

    @pytest.mark.asyncio
    async def test_find_expired_covers_cancelled_and_suspended(self, async_session, user, other_user) -> None:
        engine = SubscriptionEngine(async_session)
        await engine.create(user.id, "pro", start=START)
        other = await engine.create(other_user.id, "basic", start=START)
        await engine.cancel(user.id)
        await engine.suspend(other, "Card declined")

        assert await engine.find_expired(MID_CYCLE) == []
        stale = await engine.find_expired(CYCLE_END + timedelta(seconds=1))
        assert {s.user_id for s in stale} == {user.id, other_user.id}
