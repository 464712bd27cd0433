"""Subscription lifecycle engine.

State machine::

    active ──cancel──▶ cancelled ──reactivate──▶ active
      │                    │
      │                    └──cycle end passes──▶ expired
      └──suspend──▶ suspended ──▶ expired | renew (manual recovery)

Nothing leaves ``expired`` except a brand-new :meth:`SubscriptionEngine.create`,
which replaces the expired row in place.  The engine mirrors the current
tier onto ``users.subscription_tier`` and grants each cycle's credit quota
through :class:`~ledger_engine.ledger.CreditLedger`.
"""

from __future__ import annotations

import calendar
import logging
import math
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from fractions import Fraction
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from ledger_engine.errors import InvalidInput, PaymentRequired, SubscriptionNotFound
from ledger_engine.ledger import CreditLedger
from ledger_engine.state.repository import SubscriptionRepository, UserRepository
from ledger_engine.state.tables import PaymentTable, SubscriptionTable
from ledger_engine.tiers import FREE_TIER, TIERS, BillingCycle, get_tier

logger = logging.getLogger(__name__)

_DAY = timedelta(days=1)


class SubscriptionStatus(str, Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"
    SUSPENDED = "suspended"
    EXPIRED = "expired"


class ChangeKind(str, Enum):
    UPGRADE = "upgrade"
    DOWNGRADE = "downgrade"
    CANCEL_PENDING = "cancel_pending"


# ---------------------------------------------------------------------------
# Cycle and proration arithmetic
# ---------------------------------------------------------------------------


def _add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_cycle(start: datetime, cycle: BillingCycle) -> datetime:
    """Return the end of one billing cycle beginning at *start*.

    Months are calendar months clamped to the target month's last day
    (Jan 31 + 1 month = Feb 28/29); Feb 29 + 1 year = Feb 28.
    """
    if cycle == BillingCycle.HOURLY:
        return start + timedelta(hours=1)
    if cycle == BillingCycle.YEARLY:
        return _add_months(start, 12)
    return _add_months(start, 1)


def _ceil_days(delta: timedelta) -> int:
    micros = delta // timedelta(microseconds=1)
    return -(-micros // (_DAY // timedelta(microseconds=1)))


@dataclass(frozen=True)
class Proration:
    remaining_days: int
    total_days: int
    additional_charge: int
    prorated_credits: int


def prorate(
    old_price: int,
    new_price: int,
    new_quota: int,
    remaining_days: int,
    total_days: int,
) -> Proration:
    """Compute the immediate charge and credit grant for a mid-cycle upgrade.

    The ratio ``remaining_days / total_days`` is kept exact; the charge is
    rounded up and the credits rounded down so the user never gets more
    than they paid for.
    """
    total_days = max(total_days, 1)
    remaining_days = min(max(remaining_days, 0), total_days)
    ratio = Fraction(remaining_days, total_days)
    charge = math.ceil(new_price * ratio - old_price * ratio)
    credits = math.floor(new_quota * ratio)
    return Proration(
        remaining_days=remaining_days,
        total_days=total_days,
        additional_charge=max(charge, 0),
        prorated_credits=max(credits, 0),
    )


@dataclass(frozen=True)
class TierChangeQuote:
    """Preview of a tier change; computing it has no side effects."""

    kind: ChangeKind
    current_tier: str
    new_tier: str
    current_price: int
    new_price: int
    remaining_days: int
    total_days: int
    additional_charge: int
    prorated_credits: int
    effective_date: datetime

    @property
    def is_upgrade(self) -> bool:
        return self.kind == ChangeKind.UPGRADE

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "current_tier": self.current_tier,
            "new_tier": self.new_tier,
            "current_price": self.current_price,
            "new_price": self.new_price,
            "remaining_days": self.remaining_days,
            "total_days": self.total_days,
            "additional_charge": self.additional_charge,
            "prorated_credits": self.prorated_credits,
            "effective_date": self.effective_date.isoformat(),
        }


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SubscriptionEngine:
    """Drive subscription state transitions for a single session.

    Parameters
    ----------
    session:
        Active database session; the caller owns the transaction.
    ledger:
        Ledger used for cycle grants.  Defaults to one bound to *session*.
    """

    def __init__(self, session: AsyncSession, ledger: CreditLedger | None = None) -> None:
        self._session = session
        self._repo = SubscriptionRepository(session)
        self._users = UserRepository(session)
        self._ledger = ledger or CreditLedger(session)

    # -- Reads ---------------------------------------------------------------

    async def get_by_user_id(self, user_id: str) -> SubscriptionTable | None:
        return await self._repo.get_by_user_id(user_id)

    async def get_by_id(self, subscription_id: str) -> SubscriptionTable | None:
        return await self._repo.get_by_id(subscription_id)

    async def find_due_for_renewal(self, now: datetime | None = None) -> list[SubscriptionTable]:
        return await self._repo.find_due_for_renewal(now or datetime.now(UTC))

    async def find_expired(self, now: datetime | None = None) -> list[SubscriptionTable]:
        return await self._repo.find_expired(now or datetime.now(UTC))

    async def _require(self, user_id: str) -> SubscriptionTable:
        subscription = await self._repo.get_by_user_id(user_id)
        if subscription is None:
            raise SubscriptionNotFound(f"No subscription found for user '{user_id}'")
        return subscription

    # -- Creation ------------------------------------------------------------

    async def create(
        self,
        user_id: str,
        tier: str,
        billing_key: str | None = None,
        start: datetime | None = None,
    ) -> SubscriptionTable:
        """Start a subscription and grant the first cycle's credits."""
        spec = get_tier(tier)
        existing = await self._repo.get_by_user_id(user_id)
        if existing is not None:
            if existing.status != SubscriptionStatus.EXPIRED.value:
                raise InvalidInput("User already has a subscription", code="SUBSCRIPTION_EXISTS")
            await self._repo.delete(existing)

        start = start or datetime.now(UTC)
        end = add_cycle(start, spec.billing_cycle)
        subscription = await self._repo.add(
            SubscriptionTable(
                user_id=user_id,
                tier=spec.key,
                status=SubscriptionStatus.ACTIVE.value,
                billing_key=billing_key,
                billing_cycle_start=start,
                billing_cycle_end=end,
                next_billing_date=end,
                monthly_credit_quota=spec.monthly_credits,
                price=spec.price,
            )
        )
        await self._users.set_subscription_tier(user_id, spec.key)
        await self._grant_quota(subscription, end, f"{spec.name} plan credits")
        logger.info("Subscription created: user=%s tier=%s cycle_end=%s", user_id, spec.key, end.isoformat())
        return subscription

    # -- Tier changes --------------------------------------------------------

    def quote_change(
        self,
        subscription: SubscriptionTable,
        new_tier: str,
        now: datetime | None = None,
    ) -> TierChangeQuote:
        """Classify a tier change and compute its proration.

        Raises
        ------
        InvalidTier
            *new_tier* is not in the catalogue.
        InvalidInput
            The target is not self-serve, is already the effective tier, or
            has the same price as the effective tier.
        """
        now = now or datetime.now(UTC)
        target = get_tier(new_tier)
        current_price = subscription.price or 0
        total_days = max(_ceil_days(subscription.billing_cycle_end - subscription.billing_cycle_start), 1)

        if subscription.pending_tier and target.key == subscription.tier:
            return TierChangeQuote(
                kind=ChangeKind.CANCEL_PENDING,
                current_tier=subscription.tier,
                new_tier=target.key,
                current_price=current_price,
                new_price=current_price,
                remaining_days=0,
                total_days=total_days,
                additional_charge=0,
                prorated_credits=0,
                effective_date=now,
            )

        if target.is_custom or target.price is None:
            raise InvalidInput("Custom plans require contacting sales", code="CUSTOM_PLAN")
        if target.key == FREE_TIER:
            raise InvalidInput("Cancel the subscription to return to the free plan", code="FREE_PLAN")

        effective_key = subscription.pending_tier or subscription.tier
        if target.key == effective_key:
            raise InvalidInput(f"Subscription is already on the '{target.key}' plan")
        effective = TIERS.get(effective_key)
        effective_price = effective.price if effective is not None and effective.price is not None else current_price
        if target.price == effective_price:
            raise InvalidInput("Changing between plans of the same price is not supported", code="SAME_PRICE")

        if target.price < effective_price or target.price <= current_price:
            return TierChangeQuote(
                kind=ChangeKind.DOWNGRADE,
                current_tier=subscription.tier,
                new_tier=target.key,
                current_price=current_price,
                new_price=target.price,
                remaining_days=0,
                total_days=total_days,
                additional_charge=0,
                prorated_credits=0,
                effective_date=subscription.billing_cycle_end,
            )

        remaining_days = _ceil_days(subscription.billing_cycle_end - now)
        proration = prorate(current_price, target.price, target.monthly_credits or 0, remaining_days, total_days)
        return TierChangeQuote(
            kind=ChangeKind.UPGRADE,
            current_tier=subscription.tier,
            new_tier=target.key,
            current_price=current_price,
            new_price=target.price,
            remaining_days=proration.remaining_days,
            total_days=proration.total_days,
            additional_charge=proration.additional_charge,
            prorated_credits=proration.prorated_credits,
            effective_date=now,
        )

    async def change_tier(
        self,
        user_id: str,
        new_tier: str,
        payment: PaymentTable | None = None,
        now: datetime | None = None,
    ) -> TierChangeQuote:
        """Apply a tier change.

        Upgrades take effect immediately and need a ``paid`` payment;
        downgrades are queued as ``pending_tier`` until the next renewal.
        """
        now = now or datetime.now(UTC)
        subscription = await self._require(user_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidInput("Only active subscriptions can change plan")
        quote = self.quote_change(subscription, new_tier, now)

        if quote.kind == ChangeKind.CANCEL_PENDING:
            subscription.pending_tier = None
            await self._repo.flush()
            logger.info("Pending tier change cancelled: user=%s tier=%s", user_id, subscription.tier)
            return quote

        if quote.kind == ChangeKind.DOWNGRADE:
            subscription.pending_tier = quote.new_tier
            await self._repo.flush()
            logger.info(
                "Downgrade scheduled: user=%s %s -> %s at %s",
                user_id,
                subscription.tier,
                quote.new_tier,
                subscription.billing_cycle_end.isoformat(),
            )
            return quote

        if payment is None or payment.status != "paid":
            logger.warning("Refused upgrade without payment: user=%s tier=%s", user_id, quote.new_tier)
            raise PaymentRequired(f"Upgrading to '{quote.new_tier}' requires a completed payment")

        target = get_tier(quote.new_tier)
        previous = subscription.tier
        subscription.tier = target.key
        subscription.monthly_credit_quota = target.monthly_credits
        subscription.price = target.price
        subscription.pending_tier = None
        await self._repo.flush()
        await self._users.set_subscription_tier(user_id, target.key)

        if quote.prorated_credits > 0:
            await self._ledger.grant_subscription(
                user_id,
                quote.prorated_credits,
                f"Upgrade to {target.name} plan (prorated credits)",
                expires_at=subscription.billing_cycle_end,
                related_id=payment.id,
            )
        logger.info(
            "Subscription upgraded: user=%s %s -> %s credits=%d",
            user_id,
            previous,
            target.key,
            quote.prorated_credits,
        )
        return quote

    # -- Lifecycle -----------------------------------------------------------

    async def cancel(self, user_id: str, reason: str | None = None) -> SubscriptionTable:
        """Stop auto-renewal.  The tier stays in effect until the cycle ends."""
        subscription = await self._require(user_id)
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise InvalidInput(f"Cannot cancel a subscription in status '{subscription.status}'")
        subscription.status = SubscriptionStatus.CANCELLED.value
        subscription.next_billing_date = None
        subscription.cancel_reason = reason
        await self._repo.flush()
        logger.info("Subscription cancelled: user=%s reason=%s", user_id, reason)
        return subscription

    async def reactivate(self, user_id: str, now: datetime | None = None) -> SubscriptionTable:
        now = now or datetime.now(UTC)
        subscription = await self._require(user_id)
        if subscription.status != SubscriptionStatus.CANCELLED.value:
            raise InvalidInput("Only cancelled subscriptions can be reactivated")
        if subscription.billing_cycle_end < now:
            raise InvalidInput("The billing cycle has already ended; start a new subscription")
        subscription.status = SubscriptionStatus.ACTIVE.value
        subscription.next_billing_date = subscription.billing_cycle_end
        subscription.cancel_reason = None
        await self._repo.flush()
        logger.info("Subscription reactivated: user=%s", user_id)
        return subscription

    async def renew(self, subscription: SubscriptionTable, now: datetime | None = None) -> SubscriptionTable:
        """Start the next cycle and grant its quota.

        A queued downgrade is promoted first so the new cycle is billed and
        credited at the new tier.
        """
        now = now or datetime.now(UTC)
        if subscription.pending_tier:
            target = get_tier(subscription.pending_tier)
            logger.info(
                "Promoting pending tier: user=%s %s -> %s",
                subscription.user_id,
                subscription.tier,
                target.key,
            )
            subscription.tier = target.key
            subscription.monthly_credit_quota = target.monthly_credits
            subscription.price = target.price
            subscription.pending_tier = None
            await self._users.set_subscription_tier(subscription.user_id, target.key)

        spec = get_tier(subscription.tier)
        end = add_cycle(now, spec.billing_cycle)
        subscription.billing_cycle_start = now
        subscription.billing_cycle_end = end
        subscription.next_billing_date = end
        subscription.status = SubscriptionStatus.ACTIVE.value
        await self._repo.flush()

        await self._grant_quota(subscription, end, f"{spec.name} plan renewal credits")
        logger.info("Subscription renewed: user=%s tier=%s cycle_end=%s", subscription.user_id, spec.key, end.isoformat())
        return subscription

    async def suspend(self, subscription: SubscriptionTable, reason: str) -> SubscriptionTable:
        subscription.status = SubscriptionStatus.SUSPENDED.value
        subscription.metadata_ = {**(subscription.metadata_ or {}), "suspend_reason": reason}
        await self._repo.flush()
        logger.warning("Subscription suspended: user=%s reason=%s", subscription.user_id, reason)
        return subscription

    async def expire(self, subscription: SubscriptionTable) -> SubscriptionTable:
        subscription.status = SubscriptionStatus.EXPIRED.value
        subscription.next_billing_date = None
        subscription.pending_tier = None
        await self._repo.flush()
        await self._users.set_subscription_tier(subscription.user_id, FREE_TIER)
        logger.info("Subscription expired: user=%s tier=%s", subscription.user_id, subscription.tier)
        return subscription

    async def _grant_quota(self, subscription: SubscriptionTable, expires_at: datetime, description: str) -> None:
        quota = subscription.monthly_credit_quota
        if quota is None or quota <= 0:
            return
        await self._ledger.grant_subscription(
            subscription.user_id,
            quota,
            description,
            expires_at=expires_at,
            related_id=subscription.id,
        )
