"""Recurring subscription billing.

Runs the cron-driven batches (renew due subscriptions, expire lapsed ones)
and the user-initiated cancel.  A cancelled subscription keeps its card's
billing key until the cycle lapses, so it can still be reactivated; the key
is revoked at the gateway when the expiry batch ends the subscription.
Each batch item writes inside SAVEPOINTs so one failure rolls back only
that subscription's partial writes.
"""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime

from ledger_engine.errors import InvalidInput, PaymentRequired, UpstreamFailure
from ledger_engine.ledger import BatchSummary, CreditLedger
from ledger_engine.state.repository import PaymentRepository
from ledger_engine.state.tables import PaymentTable, SubscriptionTable
from ledger_engine.subscriptions import SubscriptionEngine
from ledger_engine.tiers import get_tier
from sqlalchemy.ext.asyncio import AsyncSession

from api.config import APISettings
from api.services.gateway_client import NicepayClient
from api.services.payment_service import PaymentStatus, PaymentType

logger = logging.getLogger(__name__)


class SubscriptionBillingService:
    """Gateway-aware subscription operations.

    Parameters
    ----------
    session:
        Active database session; batch items use nested transactions on it.
    settings:
        API settings.
    gateway:
        NicePay client used for billing-key charges and revocation.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        gateway: NicepayClient,
    ) -> None:
        self._session = session
        self._settings = settings
        self._gateway = gateway
        self._payments = PaymentRepository(session)
        self._engine = SubscriptionEngine(session, CreditLedger(session))

    async def cancel(self, user_id: str, reason: str | None = None) -> SubscriptionTable:
        """Cancel auto-renewal.

        The billing key stays on file until the cycle ends so that
        :meth:`SubscriptionEngine.reactivate` can resume renewals with it.
        """
        return await self._engine.cancel(user_id, reason)

    # -- Batches -------------------------------------------------------------

    async def renew_due(self, now: datetime | None = None) -> BatchSummary:
        """Charge and renew every subscription whose billing date has passed.

        A failed charge suspends the subscription and is reported in the
        summary; it never aborts the batch.
        """
        now = now or datetime.now(UTC)
        due = await self._engine.find_due_for_renewal(now)
        summary = BatchSummary(total=len(due))
        logger.info("Subscription renewal batch started: %d due", summary.total)

        for subscription in due:
            subscription_id, user_id = subscription.id, subscription.user_id
            try:
                await self._renew_one(subscription, now)
                summary.success += 1
            except Exception as exc:
                summary.failed += 1
                summary.errors.append({"subscription_id": subscription_id, "user_id": user_id, "error": str(exc)})
                logger.error(
                    "Subscription renewal failed (subscription=%s, user=%s): %s",
                    subscription_id,
                    user_id,
                    exc,
                    exc_info=True,
                )
                await self._suspend_after_failure(subscription, f"Renewal payment failed: {exc}")

        logger.info(
            "Subscription renewal batch finished: %d renewed, %d failed",
            summary.success,
            summary.failed,
        )
        return summary

    async def _renew_one(self, subscription: SubscriptionTable, now: datetime) -> None:
        # A queued downgrade is billed at its own price.
        spec = get_tier(subscription.pending_tier or subscription.tier)
        if spec.price is None:
            raise InvalidInput(f"Plan '{spec.key}' is invoiced manually")

        charge: tuple[str, str, str | None, int] | None = None
        if spec.price > 0:
            if not subscription.billing_key:
                raise PaymentRequired("No billing key on file")
            # The paid record is released before renew() so a renew failure
            # cannot roll back evidence of money taken.
            async with self._session.begin_nested():
                payment = await self._charge_renewal(subscription, spec.key, spec.name, spec.price, now)
            charge = (payment.id, payment.order_id, payment.tid, payment.amount)

        try:
            async with self._session.begin_nested():
                await self._engine.renew(subscription, now)
        except Exception:
            if charge is not None:
                await self._reverse_renewal_charge(*charge)
            raise

    async def _charge_renewal(
        self,
        subscription: SubscriptionTable,
        tier: str,
        tier_name: str,
        price: int,
        now: datetime,
    ) -> PaymentTable:
        order_id = f"SUB_{subscription.id}_{int(time.time() * 1000)}"
        order_name = f"{tier_name} plan renewal"
        result = await self._gateway.pay_with_billing_key(
            billing_key=subscription.billing_key,
            order_id=order_id,
            amount=price,
            goods_name=order_name,
            mall_user_id=subscription.user_id,
        )
        if not result.success:
            raise UpstreamFailure(result.error, code=result.code)
        return await self._payments.create(
            user_id=subscription.user_id,
            order_id=order_id,
            order_name=order_name,
            amount=price,
            payment_type=PaymentType.SUBSCRIPTION_RENEWAL.value,
            related_id=subscription.id,
            status=PaymentStatus.PAID.value,
            tid=result.data.get("tid"),
            pay_method="card",
            paid_at=now,
            metadata={"tier": tier},
        )

    async def _reverse_renewal_charge(self, payment_id: str, order_id: str, tid: str | None, amount: int) -> None:
        """Refund a renewal charge whose subscription could not be renewed.

        If the gateway refuses, the ``paid`` row is left in place for
        manual reconciliation.
        """
        result = await self._gateway.cancel_payment(tid or "", amount, "Subscription renewal failed")
        if not result.success:
            logger.error(
                "Could not reverse renewal charge order=%s tid=%s: %s",
                order_id,
                tid,
                result.error,
                extra={"order_id": order_id},
            )
            return
        async with self._session.begin_nested():
            await self._payments.mark_cancelled(payment_id)
        logger.warning("Renewal charge reversed: order=%s tid=%s", order_id, tid, extra={"order_id": order_id})

    async def _suspend_after_failure(self, subscription: SubscriptionTable, reason: str) -> None:
        subscription_id = subscription.id
        try:
            async with self._session.begin_nested():
                # The failed savepoint expired the instance; reload before writing.
                await self._session.refresh(subscription)
                await self._engine.suspend(subscription, reason)
        except Exception as exc:
            logger.error("Could not suspend subscription=%s: %s", subscription_id, exc, exc_info=True)

    async def expire_stale(self, now: datetime | None = None) -> BatchSummary:
        """Expire suspended or cancelled subscriptions whose cycle has ended.

        The card's billing key is revoked at the gateway once the
        subscription is expired; a revocation failure is logged and the
        key is forgotten either way.
        """
        now = now or datetime.now(UTC)
        stale = await self._engine.find_expired(now)
        summary = BatchSummary(total=len(stale))

        for subscription in stale:
            subscription_id, user_id = subscription.id, subscription.user_id
            billing_key = subscription.billing_key
            try:
                async with self._session.begin_nested():
                    await self._engine.expire(subscription)
                    subscription.billing_key = None
            except Exception as exc:
                summary.failed += 1
                summary.errors.append({"subscription_id": subscription_id, "user_id": user_id, "error": str(exc)})
                logger.error(
                    "Subscription expiry failed (subscription=%s, user=%s): %s",
                    subscription_id,
                    user_id,
                    exc,
                    exc_info=True,
                )
            else:
                summary.success += 1
                if billing_key:
                    await self._revoke_billing_key(subscription_id, billing_key)

        logger.info("Subscription expiry batch finished: %d expired, %d failed", summary.success, summary.failed)
        return summary

    async def _revoke_billing_key(self, subscription_id: str, billing_key: str) -> None:
        result = await self._gateway.delete_billing_key(billing_key)
        if not result.success:
            logger.warning(
                "Billing key revocation failed for expired subscription=%s: %s",
                subscription_id,
                result.error,
            )
